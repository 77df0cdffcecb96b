from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import PROJECT
from models import (
    MonitoringConfig,
    MonitoringData,
    MonitoringUpdate,
    OverallStats,
    SessionControlAction,
    SessionControlRequest,
    SessionControls,
    SessionHealth,
    SessionProgress,
    SessionState,
    UpdateMetadata,
)
from session_client import (
    CircuitBreaker,
    ConnectionStatus,
    ErrorSeverity,
    MonitoringClient,
    MonitoringRequestError,
    RetryPolicy,
    classify_error,
)

BASE = f"/projects/{PROJECT}/monitoring"


def update(session_id: str, minutes_ago: int, state=SessionState.ACTIVE) -> MonitoringUpdate:
    now = datetime.now(timezone.utc)
    return MonitoringUpdate(
        session_id=session_id,
        project_id=PROJECT,
        state=state,
        health=SessionHealth(last_activity_at=now - timedelta(minutes=minutes_ago)),
        progress=SessionProgress(),
        metadata=UpdateMetadata(started_at=now, last_update_at=now),
        controls=SessionControls.for_state(PROJECT, session_id, state),
        timestamp=now,
    )


def snapshot(*updates: MonitoringUpdate) -> dict:
    data = MonitoringData(
        project_id=PROJECT,
        sessions=list(updates),
        overall_stats=OverallStats(total_sessions=len(updates)),
        last_updated=datetime.now(timezone.utc),
        config=MonitoringConfig(),
    )
    return data.model_dump(by_alias=True, mode="json")


class FakeServer:
    """Routes requests to queued responses; the last queued response repeats."""

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses) -> None:
        self.routes[(method, path)] = list(responses)

    def calls(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item)
        return httpx.Response(200, json=item)


def raising(error: Exception):
    def operation():
        raise error
    return operation


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(server, clock, sleeps):
    c = MonitoringClient(
        PROJECT,
        server_url="http://monitor.test",
        poll_interval=60,
        retry_policy=RetryPolicy(sleep=sleeps.append),
        circuit_breaker=CircuitBreaker(clock=clock),
        transport=httpx.MockTransport(server),
    )
    yield c
    c.close()


# -- error classification -------------------------------------------------


@pytest.mark.parametrize("message,severity,retryable", [
    ("Network request failed", ErrorSeverity.MEDIUM, True),
    ("Request timeout", ErrorSeverity.MEDIUM, True),
    ("Failed to fetch monitoring data: Internal Server Error", ErrorSeverity.HIGH, True),
    ("Failed to fetch monitoring data: Not Found", ErrorSeverity.HIGH, False),
    ("Failed to start monitoring: Bad Request", ErrorSeverity.HIGH, False),
    ("Unauthorized", ErrorSeverity.HIGH, False),
    ("Permission denied", ErrorSeverity.CRITICAL, False),
    ("Something odd", ErrorSeverity.MEDIUM, True),
])
def test_classify_error(message, severity, retryable):
    info = classify_error(Exception(message), "op")
    assert info.severity == severity
    assert info.retryable is retryable
    assert info.operation == "op"


def test_classify_transport_errors():
    assert classify_error(httpx.ConnectError("refused")).retryable
    assert classify_error(httpx.ReadTimeout("slow")).severity == ErrorSeverity.MEDIUM


# -- retry policy and breaker ---------------------------------------------


def test_retry_policy_backoff(sleeps):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("connection reset")
        return "ok"

    assert RetryPolicy(sleep=sleeps.append).execute(flaky) == "ok"
    assert sleeps == [2.0, 4.0]


def test_retry_policy_gives_up(sleeps):
    policy = RetryPolicy(sleep=sleeps.append)
    with pytest.raises(ConnectionError):
        policy.execute(raising(ConnectionError("network down")))
    assert len(sleeps) == 2


def test_retry_policy_does_not_retry_fatal(sleeps):
    policy = RetryPolicy(sleep=sleeps.append)
    with pytest.raises(ValueError):
        policy.execute(raising(ValueError("Not Found")))
    assert sleeps == []


def test_circuit_breaker_trips_and_cools_down(clock):
    breaker = CircuitBreaker(clock=clock)
    tripped = [breaker.record_failure() for _ in range(5)]
    assert tripped == [False, False, False, False, True]
    assert not breaker.allow_request()

    clock.now += 29
    assert not breaker.allow_request()
    clock.now += 1
    assert breaker.allow_request()
    assert breaker.consecutive_failures == 0


def test_circuit_breaker_success_resets(clock):
    breaker = CircuitBreaker(clock=clock)
    for _ in range(4):
        breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert not breaker.tripped


# -- snapshot handling ----------------------------------------------------


def test_refresh_orders_sessions_and_selects_first(client, server):
    server.on("GET", BASE, snapshot(update("older", 10), update("newest", 1), update("middle", 5)))

    client.refresh()

    assert [s.session_id for s in client.sessions] == ["newest", "middle", "older"]
    assert client.selected_session_id == "newest"
    assert client.connection_status == ConnectionStatus.CONNECTED
    assert client.last_success is not None


def test_selection_heals_when_session_disappears(client, server):
    server.on("GET", BASE, snapshot(update("a", 1), update("b", 2)), snapshot(update("a", 1)))
    client.refresh()
    client.select_session("b")
    assert client.selected_session.session_id == "b"

    client.refresh()

    assert client.selected_session_id == "a"


def test_selection_survives_when_session_remains(client, server):
    server.on("GET", BASE, snapshot(update("a", 1), update("b", 2)))
    client.refresh()
    client.select_session("b")
    client.refresh()
    assert client.selected_session_id == "b"


def test_retryable_failures_then_success(client, server, sleeps):
    server.on("GET", BASE, 500, 500, snapshot(update("a", 1)))

    data = client.refresh()

    assert len(data.sessions) == 1
    assert server.calls("GET", BASE) == 3
    assert sleeps == [2.0, 4.0]
    assert client.consecutive_failures == 0


def test_not_found_is_not_retried(client, server):
    server.on("GET", BASE, 404)

    with pytest.raises(MonitoringRequestError) as excinfo:
        client.refresh()

    assert excinfo.value.status_code == 404
    assert server.calls("GET", BASE) == 1
    assert client.error_info.severity == ErrorSeverity.HIGH
    assert not client.error_info.retryable
    assert client.connection_status == ConnectionStatus.ERROR


def test_failed_poll_keeps_last_good_snapshot(client, server):
    server.on("GET", BASE, snapshot(update("a", 1)), httpx.ConnectError("refused"))
    assert client.poll_once() is not None

    assert client.poll_once() is None

    assert [s.session_id for s in client.sessions] == ["a"]
    assert client.connection_status == ConnectionStatus.ERROR
    assert client.error_info.retryable
    assert client.consecutive_failures == 1


def test_five_failed_polls_suspend_polling(client, server, clock):
    server.on("GET", BASE, 500)

    for _ in range(5):
        assert client.poll_once() is None
    assert client.polling_suspended
    assert client.connection_status == ConnectionStatus.ERROR
    assert client.consecutive_failures == 5
    requests_when_tripped = server.calls("GET", BASE)
    assert requests_when_tripped == 15

    assert client.poll_once() is None
    assert server.calls("GET", BASE) == requests_when_tripped

    server.on("GET", BASE, snapshot(update("a", 1)))
    clock.now += 30
    assert client.poll_once() is not None
    assert not client.polling_suspended
    assert client.consecutive_failures == 0
    assert client.connection_status == ConnectionStatus.CONNECTED


def test_clear_error_resets_failures(client, server):
    server.on("GET", BASE, 404)
    client.poll_once()
    assert client.error_info is not None

    client.clear_error()

    assert client.error_info is None
    assert client.consecutive_failures == 0
    assert client.connection_status == ConnectionStatus.DISCONNECTED


# -- operations -----------------------------------------------------------


def test_start_monitoring_posts_config_and_polls(client, server):
    server.on("POST", BASE, {"projectId": PROJECT, "status": "started", "message": "ok"})
    server.on("GET", BASE, snapshot(update("a", 1)))

    data = client.start_monitoring({"pollInterval": 5000})

    posted = server.requests[0]
    assert posted.method == "POST"
    assert b'"action":"start"' in posted.content.replace(b" ", b"")
    assert b'"pollInterval":5000' in posted.content.replace(b" ", b"")
    assert [s.session_id for s in data.sessions] == ["a"]
    assert client.is_monitoring
    assert client.is_polling
    assert client.poll_interval == 5


def test_stop_monitoring_clears_local_view(client, server):
    server.on("POST", BASE, {"projectId": PROJECT, "status": "stopped", "message": "ok"})
    server.on("GET", BASE, snapshot(update("a", 1)))
    client.start_monitoring()

    client.stop_monitoring()

    assert client.monitoring_data is None
    assert client.selected_session_id is None
    assert not client.is_monitoring
    assert not client.is_polling
    assert client.connection_status == ConnectionStatus.DISCONNECTED


def test_stop_monitoring_uses_two_attempts(client, server, sleeps):
    server.on("POST", BASE, 500)
    with pytest.raises(MonitoringRequestError):
        client.stop_monitoring()
    assert server.calls("POST", BASE) == 2
    assert sleeps == [2.0]


def test_execute_control_refreshes(client, server):
    result = {"sessionId": "a", "action": "pause", "success": True, "newState": "paused",
              "timestamp": datetime.now(timezone.utc).isoformat()}
    server.on("POST", BASE, result)
    server.on("GET", BASE, snapshot(update("a", 1, SessionState.PAUSED)))
    request = SessionControlRequest(session_id="a", project_id=PROJECT, action=SessionControlAction.PAUSE)

    outcome = client.execute_control(request)

    assert outcome.success
    assert outcome.new_state == SessionState.PAUSED
    assert server.calls("GET", BASE) == 1
    assert client.selected_session.state == SessionState.PAUSED
    assert b'"sessionId":"a"' in server.requests[0].content.replace(b" ", b"")


def test_check_status_inactive(client, server):
    server.on("GET", f"{BASE}/status", {"projectId": PROJECT, "isActive": False, "lastUpdated": None})
    assert client.check_status() is False
    assert not client.is_polling


def test_check_status_active_starts_polling(client, server):
    server.on("GET", f"{BASE}/status", {"projectId": PROJECT, "isActive": True,
                                        "lastUpdated": datetime.now(timezone.utc).isoformat()})
    server.on("GET", BASE, snapshot(update("a", 1)))

    assert client.check_status() is True
    assert client.is_polling
    assert client.monitoring_data is not None


def test_retry_operation(client, server):
    with pytest.raises(RuntimeError):
        client.retry_operation()

    server.on("GET", BASE, 404)
    with pytest.raises(MonitoringRequestError):
        client.refresh()
    server.on("GET", BASE, snapshot(update("a", 1)))

    client.retry_operation()

    assert client.error_info is None
    assert client.monitoring_data is not None


def test_close_stops_polling(server, clock, sleeps):
    server.on("GET", f"{BASE}/status", {"projectId": PROJECT, "isActive": True})
    server.on("GET", BASE, snapshot())
    with MonitoringClient(PROJECT, server_url="http://monitor.test", poll_interval=60,
                          retry_policy=RetryPolicy(sleep=sleeps.append),
                          transport=httpx.MockTransport(server)) as c:
        c.check_status()
        assert c.is_polling
    assert not c.is_polling
