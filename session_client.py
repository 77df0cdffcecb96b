"""
Resilient client for the Session Monitoring API.

Usage:
    from session_client import MonitoringClient

    client = MonitoringClient(project_id="my-project")
    client.start_monitoring({"pollInterval": 2000})

    # Polls in the background; read the latest snapshot at any time
    data = client.monitoring_data

Every call to the server goes through one ``RetryPolicy`` (bounded attempts,
exponential backoff, retryability from error classification). Consecutive
failures across calls feed a ``CircuitBreaker`` that suspends polling for a
cool-down window. A failed poll never discards the last good snapshot.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import httpx

from models import (
    MonitoringData,
    MonitoringStatus,
    MonitoringUpdate,
    SessionControlRequest,
    SessionControlResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = os.environ.get("MONITOR_SERVER_URL", "http://localhost:8000")

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY = 2.0
BACKOFF_BASE = 2
REQUEST_TIMEOUT = 10.0
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_COOLDOWN = 30.0
DEFAULT_POLL_INTERVAL = 2.0

T = TypeVar("T")


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class MonitoringRequestError(Exception):
    """The server answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ErrorInfo:
    """A classified client-side error."""
    error: Exception
    severity: ErrorSeverity
    operation: str
    retryable: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        return str(self.error)


def classify_error(error: Exception, operation: str = "") -> ErrorInfo:
    """Classify an error into a severity and a retryable flag.

    Classification is by message content; httpx timeouts and transport
    failures count as timeout and network errors respectively.
    """
    message = str(error).lower()
    if isinstance(error, httpx.TimeoutException):
        message += " timeout"
    elif isinstance(error, httpx.TransportError):
        message += " network"

    # Non-retryable categories win over the generic network words
    severity, retryable = ErrorSeverity.MEDIUM, True
    if "unauthorized" in message or "forbidden" in message:
        severity, retryable = ErrorSeverity.HIGH, False
    elif any(k in message for k in ("not found", "invalid project", "bad request")):
        severity, retryable = ErrorSeverity.HIGH, False
    elif "permission" in message or "access" in message:
        severity, retryable = ErrorSeverity.CRITICAL, False
    elif "server error" in message or "internal error" in message:
        severity, retryable = ErrorSeverity.HIGH, True
    elif any(k in message for k in ("network", "fetch", "timeout", "connection")):
        severity, retryable = ErrorSeverity.MEDIUM, True
    return ErrorInfo(error=error, severity=severity, operation=operation, retryable=retryable)


class RetryPolicy:
    """Bounded retries with exponential backoff.

    Attributes:
        max_attempts: Attempts per call, including the first.
        base_delay: Seconds before the second attempt; doubles each retry.
        is_retryable: Predicate deciding whether an error is worth retrying.
    """

    def __init__(
        self,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        base_delay: float = RETRY_DELAY,
        is_retryable: Callable[[Exception], bool] = lambda e: classify_error(e).retryable,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.is_retryable = is_retryable
        self._sleep = sleep

    def delay(self, attempt: int) -> float:
        return self.base_delay * BACKOFF_BASE ** (attempt - 1)

    def execute(self, operation: Callable[[], T], max_attempts: Optional[int] = None,
                should_continue: Callable[[], bool] = lambda: True) -> T:
        """Run ``operation``, retrying retryable errors. Re-raises the last error."""
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except Exception as e:
                if attempt == attempts or not self.is_retryable(e) or not should_continue():
                    raise
                delay = self.delay(attempt)
                logger.debug(f"Attempt {attempt} failed ({e}); retrying in {delay}s")
                self._sleep(delay)
        raise RuntimeError("unreachable")


class CircuitBreaker:
    """Trips after consecutive failures and resets after a cool-down."""

    def __init__(
        self,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        cooldown: float = CIRCUIT_BREAKER_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_failures = max_failures
        self.cooldown = cooldown
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def tripped(self) -> bool:
        return self._opened_at is not None

    def cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown

    def allow_request(self) -> bool:
        """False while tripped; resets itself once the cool-down has passed."""
        if not self.tripped:
            return True
        if self.cooldown_elapsed():
            self.reset()
            return True
        return False

    def record_success(self) -> None:
        self.reset()

    def record_failure(self) -> bool:
        """Count a failure. Returns True if this failure tripped the breaker."""
        self._failures += 1
        if self._failures >= self.max_failures and self._opened_at is None:
            self._opened_at = self._clock()
            return True
        return False

    def reset(self) -> None:
        self._failures = 0
        self._opened_at = None


class MonitoringClient:
    """Client-side view of one project's monitoring.

    Holds the latest fetched snapshot, the selected session and the
    connection/circuit-breaker state. The server is the only source of truth;
    nothing here is written back.

    Example:
        >>> client = MonitoringClient("my-project")
        >>> if client.check_status():
        ...     print(client.connection_status)
    """

    def __init__(
        self,
        project_id: str,
        server_url: str = DEFAULT_SERVER_URL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the monitoring client.

        Args:
            project_id: Project whose sessions are monitored
            server_url: URL of the session monitoring server
            poll_interval: Seconds between snapshot refreshes
            retry_policy: Policy applied to every server call
            circuit_breaker: Breaker shared by every server call
            transport: Optional httpx transport (used by tests)
        """
        self.project_id = project_id
        self.server_url = server_url.rstrip("/")
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker = circuit_breaker or CircuitBreaker()
        self._client = httpx.Client(
            base_url=self.server_url, timeout=REQUEST_TIMEOUT, transport=transport
        )
        self._lock = threading.RLock()
        self._closed = False

        self._data: Optional[MonitoringData] = None
        self._selected_session_id: Optional[str] = None
        self._is_monitoring = False
        self._connection_status = ConnectionStatus.DISCONNECTED
        self._error_info: Optional[ErrorInfo] = None
        self._last_operation: Optional[str] = None
        self._last_success: Optional[datetime] = None

        self._stop_polling = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    # -- read-only view ---------------------------------------------------

    @property
    def monitoring_data(self) -> Optional[MonitoringData]:
        return self._data

    @property
    def sessions(self) -> list[MonitoringUpdate]:
        """Sessions ordered by most recent activity first."""
        data = self._data
        if data is None:
            return []
        return sorted(data.sessions, key=lambda s: s.health.last_activity_at, reverse=True)

    @property
    def selected_session_id(self) -> Optional[str]:
        return self._selected_session_id

    @property
    def selected_session(self) -> Optional[MonitoringUpdate]:
        for session in self.sessions:
            if session.session_id == self._selected_session_id:
                return session
        return None

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection_status

    @property
    def consecutive_failures(self) -> int:
        return self.breaker.consecutive_failures

    @property
    def error_info(self) -> Optional[ErrorInfo]:
        return self._error_info

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    @property
    def is_polling(self) -> bool:
        return self._poll_thread is not None and self._poll_thread.is_alive()

    @property
    def polling_suspended(self) -> bool:
        return self.breaker.tripped and not self.breaker.cooldown_elapsed()

    @property
    def last_success(self) -> Optional[datetime]:
        return self._last_success

    # -- retry envelope ---------------------------------------------------

    def _call(self, operation_name: str, operation: Callable[[], T],
              max_attempts: Optional[int] = None) -> T:
        """Run one server call inside the retry and circuit-breaker envelope."""
        with self._lock:
            self._last_operation = operation_name
            self._connection_status = ConnectionStatus.CONNECTING
        try:
            result = self.retry_policy.execute(
                operation, max_attempts, should_continue=lambda: not self._closed
            )
        except Exception as e:
            info = classify_error(e, operation_name)
            with self._lock:
                tripped = self.breaker.record_failure()
                self._connection_status = ConnectionStatus.ERROR
                self._error_info = info
            if tripped:
                logger.warning(
                    f"Circuit breaker activated: {self.breaker.consecutive_failures} consecutive failures"
                )
            raise

        with self._lock:
            self.breaker.record_success()
            self._connection_status = ConnectionStatus.CONNECTED
            self._error_info = None
            self._last_success = datetime.now(timezone.utc)
        return result

    def _request(self, method: str, path: str, description: str, **kwargs) -> Any:
        response = self._client.request(method, path, **kwargs)
        if not response.is_success:
            raise MonitoringRequestError(
                f"{description}: {response.reason_phrase or response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    @property
    def _monitoring_path(self) -> str:
        return f"/projects/{self.project_id}/monitoring"

    # -- snapshot ---------------------------------------------------------

    def _apply_snapshot(self, data: MonitoringData) -> None:
        with self._lock:
            self._data = data
            ids = [s.session_id for s in self.sessions]
            if self._selected_session_id not in ids:
                self._selected_session_id = ids[0] if ids else None

    def refresh(self) -> MonitoringData:
        """Fetch the latest snapshot. Raises after retries are exhausted."""
        payload = self._call(
            "loadMonitoringData",
            lambda: self._request("GET", self._monitoring_path, "Failed to fetch monitoring data"),
        )
        data = MonitoringData.model_validate(payload)
        self._apply_snapshot(data)
        return data

    def poll_once(self) -> Optional[MonitoringData]:
        """One polling tick. Never raises; respects the circuit breaker."""
        with self._lock:
            if self.breaker.tripped:
                if not self.breaker.cooldown_elapsed():
                    return None
                logger.info("Circuit breaker timeout expired, attempting to restore monitoring")
                self.breaker.reset()
        try:
            return self.refresh()
        except Exception as e:
            logger.warning(f"Failed to load monitoring data after retries: {e}")
            return None

    # -- polling ----------------------------------------------------------

    def _start_polling(self, interval: Optional[float] = None) -> None:
        """Start the background polling thread, replacing any existing one."""
        self._stop_polling_thread()
        if interval is not None:
            self.poll_interval = interval
        stop = threading.Event()
        self._stop_polling = stop

        def polling_loop():
            while not stop.wait(self.poll_interval):
                self.poll_once()

        self._poll_thread = threading.Thread(
            target=polling_loop,
            daemon=True,
            name=f"monitor-poll-{self.project_id[:16]}",
        )
        self._poll_thread.start()

    def _stop_polling_thread(self) -> None:
        self._stop_polling.set()
        thread = self._poll_thread
        self._poll_thread = None
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1)

    # -- operations -------------------------------------------------------

    def check_status(self) -> bool:
        """Ask the server whether the project is monitored; poll if it is."""
        try:
            payload = self._call(
                "checkStatus",
                lambda: self._request("GET", f"{self._monitoring_path}/status", "Failed to fetch monitoring status"),
            )
        except Exception as e:
            logger.warning(f"Failed to check monitoring status: {e}")
            self._is_monitoring = False
            return False

        status = MonitoringStatus.model_validate(payload)
        self._is_monitoring = status.is_active
        if status.is_active:
            self.poll_once()
            self._start_polling()
        return status.is_active

    def start_monitoring(self, config: Optional[dict[str, Any]] = None) -> MonitoringData:
        """Start server-side monitoring and begin polling."""
        body = {"action": "start", "config": config}
        self._call(
            "startMonitoring",
            lambda: self._request("POST", self._monitoring_path, "Failed to start monitoring", json=body),
        )
        self._is_monitoring = True
        data = self.refresh()
        interval = (config or {}).get("pollInterval", (config or {}).get("poll_interval"))
        self._start_polling(interval / 1000 if interval else None)
        return data

    def stop_monitoring(self) -> None:
        """Stop server-side monitoring and clear the local view."""
        self._call(
            "stopMonitoring",
            lambda: self._request("POST", self._monitoring_path, "Failed to stop monitoring", json={"action": "stop"}),
            max_attempts=2,
        )
        self._stop_polling_thread()
        with self._lock:
            self._is_monitoring = False
            self._data = None
            self._selected_session_id = None
            self._connection_status = ConnectionStatus.DISCONNECTED
            self.breaker.reset()

    def execute_control(self, request: SessionControlRequest) -> SessionControlResult:
        """Run a control action, then refresh the snapshot."""
        body = {"action": "control", "request": request.model_dump(by_alias=True, mode="json")}
        payload = self._call(
            f"executeControl:{request.action.value}",
            lambda: self._request("POST", self._monitoring_path, "Failed to execute control", json=body),
            max_attempts=2,
        )
        result = SessionControlResult.model_validate(payload)
        try:
            self.refresh()
        except Exception as e:
            logger.warning(f"Failed to refresh data after control operation: {e}")
        return result

    def select_session(self, session_id: Optional[str]) -> None:
        with self._lock:
            self._selected_session_id = session_id

    def retry_operation(self) -> None:
        """Retry the last failed operation."""
        operation = self._last_operation
        if operation is None:
            raise RuntimeError("No operation to retry")
        self._error_info = None
        if operation == "loadMonitoringData":
            self.refresh()
        elif operation == "startMonitoring":
            self.start_monitoring()
        elif operation == "stopMonitoring":
            self.stop_monitoring()
        elif operation == "checkStatus":
            self.check_status()
        else:
            raise RuntimeError(f"Cannot retry operation: {operation}")

    def clear_error(self) -> None:
        """Dismiss the current error and reset the failure counter."""
        with self._lock:
            self._error_info = None
            self.breaker.reset()
            self._connection_status = (
                ConnectionStatus.CONNECTED if self._is_monitoring else ConnectionStatus.DISCONNECTED
            )

    def reset_circuit_breaker(self) -> None:
        """Reset the breaker and resume polling right away."""
        with self._lock:
            self.breaker.reset()
            self._error_info = None
            self._connection_status = ConnectionStatus.DISCONNECTED
        if self._is_monitoring:
            self.poll_once()
            self._start_polling()

    def close(self) -> None:
        """Stop polling and release the HTTP client."""
        self._closed = True
        self._stop_polling_thread()
        try:
            self._client.close()
        except Exception as e:
            logger.debug(f"Error closing HTTP client: {e}")

    def __enter__(self) -> "MonitoringClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
