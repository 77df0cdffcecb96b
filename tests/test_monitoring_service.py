import asyncio
import threading
from datetime import datetime, timezone

import pytest

from conftest import PROJECT, RecordingMatcher, entry, write_transcript
from models import (
    MonitoringConfig,
    SessionControlAction,
    SessionControlRequest,
    SessionState,
)
from monitoring_service import (
    InvalidConfigError,
    MonitoringService,
    ProjectNotMonitoredError,
    aggregate,
    build_config,
)
from session_controller import SessionController
from state_detector import SessionStateDetector, degraded_update


class RecordingController(SessionController):
    def __init__(self, store):
        super().__init__(store, matcher=RecordingMatcher(), retry_delay=0)
        self.restarted: list[str] = []

    async def restart_session(self, project_id, session_id):
        self.restarted.append(session_id)
        return await super().restart_session(project_id, session_id)


@pytest.fixture
def populated(projects_dir):
    write_transcript(projects_dir, PROJECT, "active", [entry("user"), entry("assistant", metadata={"duration": 100})], age=1)
    write_transcript(projects_dir, PROJECT, "idle", [entry("assistant", metadata={"duration": 300})], age=5)
    write_transcript(projects_dir, PROJECT, "stalled", [entry("user")], age=10 * 60)
    write_transcript(projects_dir, PROJECT, "ended", [entry("user")], age=45 * 60)
    return projects_dir


@pytest.fixture
def service(store):
    return MonitoringService(store, controller=RecordingController(store))


@pytest.fixture
async def running(service, populated):
    await service.start_monitoring(PROJECT)
    yield service
    await service.shutdown()


def states(data):
    return {s.session_id: s.state for s in data.sessions}


# -- config ---------------------------------------------------------------


def test_build_config_defaults():
    config = build_config()
    assert config == MonitoringConfig()
    assert config.poll_interval == 2000
    assert config.health_check_interval == 10000
    assert config.stale_threshold == 300000
    assert config.max_sessions == 50
    assert not config.enable_auto_recovery
    assert not config.enable_notifications


def test_build_config_accepts_both_key_styles():
    config = build_config(overrides={"pollInterval": 5000, "max_sessions": 3})
    assert config.poll_interval == 5000
    assert config.max_sessions == 3


@pytest.mark.parametrize("overrides", [
    {"pollInterval": 500},
    {"maxSessions": 0},
    {"pollInterval": "soon"},
    {"unknownSetting": True},
])
def test_build_config_rejects(overrides):
    with pytest.raises(InvalidConfigError):
        build_config(overrides=overrides)


def test_config_round_trips_through_wire_format():
    config = build_config(overrides={"pollInterval": 3000, "enableNotifications": True})
    wire = config.model_dump(by_alias=True)
    assert wire["pollInterval"] == 3000
    assert MonitoringConfig.model_validate(wire) == config


# -- aggregation ----------------------------------------------------------


def test_aggregate_stats():
    updates = [degraded_update(PROJECT, "a"), degraded_update(PROJECT, "b")]
    data = aggregate(PROJECT, updates, MonitoringConfig(max_sessions=4))
    assert data.overall_stats.total_sessions == 2
    assert data.overall_stats.active_sessions == 0
    assert data.overall_stats.system_load == 50
    assert data.overall_stats.average_response_time is None


def test_aggregate_load_is_capped():
    updates = [degraded_update(PROJECT, str(i)) for i in range(3)]
    data = aggregate(PROJECT, updates, MonitoringConfig(max_sessions=1))
    assert data.overall_stats.system_load == 100


# -- lifecycle ------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_produces_snapshot_immediately(running):
    data = running.get_monitoring_data(PROJECT)

    assert data is not None
    assert data.project_id == PROJECT
    assert states(data) == {
        "active": SessionState.ACTIVE,
        "idle": SessionState.IDLE,
        "stalled": SessionState.STALLED,
        "ended": SessionState.TERMINATED,
    }
    assert data.overall_stats.total_sessions == 4
    assert data.overall_stats.active_sessions == 2
    assert data.overall_stats.average_response_time == 200
    assert not data.stale
    assert running.is_monitoring(PROJECT)
    assert running.get_active_projects() == [PROJECT]


@pytest.mark.asyncio
async def test_start_config_round_trips(service, populated):
    supplied = {"pollInterval": 4000, "maxSessions": 3, "enableNotifications": True}

    await service.start_monitoring(PROJECT, supplied)

    data = service.get_monitoring_data(PROJECT)
    assert data.config == MonitoringConfig(**supplied)
    assert data.config.health_check_interval == 10000
    assert data.overall_stats.active_sessions <= data.overall_stats.total_sessions == 3
    await service.shutdown()


@pytest.mark.asyncio
async def test_status_reflects_monitoring(running):
    status = running.get_status(PROJECT)
    assert status.is_active
    assert status.last_updated is not None
    assert not running.get_status("other").is_active


@pytest.mark.asyncio
async def test_start_rejects_invalid_config(service, populated):
    with pytest.raises(InvalidConfigError):
        await service.start_monitoring(PROJECT, {"pollInterval": 10})
    assert not service.is_monitoring(PROJECT)


@pytest.mark.asyncio
async def test_start_rejects_invalid_project(service):
    with pytest.raises(ValueError):
        await service.start_monitoring("../etc")


@pytest.mark.asyncio
async def test_start_twice_replaces_monitor(running):
    await running.start_monitoring(PROJECT, {"maxSessions": 2})
    assert running.get_active_projects() == [PROJECT]
    assert running.get_config(PROJECT).max_sessions == 2
    assert len(running.get_monitoring_data(PROJECT).sessions) == 2


@pytest.mark.asyncio
async def test_stop_is_idempotent(running):
    assert await running.stop_monitoring(PROJECT) is True
    assert await running.stop_monitoring(PROJECT) is False
    assert running.get_monitoring_data(PROJECT) is None
    assert running.get_config(PROJECT) is None
    assert not running.is_monitoring(PROJECT)


@pytest.mark.asyncio
async def test_stop_unknown_project(service):
    assert await service.stop_monitoring("never-started") is False


@pytest.mark.asyncio
async def test_update_config_rejects_and_keeps_old(running):
    with pytest.raises(InvalidConfigError):
        await running.update_config(PROJECT, {"pollInterval": 500})
    assert running.get_config(PROJECT).poll_interval == 2000
    assert running.is_monitoring(PROJECT)


@pytest.mark.asyncio
async def test_update_config_requires_monitoring(service):
    with pytest.raises(ProjectNotMonitoredError):
        await service.update_config(PROJECT, {"pollInterval": 3000})


@pytest.mark.asyncio
async def test_update_config_merges_and_repolls(running):
    config = await running.update_config(PROJECT, {"maxSessions": 1})

    assert config.max_sessions == 1
    assert config.poll_interval == 2000
    data = running.get_monitoring_data(PROJECT)
    assert [s.session_id for s in data.sessions] == ["active"]
    assert data.config.max_sessions == 1


@pytest.mark.asyncio
async def test_poll_loop_picks_up_new_sessions(running, projects_dir):
    await running.update_config(PROJECT, {"pollInterval": 1000})
    write_transcript(projects_dir, PROJECT, "fresh", [entry("user")], age=0)

    await asyncio.sleep(1.5)

    assert "fresh" in states(running.get_monitoring_data(PROJECT))


@pytest.mark.asyncio
async def test_shutdown_stops_everything(service, populated):
    await service.start_monitoring(PROJECT)
    await service.start_monitoring("other-project")
    await service.shutdown()
    assert service.get_active_projects() == []


# -- failure handling -----------------------------------------------------


@pytest.mark.asyncio
async def test_listing_failure_preserves_snapshot(store, populated):
    fail = {"now": False}

    def source(project_id):
        if fail["now"]:
            raise PermissionError("directory went away")
        return store.list_sessions(project_id)

    service = MonitoringService(store, session_source=source)
    await service.start_monitoring(PROJECT)
    before = service.get_monitoring_data(PROJECT)

    fail["now"] = True
    await service.update_config(PROJECT, {})
    await service.update_config(PROJECT, {})

    after = service.get_monitoring_data(PROJECT)
    assert after.stale
    assert "directory went away" in after.last_error
    assert after.consecutive_failures == 2
    assert states(after) == states(before)

    fail["now"] = False
    await service.update_config(PROJECT, {})
    recovered = service.get_monitoring_data(PROJECT)
    assert not recovered.stale
    assert recovered.consecutive_failures == 0
    await service.shutdown()


@pytest.mark.asyncio
async def test_listing_failure_without_snapshot(store):
    def source(project_id):
        raise OSError("unreadable")

    service = MonitoringService(store, session_source=source)
    await service.start_monitoring(PROJECT)

    data = service.get_monitoring_data(PROJECT)
    assert data.stale
    assert data.sessions == []
    assert data.consecutive_failures == 1
    await service.shutdown()


@pytest.mark.asyncio
async def test_one_failing_session_does_not_sink_the_cycle(store, populated):
    class Flaky(SessionStateDetector):
        async def generate_update(self, project_id, session_id):
            if session_id == "idle":
                raise RuntimeError("boom")
            return await super().generate_update(project_id, session_id)

    service = MonitoringService(store, detector=Flaky(store))
    await service.start_monitoring(PROJECT)

    data = service.get_monitoring_data(PROJECT)
    assert len(data.sessions) == 4
    assert states(data)["idle"] == SessionState.ERROR
    assert states(data)["active"] == SessionState.ACTIVE
    await service.shutdown()


@pytest.mark.asyncio
async def test_stop_during_first_cycle_discards_result(store, populated):
    release = threading.Event()

    def slow_source(project_id):
        release.wait(5)
        return store.list_sessions(project_id)

    service = MonitoringService(store, session_source=slow_source)
    starting = asyncio.create_task(service.start_monitoring(PROJECT))
    await asyncio.sleep(0.05)

    assert await service.stop_monitoring(PROJECT)
    release.set()
    await starting

    assert service.get_monitoring_data(PROJECT) is None
    assert not service.is_monitoring(PROJECT)
    await service.shutdown()


# -- health sweep ---------------------------------------------------------


@pytest.mark.asyncio
async def test_auto_recovery_skips_terminated(store, populated):
    controller = RecordingController(store)
    service = MonitoringService(store, controller=controller)

    await service.start_monitoring(PROJECT, {"enableAutoRecovery": True, "healthCheckInterval": 0})

    assert controller.restarted == ["stalled"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_no_recovery_unless_enabled(running):
    assert running.controller.restarted == []


@pytest.mark.asyncio
async def test_find_unhealthy(running):
    data = running.get_monitoring_data(PROJECT)
    unhealthy = {s.session_id for s in running.find_unhealthy(data, running.get_config(PROJECT))}
    assert unhealthy == {"stalled", "ended"}


# -- queries and controls -------------------------------------------------


@pytest.mark.asyncio
async def test_session_update_from_snapshot(running):
    snapshot = running.get_monitoring_data(PROJECT)
    update = await running.get_session_update(PROJECT, "active")
    assert update is next(s for s in snapshot.sessions if s.session_id == "active")


@pytest.mark.asyncio
async def test_session_update_without_monitoring(service, populated):
    update = await service.get_session_update(PROJECT, "active")
    assert update.state == SessionState.ACTIVE


@pytest.mark.asyncio
async def test_session_controls(running):
    controls = await running.get_session_controls(PROJECT, "stalled")
    assert controls.available_actions == [SessionControlAction.RESTART, SessionControlAction.TERMINATE]


@pytest.mark.asyncio
async def test_execute_session_control_refreshes(running, projects_dir):
    before = running.get_monitoring_data(PROJECT).last_updated

    result = await running.execute_session_control(
        SessionControlRequest(session_id="active", project_id=PROJECT, action=SessionControlAction.PAUSE)
    )
    await asyncio.sleep(0.2)

    assert result.success
    assert (projects_dir / PROJECT / ".control" / "active.pause").exists()
    assert running.get_monitoring_data(PROJECT).last_updated > before


@pytest.mark.asyncio
async def test_execute_session_control_failure_is_a_result(running):
    result = await running.execute_session_control(
        SessionControlRequest(session_id="ghost", project_id=PROJECT, action=SessionControlAction.RESUME)
    )
    assert not result.success
    assert result.timestamp <= datetime.now(timezone.utc)
