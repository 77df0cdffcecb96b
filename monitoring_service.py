"""
Per-project monitoring orchestration.

Each monitored project owns one asyncio task that runs a poll cycle right
away and then every ``config.poll_interval`` milliseconds. A cycle lists the
project's sessions, infers an update for each one concurrently, aggregates
them into a ``MonitoringData`` snapshot and occasionally sweeps unhealthy
sessions for auto-recovery.

All mutable state lives in a ``MonitoringRegistry`` owned by the service
instance. Everything runs on one event loop, so the registry needs no locks
beyond the per-project cycle lock that keeps cycles from overlapping.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from models import (
    MonitoringConfig,
    MonitoringData,
    MonitoringStatus,
    MonitoringUpdate,
    OverallStats,
    SessionControlAction,
    SessionControlRequest,
    SessionControlResult,
    SessionControls,
    SessionInfo,
    SessionState,
    utc_now,
)
from session_controller import SessionController
from state_detector import SessionStateDetector, degraded_update
from transcript_store import TranscriptStore, validate_identifier

logger = logging.getLogger(__name__)

UNHEALTHY_ERROR_COUNT = 5
NO_RECOVERY_STATES = (SessionState.TERMINATED, SessionState.PAUSED)

SessionSource = Callable[[str], list[SessionInfo]]

# camelCase wire name -> field name
_CONFIG_FIELDS = {to_camel(name): name for name in MonitoringConfig.model_fields}


class MonitoringError(Exception):
    """Base class for monitoring service errors."""


class InvalidConfigError(MonitoringError, ValueError):
    """A monitoring configuration failed validation."""


class ProjectNotMonitoredError(MonitoringError, KeyError):
    """The project has no active monitor."""


def build_config(base: Optional[MonitoringConfig] = None, overrides: Optional[dict[str, Any]] = None) -> MonitoringConfig:
    """Merge overrides (snake_case or camelCase keys) onto a config and validate."""
    base = base or MonitoringConfig()
    merged = base.model_dump()
    for key, value in (overrides or {}).items():
        merged[_CONFIG_FIELDS.get(key, key)] = value
    try:
        return MonitoringConfig.model_validate(merged)
    except ValidationError as e:
        raise InvalidConfigError(str(e)) from e


def aggregate(project_id: str, updates: list[MonitoringUpdate], config: MonitoringConfig) -> MonitoringData:
    """Build a project snapshot from one cycle's updates."""
    active = sum(1 for u in updates if u.state in (SessionState.ACTIVE, SessionState.IDLE))
    response_times = [u.health.response_time for u in updates if u.health.response_time is not None]
    average = sum(response_times) / len(response_times) if response_times else None
    return MonitoringData(
        project_id=project_id,
        sessions=updates,
        overall_stats=OverallStats(
            active_sessions=active,
            total_sessions=len(updates),
            average_response_time=average,
            system_load=min(100.0, len(updates) / config.max_sessions * 100),
        ),
        last_updated=utc_now(),
        config=config,
    )


@dataclass
class ProjectMonitor:
    """Registry entry for one monitored project."""
    config: MonitoringConfig
    generation: int = 0
    task: Optional[asyncio.Task] = None
    data: Optional[MonitoringData] = None
    last_health_check: float = 0.0
    consecutive_failures: int = 0
    cycle_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class MonitoringRegistry:
    """In-process store of project monitors, keyed by project id."""

    def __init__(self):
        self._monitors: dict[str, ProjectMonitor] = {}
        self._generation = 0

    def next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def get(self, project_id: str) -> Optional[ProjectMonitor]:
        return self._monitors.get(project_id)

    def put(self, project_id: str, monitor: ProjectMonitor) -> None:
        self._monitors[project_id] = monitor

    def pop(self, project_id: str) -> Optional[ProjectMonitor]:
        return self._monitors.pop(project_id, None)

    def is_active(self, project_id: str) -> bool:
        return project_id in self._monitors

    def active_projects(self) -> list[str]:
        return list(self._monitors)

    def __len__(self) -> int:
        return len(self._monitors)


class MonitoringService:
    """Starts, stops and serves per-project session monitoring."""

    def __init__(
        self,
        store: Optional[TranscriptStore] = None,
        detector: Optional[SessionStateDetector] = None,
        controller: Optional[SessionController] = None,
        session_source: Optional[SessionSource] = None,
        registry: Optional[MonitoringRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store or TranscriptStore()
        self.detector = detector or SessionStateDetector(self.store)
        self.controller = controller or SessionController(self.store, detector=self.detector)
        self.session_source: SessionSource = session_source or self.store.list_sessions
        self.registry = registry or MonitoringRegistry()
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    # -- lifecycle ------------------------------------------------------

    async def start_monitoring(self, project_id: str, config: Optional[dict[str, Any]] = None) -> MonitoringConfig:
        """Begin monitoring a project, replacing any existing monitor."""
        validate_identifier(project_id, "project id")
        new_config = build_config(overrides=config)

        self._cancel(self.registry.pop(project_id))
        monitor = ProjectMonitor(config=new_config, generation=self.registry.next_generation())
        self.registry.put(project_id, monitor)

        await self._poll_project(project_id, monitor.generation)
        if self.registry.get(project_id) is monitor:
            self._launch(project_id, monitor)
        logger.info(f"Started monitoring for project {project_id} with {new_config.poll_interval}ms interval")
        return new_config

    async def stop_monitoring(self, project_id: str) -> bool:
        """Stop monitoring and discard the snapshot. Returns False if not monitoring."""
        monitor = self.registry.pop(project_id)
        if monitor is None:
            return False
        self._cancel(monitor)
        logger.info(f"Stopped monitoring for project {project_id}")
        return True

    async def update_config(self, project_id: str, config: dict[str, Any]) -> MonitoringConfig:
        """Validate and apply new settings, restarting the poll loop."""
        monitor = self.registry.get(project_id)
        if monitor is None:
            raise ProjectNotMonitoredError(project_id)
        new_config = build_config(monitor.config, config)

        self._cancel(monitor)
        monitor.config = new_config
        monitor.generation = self.registry.next_generation()
        await self._poll_project(project_id, monitor.generation)
        if self.registry.get(project_id) is monitor:
            self._launch(project_id, monitor)
        logger.info(f"Updated monitoring configuration for project {project_id}")
        return new_config

    async def shutdown(self) -> None:
        logger.info("Shutting down monitoring service...")
        for project_id in self.registry.active_projects():
            await self.stop_monitoring(project_id)
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.controller.aclose()

    def _launch(self, project_id: str, monitor: ProjectMonitor) -> None:
        monitor.task = asyncio.create_task(
            self._run_loop(project_id, monitor.generation),
            name=f"monitor-{project_id}",
        )

    @staticmethod
    def _cancel(monitor: Optional[ProjectMonitor]) -> None:
        if monitor is not None and monitor.task is not None:
            monitor.task.cancel()
            monitor.task = None

    async def _run_loop(self, project_id: str, generation: int) -> None:
        loop = asyncio.get_running_loop()
        while True:
            monitor = self.registry.get(project_id)
            if monitor is None or monitor.generation != generation:
                return
            interval = monitor.config.poll_interval / 1000
            await asyncio.sleep(interval)
            started = loop.time()
            try:
                await self._poll_project(project_id, generation)
            except Exception as e:
                logger.error(f"Monitoring cycle crashed for project {project_id}: {e}")
            overrun = loop.time() - started - interval
            if overrun > 0:
                logger.warning(f"Poll cycle for {project_id} overran its interval by {overrun:.2f}s")

    # -- poll cycle -----------------------------------------------------

    def _current(self, project_id: str, generation: int) -> Optional[ProjectMonitor]:
        monitor = self.registry.get(project_id)
        if monitor is None or monitor.generation != generation:
            return None
        return monitor

    async def _session_update(self, project_id: str, session_id: str) -> MonitoringUpdate:
        try:
            return await self.detector.generate_update(project_id, session_id)
        except Exception as e:
            logger.error(f"Failed to get monitoring update for session {session_id}: {e}")
            return degraded_update(project_id, session_id)

    async def _poll_project(self, project_id: str, generation: int) -> None:
        monitor = self._current(project_id, generation)
        if monitor is None:
            return
        async with monitor.cycle_lock:
            config = monitor.config
            try:
                sessions = await asyncio.to_thread(self.session_source, project_id)
            except Exception as e:
                logger.error(f"Failed to update monitoring data for project {project_id}: {e}")
                self._preserve_snapshot(project_id, generation, e)
                return

            tracked = sessions[: config.max_sessions]
            results = await asyncio.gather(
                *(self._session_update(project_id, s.id) for s in tracked),
                return_exceptions=True,
            )
            updates = []
            for session, result in zip(tracked, results):
                if isinstance(result, BaseException):
                    logger.error(f"Session update failed for {session.id}: {result}")
                    result = degraded_update(project_id, session.id)
                updates.append(result)

            monitor = self._current(project_id, generation)
            if monitor is None:
                logger.debug(f"Discarding stale poll result for project {project_id}")
                return
            monitor.data = aggregate(project_id, updates, config)
            monitor.consecutive_failures = 0

        await self._health_check(project_id, generation)

    def _preserve_snapshot(self, project_id: str, generation: int, error: Exception) -> None:
        monitor = self._current(project_id, generation)
        if monitor is None:
            return
        monitor.consecutive_failures += 1
        annotation = {
            "stale": True,
            "last_error": str(error),
            "consecutive_failures": monitor.consecutive_failures,
        }
        if monitor.data is not None:
            monitor.data = monitor.data.model_copy(update=annotation)
        else:
            monitor.data = aggregate(project_id, [], monitor.config).model_copy(update=annotation)

    # -- health ---------------------------------------------------------

    def find_unhealthy(self, data: MonitoringData, config: MonitoringConfig) -> list[MonitoringUpdate]:
        now = utc_now()
        unhealthy = []
        for session in data.sessions:
            idle_ms = (now - session.health.last_activity_at).total_seconds() * 1000
            if (
                session.state in (SessionState.ERROR, SessionState.STALLED)
                or idle_ms > config.stale_threshold
                or session.health.error_count > UNHEALTHY_ERROR_COUNT
            ):
                unhealthy.append(session)
        return unhealthy

    async def _health_check(self, project_id: str, generation: int) -> None:
        monitor = self._current(project_id, generation)
        if monitor is None or monitor.data is None:
            return
        config = monitor.config
        now = self._clock()
        if monitor.last_health_check and now - monitor.last_health_check < config.health_check_interval / 1000:
            return
        monitor.last_health_check = now

        unhealthy = self.find_unhealthy(monitor.data, config)
        if not unhealthy:
            return
        logger.warning(f"Health check found {len(unhealthy)} unhealthy sessions in project {project_id}")

        if config.enable_notifications:
            for session in unhealthy:
                logger.warning(
                    f"Session {session.session_id} in {project_id} is unhealthy: "
                    f"state={session.state.value} errors={session.health.error_count}"
                )

        if not config.enable_auto_recovery:
            return
        candidates = [s for s in unhealthy if s.state not in NO_RECOVERY_STATES]
        if candidates:
            logger.info(f"Performing auto-recovery for {len(candidates)} unhealthy sessions")
        for session in candidates:
            if self._current(project_id, generation) is None:
                return
            try:
                result = await self.controller.restart_session(project_id, session.session_id)
                if not result.success:
                    logger.error(f"Failed to auto-recover session {session.session_id}: {result.message}")
            except Exception as e:
                logger.error(f"Failed to auto-recover session {session.session_id}: {e}")

    # -- queries --------------------------------------------------------

    def is_monitoring(self, project_id: str) -> bool:
        return self.registry.is_active(project_id)

    def get_active_projects(self) -> list[str]:
        return self.registry.active_projects()

    def get_config(self, project_id: str) -> Optional[MonitoringConfig]:
        monitor = self.registry.get(project_id)
        return monitor.config if monitor else None

    def get_monitoring_data(self, project_id: str) -> Optional[MonitoringData]:
        monitor = self.registry.get(project_id)
        return monitor.data if monitor else None

    def get_status(self, project_id: str) -> MonitoringStatus:
        data = self.get_monitoring_data(project_id)
        return MonitoringStatus(
            project_id=project_id,
            is_active=self.is_monitoring(project_id),
            last_updated=data.last_updated if data else None,
        )

    async def get_session_update(self, project_id: str, session_id: str) -> MonitoringUpdate:
        """Latest snapshot record for a session, or a freshly generated one."""
        data = self.get_monitoring_data(project_id)
        if data is not None:
            for session in data.sessions:
                if session.session_id == session_id:
                    return session
        return await self.detector.generate_update(project_id, session_id)

    async def get_session_controls(self, project_id: str, session_id: str) -> SessionControls:
        return await self.controller.get_session_controls(project_id, session_id)

    async def execute_session_control(self, request: SessionControlRequest) -> SessionControlResult:
        """Run a control action and refresh the project's snapshot."""
        try:
            result = await self.controller.execute_control(request)
        except Exception as e:
            logger.error(f"Failed to execute session control: {e}")
            return SessionControlResult(
                session_id=request.session_id,
                action=request.action,
                success=False,
                message=f"Control operation failed: {e}",
            )

        monitor = self.registry.get(request.project_id)
        if monitor is not None:
            task = asyncio.create_task(self._poll_project(request.project_id, monitor.generation))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        if request.action in (SessionControlAction.TERMINATE, SessionControlAction.RESTART):
            logger.info(f"{request.action.value} on {request.session_id}: {result.message}")
        return result
