"""
Session control: pause, resume, terminate and restart.

A control intent is recorded as a marker file in the project's ``.control``
directory and, where applicable, followed by best-effort signals to matching
processes. Nothing in this repository consumes the markers; they are the
hook for an external supervisor. In particular ``restart`` does not relaunch
anything by itself.

``SessionController.execute_control`` never raises: every failure is
reported as a ``SessionControlResult`` with ``success=False``.
"""

import asyncio
import json
import logging
import signal
from typing import Awaitable, Callable, Optional

from models import (
    SessionControlAction,
    SessionControlRequest,
    SessionControlResult,
    SessionControls,
    SessionState,
    utc_now,
)
from process_matcher import NullProcessMatcher, ProcessMatcher
from state_detector import SessionStateDetector
from transcript_store import InvalidIdentifierError, TranscriptStore

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY = 1.0
RESUME_MARKER_TTL = 5.0
KILL_GRACE_PERIOD = 5.0
PROCESS_TIMEOUT = 5.0


def control_result(
    session_id: str,
    action: SessionControlAction,
    success: bool,
    message: Optional[str] = None,
    new_state: Optional[SessionState] = None,
) -> SessionControlResult:
    return SessionControlResult(
        session_id=session_id,
        action=action,
        success=success,
        message=message,
        new_state=new_state,
    )


class SessionController:
    """Translates control intents into marker files and process signals."""

    def __init__(
        self,
        store: Optional[TranscriptStore] = None,
        matcher: Optional[ProcessMatcher] = None,
        detector: Optional[SessionStateDetector] = None,
        retry_delay: float = RETRY_DELAY,
        resume_marker_ttl: float = RESUME_MARKER_TTL,
        kill_grace_period: float = KILL_GRACE_PERIOD,
        process_timeout: float = PROCESS_TIMEOUT,
    ):
        self.store = store or TranscriptStore()
        self.matcher: ProcessMatcher = matcher or NullProcessMatcher()
        self.detector = detector or SessionStateDetector(self.store)
        self.retry_delay = retry_delay
        self.resume_marker_ttl = resume_marker_ttl
        self.kill_grace_period = kill_grace_period
        self.process_timeout = process_timeout
        self._pending: set[asyncio.Task] = set()

    # -- markers --------------------------------------------------------

    def marker_path(self, project_id: str, session_id: str, action: SessionControlAction):
        return self.store.control_dir(project_id) / f"{session_id}.{action.value}"

    def _write_marker(self, project_id: str, session_id: str, action: SessionControlAction,
                      reason: Optional[str], attempt: int) -> None:
        path = self.marker_path(project_id, session_id, action)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "action": action.value,
            "sessionId": session_id,
            "projectId": project_id,
            "timestamp": utc_now().isoformat(),
            "reason": reason or f"Session {action.value} requested",
            "attempt": attempt,
        }
        path.write_text(json.dumps(payload, indent=2))
        path.chmod(0o644)

    async def create_marker(
        self,
        project_id: str,
        session_id: str,
        action: SessionControlAction,
        reason: Optional[str] = None,
    ) -> None:
        """Persist a control marker, retrying transient failures."""
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
            try:
                await asyncio.to_thread(self._write_marker, project_id, session_id, action, reason, attempt)
                return
            except (PermissionError, InvalidIdentifierError):
                raise
            except OSError as e:
                last_error = e
                if attempt < MAX_RETRY_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))
        logger.error(
            f"Failed to create {action.value} marker after {MAX_RETRY_ATTEMPTS} attempts: {last_error}"
        )
        raise last_error

    def _unlink_marker(self, project_id: str, session_id: str, action: SessionControlAction) -> None:
        self.marker_path(project_id, session_id, action).unlink(missing_ok=True)

    async def remove_marker(self, project_id: str, session_id: str, action: SessionControlAction) -> None:
        try:
            await asyncio.to_thread(self._unlink_marker, project_id, session_id, action)
        except OSError as e:
            logger.warning(f"Failed to remove {action.value} marker for {session_id}: {e}")

    # -- processes ------------------------------------------------------

    async def _find_processes(self) -> list[int]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.matcher.find_processes), self.process_timeout
            )
        except Exception as e:
            logger.warning(f"Process scan failed: {e}")
            return []

    async def _signal(self, pid: int, sig: signal.Signals) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.matcher.send_signal, pid, sig), self.process_timeout
            )
        except Exception as e:
            logger.warning(f"Failed to signal process {pid}: {e}")
            return False

    async def _signal_all(self, sig: signal.Signals) -> list[int]:
        signalled = []
        for pid in await self._find_processes():
            if await self._signal(pid, sig):
                signalled.append(pid)
        return signalled

    def _schedule(self, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        async def run():
            await asyncio.sleep(delay)
            await action()

        task = asyncio.create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def aclose(self) -> None:
        """Cancel delayed marker cleanups and kills that have not run yet."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- controls -------------------------------------------------------

    async def get_session_controls(self, project_id: str, session_id: str) -> SessionControls:
        """Controls for the session's currently detected state."""
        try:
            if not await asyncio.to_thread(self.store.session_exists, project_id, session_id):
                return SessionControls.from_actions(project_id, session_id, (SessionControlAction.RESTART,))
            state = await self.detector.detect_state(project_id, session_id)
            return SessionControls.for_state(project_id, session_id, state)
        except Exception as e:
            logger.error(f"Failed to get session controls for {session_id}: {e}")
            return SessionControls.from_actions(project_id, session_id, ())

    async def execute_control(self, request: SessionControlRequest) -> SessionControlResult:
        """Run a control action. Failures are returned, never raised."""
        project_id, session_id, action = request.project_id, request.session_id, request.action
        try:
            if action != SessionControlAction.RESTART:
                exists = await asyncio.to_thread(self.store.session_exists, project_id, session_id)
                if not exists:
                    return control_result(
                        session_id, action, False, "Session file not accessible or does not exist"
                    )

            if action == SessionControlAction.PAUSE:
                return await self.pause_session(project_id, session_id, request.reason)
            if action == SessionControlAction.RESUME:
                return await self.resume_session(project_id, session_id)
            if action == SessionControlAction.TERMINATE:
                return await self.terminate_session(project_id, session_id, request.force)
            if action == SessionControlAction.RESTART:
                return await self.restart_session(project_id, session_id)
            return control_result(session_id, action, False, f"Unknown action: {action}")
        except Exception as e:
            logger.error(f"Failed to execute control action {action.value} for {session_id}: {e}")
            return control_result(session_id, action, False, f"Failed to execute {action.value}: {e}")

    async def pause_session(self, project_id: str, session_id: str,
                            reason: Optional[str] = None) -> SessionControlResult:
        action = SessionControlAction.PAUSE
        try:
            await self.create_marker(project_id, session_id, action, reason)
            signalled = await self._signal_all(signal.SIGTERM)
        except Exception as e:
            return control_result(session_id, action, False, f"Failed to pause session: {e}")

        if signalled:
            message = f"Session paused. Sent pause signals to {len(signalled)} processes."
        else:
            message = "Session pause marker created. No active processes found to signal."
        logger.info(f"Paused {project_id}/{session_id}: {message}")
        return control_result(session_id, action, True, message, SessionState.PAUSED)

    async def resume_session(self, project_id: str, session_id: str) -> SessionControlResult:
        action = SessionControlAction.RESUME
        try:
            await self.remove_marker(project_id, session_id, SessionControlAction.PAUSE)
            await self.create_marker(project_id, session_id, action)
        except Exception as e:
            return control_result(session_id, action, False, f"Failed to resume session: {e}")

        self._schedule(
            self.resume_marker_ttl,
            lambda: self.remove_marker(project_id, session_id, SessionControlAction.RESUME),
        )
        logger.info(f"Resumed {project_id}/{session_id}")
        return control_result(
            session_id, action, True, "Session resumed. Pause markers removed.", SessionState.ACTIVE
        )

    async def terminate_session(self, project_id: str, session_id: str,
                                force: bool = False) -> SessionControlResult:
        action = SessionControlAction.TERMINATE
        try:
            await self.create_marker(
                project_id, session_id, action, "Force termination" if force else None
            )
            signalled = await self._signal_all(signal.SIGTERM)
            if force:
                for pid in signalled:
                    self._schedule(self.kill_grace_period, self._kill_later(pid))
            await self.remove_marker(project_id, session_id, SessionControlAction.PAUSE)
            await self.remove_marker(project_id, session_id, SessionControlAction.RESUME)
        except Exception as e:
            return control_result(session_id, action, False, f"Failed to terminate session: {e}")

        if signalled:
            message = f"Session terminated. Stopped {len(signalled)} processes."
            if force:
                message += " Force termination used."
        else:
            message = "Session termination markers created. No active processes found."
        logger.info(f"Terminated {project_id}/{session_id}: {message}")
        return control_result(session_id, action, True, message, SessionState.TERMINATED)

    def _kill_later(self, pid: int) -> Callable[[], Awaitable[None]]:
        async def kill():
            await self._signal(pid, signal.SIGKILL)
        return kill

    async def restart_session(self, project_id: str, session_id: str) -> SessionControlResult:
        action = SessionControlAction.RESTART
        try:
            terminated = await self.terminate_session(project_id, session_id, force=True)
            if not terminated.success:
                logger.warning(f"Terminate before restart failed for {session_id}: {terminated.message}")
            await asyncio.gather(
                self.remove_marker(project_id, session_id, SessionControlAction.PAUSE),
                self.remove_marker(project_id, session_id, SessionControlAction.RESUME),
                self.remove_marker(project_id, session_id, SessionControlAction.TERMINATE),
            )
            await self.create_marker(project_id, session_id, action)
        except Exception as e:
            return control_result(session_id, action, False, f"Failed to restart session: {e}")

        logger.info(f"Restart requested for {project_id}/{session_id}")
        return control_result(
            session_id,
            action,
            True,
            "Session restart initiated. Previous session terminated and restart marker created; "
            "relaunch is left to an external supervisor.",
            SessionState.ACTIVE,
        )
