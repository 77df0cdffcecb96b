"""
Infers a session's lifecycle state from its transcript.

There is no authoritative liveness signal, so state is derived from the
transcript's modification time and the content of its last few records.
All public coroutines are total: they return a safe value instead of raising.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from models import (
    MonitoringUpdate,
    SessionControls,
    SessionHealth,
    SessionInfo,
    SessionProgress,
    SessionState,
    TokenUsage,
    TranscriptEntry,
    UpdateMetadata,
    utc_now,
)
from transcript_store import TranscriptStore, TranscriptTooLargeError

logger = logging.getLogger(__name__)

STALE_THRESHOLD = 5 * 60 * 1000
ERROR_THRESHOLD = 30 * 60 * 1000

STATE_WINDOW = 20
HEALTH_WINDOW = 50
PROGRESS_WINDOW = 1000
RECENT_ENTRIES = 5
HIGH_ERROR_COUNT = 3

READ_TIMEOUT = 5.0

ERROR_KEYWORDS = ("error",)

WARNING_INACTIVE = "Session has been inactive for an extended period"
WARNING_ERROR_RATE = "High error rate detected in recent activity"
WARNING_TOO_LARGE = "Transcript exceeds size limit; content analysis skipped"
WARNING_HEALTH_FAILED = "Failed to analyze session health"
WARNING_UPDATE_FAILED = "Failed to generate monitoring update"

T = TypeVar("T")


def is_error_entry(entry: TranscriptEntry) -> bool:
    if entry.is_error:
        return True
    text = entry.text
    return any(keyword in text for keyword in ERROR_KEYWORDS)


def classify_entries(entries: list[TranscriptEntry]) -> SessionState:
    """Classify recent activity. Errors take precedence over activity."""
    if not entries:
        return SessionState.IDLE

    recent = entries[-RECENT_ENTRIES:]
    if any(is_error_entry(e) for e in recent):
        return SessionState.ERROR

    has_user = any(e.type == "user" for e in recent)
    has_assistant = any(e.type == "assistant" for e in recent)
    has_tools = any(e.type in ("tool_use", "tool_result") for e in recent)

    if has_tools or (has_user and has_assistant):
        return SessionState.ACTIVE
    if has_user and not has_assistant:
        # Awaiting a response
        return SessionState.ACTIVE
    return SessionState.IDLE


def calculate_token_usage(entries: list[TranscriptEntry]) -> TokenUsage:
    input_tokens = 0
    output_tokens = 0
    for entry in entries:
        count = entry.metadata.token_count if entry.metadata else None
        if not count or count < 0:
            continue
        if entry.type == "user":
            input_tokens += count
        elif entry.type == "assistant":
            output_tokens += count
    return TokenUsage.of(input_tokens, output_tokens)


def current_activity(entries: list[TranscriptEntry]) -> Optional[str]:
    """Guess what the session is doing from its last few entries."""
    for entry in reversed(entries[-3:]):
        if entry.type == "tool_use" and entry.tool_name:
            return f"Using tool: {entry.tool_name}"
        if entry.type == "assistant":
            text = entry.text
            if "reading" in text or "analyzing" in text:
                return "Analyzing code"
            if "writing" in text or "creating" in text:
                return "Writing code"
            if "searching" in text or "finding" in text:
                return "Searching files"
            return "Processing request"
    return None


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def session_duration(entries: list[TranscriptEntry]) -> float:
    """Milliseconds between the first and last timestamped entries."""
    stamps = [_aware(e.timestamp) for e in entries if e.timestamp is not None]
    if len(stamps) < 2:
        return 0
    return max(0.0, (stamps[-1] - stamps[0]).total_seconds() * 1000)


def mean_response_time(entries: list[TranscriptEntry]) -> Optional[float]:
    durations = [
        e.metadata.duration
        for e in entries
        if e.type == "assistant" and e.metadata and e.metadata.duration is not None
    ]
    if not durations:
        return None
    return sum(durations) / len(durations)


def degraded_update(project_id: str, session_id: str, warning: str = WARNING_UPDATE_FAILED) -> MonitoringUpdate:
    """A structurally valid update in the error state."""
    now = utc_now()
    return MonitoringUpdate(
        session_id=session_id,
        project_id=project_id,
        state=SessionState.ERROR,
        health=SessionHealth(last_activity_at=now, error_count=1, warnings=[warning]),
        progress=SessionProgress(),
        metadata=UpdateMetadata(started_at=now, last_update_at=now),
        controls=SessionControls.for_state(project_id, session_id, SessionState.ERROR),
        timestamp=now,
    )


class SessionStateDetector:
    """Derives state, health and progress for sessions of a transcript store."""

    def __init__(
        self,
        store: Optional[TranscriptStore] = None,
        stale_threshold: int = STALE_THRESHOLD,
        error_threshold: int = ERROR_THRESHOLD,
        read_timeout: float = READ_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or TranscriptStore()
        self.stale_threshold = stale_threshold
        self.error_threshold = error_threshold
        self.read_timeout = read_timeout
        self._clock = clock

    async def _run(self, func: Callable[..., T], *args) -> T:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), self.read_timeout)

    def _age_ms(self, mtime: float) -> float:
        return (self._clock() - mtime) * 1000

    async def detect_state(self, project_id: str, session_id: str) -> SessionState:
        """Infer the current lifecycle state of one session."""
        try:
            path = self.store.session_path(project_id, session_id)
        except ValueError as e:
            logger.warning(f"Rejected state detection for {project_id}/{session_id}: {e}")
            return SessionState.ERROR

        try:
            if not await self._run(path.is_file):
                return SessionState.TERMINATED
            mtime = (await self._run(path.stat)).st_mtime
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Cannot stat transcript for {session_id}: {e}")
            return SessionState.ERROR

        age = self._age_ms(mtime)
        if age > self.error_threshold:
            return SessionState.TERMINATED
        if age > self.stale_threshold:
            return SessionState.STALLED

        try:
            entries = await self._run(self.store.read_entries, project_id, session_id, STATE_WINDOW)
        except TranscriptTooLargeError as e:
            logger.warning(f"Skipping content analysis for {session_id}: {e}")
            entries = []
        except Exception as e:
            logger.error(f"Failed to detect session state for {session_id}: {e}")
            return SessionState.ERROR
        return classify_entries(entries)

    async def analyze_health(self, project_id: str, session_id: str) -> SessionHealth:
        """Count recent errors and derive warnings and response time."""
        try:
            path = self.store.session_path(project_id, session_id)
            try:
                mtime: Optional[float] = (await self._run(path.stat)).st_mtime
            except OSError:
                mtime = None

            warnings = []
            entries = []
            if mtime is not None:
                try:
                    entries = await self._run(self.store.read_entries, project_id, session_id, HEALTH_WINDOW)
                except TranscriptTooLargeError:
                    warnings.append(WARNING_TOO_LARGE)

            error_count = sum(1 for e in entries if is_error_entry(e))
            if mtime is not None and self._age_ms(mtime) > self.stale_threshold:
                warnings.append(WARNING_INACTIVE)
            if error_count > HIGH_ERROR_COUNT:
                warnings.append(WARNING_ERROR_RATE)

            last_activity = (
                datetime.fromtimestamp(mtime, tz=timezone.utc) if mtime is not None else utc_now()
            )
            return SessionHealth(
                last_activity_at=last_activity,
                response_time=mean_response_time(entries),
                error_count=error_count,
                warnings=warnings,
            )
        except Exception as e:
            logger.error(f"Failed to analyze session health for {session_id}: {e}")
            return SessionHealth(last_activity_at=utc_now(), error_count=1, warnings=[WARNING_HEALTH_FAILED])

    async def _progress(self, project_id: str, session_id: str) -> SessionProgress:
        try:
            entries = await self._run(self.store.read_entries, project_id, session_id, PROGRESS_WINDOW)
        except TranscriptTooLargeError:
            entries = []
        return SessionProgress(
            current_activity=current_activity(entries),
            token_usage=calculate_token_usage(entries),
            messages_count=sum(1 for e in entries if e.type in ("user", "assistant")),
            duration=session_duration(entries),
        )

    async def _started_at(self, project_id: str, session_id: str) -> datetime:
        try:
            stats = await self._run(self.store.stat, project_id, session_id)
        except (OSError, asyncio.TimeoutError):
            return utc_now()
        # Birth time where the platform has it, else inode change time
        created = getattr(stats, "st_birthtime", None) or stats.st_ctime
        return datetime.fromtimestamp(created, tz=timezone.utc)

    async def generate_update(self, project_id: str, session_id: str) -> MonitoringUpdate:
        """Compose state, health and progress into one monitoring update."""
        try:
            self.store.session_path(project_id, session_id)
            state, health = await asyncio.gather(
                self.detect_state(project_id, session_id),
                self.analyze_health(project_id, session_id),
            )
            if state == SessionState.TERMINATED and not self.store.session_exists(project_id, session_id):
                progress = SessionProgress()
            else:
                progress = await self._progress(project_id, session_id)
            started_at = await self._started_at(project_id, session_id)
            now = utc_now()
            return MonitoringUpdate(
                session_id=session_id,
                project_id=project_id,
                state=state,
                health=health,
                progress=progress,
                metadata=UpdateMetadata(
                    started_at=started_at,
                    last_update_at=now,
                    version=os.environ.get("CLAUDE_VERSION"),
                    environment=os.environ.get("MONITOR_ENV", "development"),
                ),
                controls=SessionControls.for_state(project_id, session_id, state),
                timestamp=now,
            )
        except Exception as e:
            logger.error(f"Failed to generate monitoring update for {session_id}: {e}")
            return degraded_update(project_id, session_id)

    def is_session_active(self, session: SessionInfo) -> bool:
        """True if the session was modified within the error threshold."""
        if not session.is_accessible:
            return False
        age = self._age_ms(session.last_modified.timestamp())
        return age < self.error_threshold
