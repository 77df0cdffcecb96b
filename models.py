"""
Pydantic models for the Session Monitoring API.

Python attributes are snake_case; the wire format is camelCase.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """Base model with camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionState(str, Enum):
    """Lifecycle state inferred for a session on each poll."""
    ACTIVE = "active"
    IDLE = "idle"
    STALLED = "stalled"
    PAUSED = "paused"
    TERMINATED = "terminated"
    ERROR = "error"


class SessionControlAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    TERMINATE = "terminate"
    RESTART = "restart"


# Fixed state -> available actions table.
AVAILABLE_ACTIONS: dict[SessionState, tuple[SessionControlAction, ...]] = {
    SessionState.ACTIVE: (SessionControlAction.PAUSE, SessionControlAction.TERMINATE),
    SessionState.IDLE: (SessionControlAction.PAUSE, SessionControlAction.TERMINATE),
    SessionState.PAUSED: (SessionControlAction.RESUME, SessionControlAction.TERMINATE),
    SessionState.STALLED: (SessionControlAction.RESTART, SessionControlAction.TERMINATE),
    SessionState.ERROR: (SessionControlAction.RESTART, SessionControlAction.TERMINATE),
    SessionState.TERMINATED: (SessionControlAction.RESTART,),
}


class EntryMetadata(ApiModel):
    token_count: Optional[int] = None
    duration: Optional[float] = None


class TranscriptEntry(ApiModel):
    """One record of a session transcript (a JSONL line)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    type: str
    content: Any
    timestamp: Optional[datetime] = None
    metadata: Optional[EntryMetadata] = None
    tool_name: Optional[str] = None
    is_error: bool = False

    @property
    def text(self) -> str:
        """Content flattened to lowercase text for keyword checks."""
        if isinstance(self.content, str):
            return self.content.lower()
        return str(self.content).lower()


class SessionInfo(ApiModel):
    """Listing record for one session transcript."""
    id: str
    file_name: str
    file_path: str
    file_size: int
    last_modified: datetime
    is_accessible: bool


class SessionHealth(ApiModel):
    last_activity_at: datetime
    response_time: Optional[float] = None
    memory_usage: Optional[float] = None
    cpu_usage: Optional[float] = None
    error_count: int = Field(default=0, ge=0)
    warnings: list[str] = Field(default_factory=list)


class TokenUsage(ApiModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @classmethod
    def of(cls, input_tokens: int, output_tokens: int) -> "TokenUsage":
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )


class SessionProgress(ApiModel):
    current_activity: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    messages_count: int = 0
    duration: float = 0


class UpdateMetadata(ApiModel):
    process_id: Optional[int] = None
    started_at: datetime
    last_update_at: datetime
    version: Optional[str] = None
    environment: Optional[str] = None


class SessionControls(ApiModel):
    """Capability flags for a session, derived from its state."""
    session_id: str
    project_id: str
    available_actions: list[SessionControlAction]
    can_pause: bool
    can_resume: bool
    can_terminate: bool
    can_restart: bool

    @classmethod
    def from_actions(
        cls,
        project_id: str,
        session_id: str,
        actions: tuple[SessionControlAction, ...] | list[SessionControlAction],
    ) -> "SessionControls":
        return cls(
            session_id=session_id,
            project_id=project_id,
            available_actions=list(actions),
            can_pause=SessionControlAction.PAUSE in actions,
            can_resume=SessionControlAction.RESUME in actions,
            can_terminate=SessionControlAction.TERMINATE in actions,
            can_restart=SessionControlAction.RESTART in actions,
        )

    @classmethod
    def for_state(cls, project_id: str, session_id: str, state: SessionState) -> "SessionControls":
        return cls.from_actions(project_id, session_id, AVAILABLE_ACTIONS[state])


class MonitoringUpdate(ApiModel):
    """Full snapshot of one session, produced fresh on each poll."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    session_id: str
    project_id: str
    state: SessionState
    health: SessionHealth
    progress: SessionProgress
    metadata: UpdateMetadata
    controls: Optional[SessionControls] = None
    timestamp: datetime


class MonitoringConfig(ApiModel):
    """Per-project monitoring configuration. Intervals are milliseconds."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    poll_interval: int = Field(default=2000, ge=1000)
    health_check_interval: int = Field(default=10000, ge=0)
    stale_threshold: int = Field(default=300000, ge=0)
    max_sessions: int = Field(default=50, ge=1)
    enable_auto_recovery: bool = False
    enable_notifications: bool = False


class OverallStats(ApiModel):
    active_sessions: int = 0
    total_sessions: int = 0
    average_response_time: Optional[float] = None
    system_load: float = 0


class MonitoringData(ApiModel):
    """Project-level aggregate of the latest poll cycle."""
    project_id: str
    sessions: list[MonitoringUpdate]
    overall_stats: OverallStats
    last_updated: datetime
    config: MonitoringConfig
    stale: bool = False
    last_error: Optional[str] = None
    consecutive_failures: int = 0


class SessionControlRequest(ApiModel):
    session_id: str
    project_id: str
    action: SessionControlAction
    reason: Optional[str] = None
    force: bool = False


class SessionControlResult(ApiModel):
    session_id: str
    action: SessionControlAction
    success: bool
    message: Optional[str] = None
    new_state: Optional[SessionState] = None
    timestamp: datetime = Field(default_factory=utc_now)


class MonitoringStatus(ApiModel):
    project_id: str
    is_active: bool
    last_updated: Optional[datetime] = None


class MonitoringAction(ApiModel):
    """Request body for POST /projects/{id}/monitoring."""
    action: str
    config: Optional[dict[str, Any]] = None
    request: Optional[SessionControlRequest] = None


class MonitoringActionResponse(ApiModel):
    project_id: str
    status: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
