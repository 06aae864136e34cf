"""Session models: process states, persisted records and monitor bookkeeping."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

MAX_STATE_HISTORY = 100


def to_local_naive(value: datetime) -> datetime:
    """Convert an offset-aware datetime to naive local time. Naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class ProcessState(str, Enum):
    """Classified activity of a session's foreground process.

    The state machine is fully connected: any state may follow any other.
    UNKNOWN is both the initial state and the answer when nothing matched.
    """

    UNKNOWN = "unknown"
    """Initial state, or no signal could classify the process."""

    IDLE = "idle"
    """Prompt is ready, nothing running."""

    BUSY = "busy"
    """Actively working (progress markers, running on CPU)."""

    WAITING = "waiting"
    """Blocked on user input or disk."""

    ERROR = "error"
    """Error output, or the process is a zombie."""


class PersistedSession(BaseModel):
    """Durable record of one terminal session.

    Owned by SessionStateStore. Callers only ever see deep copies.
    """

    id: str = Field(..., description="Session ID (see services.naming)")
    name: str = Field(default="", description="Human-readable session name")
    project: str = Field(default="", description="Project the session belongs to")
    worktree: str = Field(default="", description="Worktree name")
    branch: str = Field(default="", description="Checked-out branch")
    directory: str = Field(default="", description="Working directory of the session")
    created: datetime = Field(default_factory=datetime.now)
    last_access: datetime = Field(default_factory=datetime.now)
    last_state: ProcessState = Field(
        default=ProcessState.UNKNOWN,
        description="Last process state observed by the monitor",
    )
    environment: dict[str, str] = Field(
        default_factory=dict,
        description="Environment variable overlay for the session",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Open-ended extension data; unknown update keys land here",
    )

    @field_validator("environment", "metadata", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("created", "last_access")
    @classmethod
    def _naive_local(cls, value: datetime) -> datetime:
        return to_local_naive(value)


@dataclass(frozen=True)
class StateChange:
    """One accepted transition of a monitored session."""

    from_state: ProcessState
    to_state: ProcessState
    timestamp: datetime
    trigger: str

    def to_dict(self) -> dict:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "trigger": self.trigger,
        }


@dataclass
class MonitoredSession:
    """In-memory tracking entry for a session under monitoring."""

    session_id: str
    pid: int
    current_state: ProcessState = ProcessState.UNKNOWN
    last_state_change: datetime = field(default_factory=datetime.now)
    history: list[StateChange] = field(default_factory=list)

    def record(self, change: StateChange) -> None:
        """Apply a transition and keep only the most recent history entries."""
        self.current_state = change.to_state
        self.last_state_change = change.timestamp
        self.history.append(change)
        if len(self.history) > MAX_STATE_HISTORY:
            self.history = self.history[-MAX_STATE_HISTORY:]
