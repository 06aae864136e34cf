"""Domain models for worktree session monitoring."""

from worktree_sessions.models.config import AppConfig, TmuxConfig
from worktree_sessions.models.session import (
    MAX_STATE_HISTORY,
    MonitoredSession,
    PersistedSession,
    ProcessState,
    StateChange,
)

__all__ = [
    # Config
    "AppConfig",
    "TmuxConfig",
    # Sessions
    "MAX_STATE_HISTORY",
    "MonitoredSession",
    "PersistedSession",
    "ProcessState",
    "StateChange",
]
