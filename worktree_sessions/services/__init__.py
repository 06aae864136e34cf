"""Services for worktree session monitoring."""

from worktree_sessions.services.config_service import ConfigService
from worktree_sessions.services.naming import (
    MAX_SESSION_ID_LENGTH,
    SESSION_PREFIX,
    generate_session_id,
    parse_session_id,
    sanitize_component,
    validate_session_id,
)
from worktree_sessions.services.process_monitor import (
    DEFAULT_STATE_PATTERNS,
    ProcessMonitor,
    StatePattern,
    analyze_output,
    map_scheduler_state,
)
from worktree_sessions.services.state_store import SessionStateStore, load_state

__all__ = [
    "ConfigService",
    # Naming
    "MAX_SESSION_ID_LENGTH",
    "SESSION_PREFIX",
    "generate_session_id",
    "parse_session_id",
    "sanitize_component",
    "validate_session_id",
    # Monitor
    "DEFAULT_STATE_PATTERNS",
    "ProcessMonitor",
    "StatePattern",
    "analyze_output",
    "map_scheduler_state",
    # Store
    "SessionStateStore",
    "load_state",
]
