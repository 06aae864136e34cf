"""Exceptions raised by the session store, monitor and backends."""


class WorktreeSessionsError(Exception):
    """Base exception for worktree session management."""


class SessionNotFoundError(WorktreeSessionsError):
    """Operation on a session ID that is not known (or not monitored)."""

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or f"session {session_id} not found")


class SessionValidationError(WorktreeSessionsError, ValueError):
    """Empty or malformed input."""


class InvalidSessionIDError(SessionValidationError):
    """A string that is not a well-formed session ID."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"invalid session name format: {session_id!r}")


class AlreadyMonitoringError(WorktreeSessionsError):
    """start_monitoring called for a session that is already monitored."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session {session_id} is already being monitored")


class ExternalCommandError(WorktreeSessionsError):
    """An external command (tmux, ps) failed or timed out."""


class NoPanesError(ExternalCommandError):
    """The session exists but has no panes to inspect."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"no panes found for session {session_id}")


class DetectionError(ExternalCommandError):
    """Both detection signals failed outright."""

    def __init__(self, session_id: str, output_error: Exception, process_error: Exception):
        self.session_id = session_id
        self.output_error = output_error
        self.process_error = process_error
        super().__init__(
            f"all detection methods failed for {session_id}: "
            f"output={output_error}, process={process_error}"
        )


class StatePersistenceError(WorktreeSessionsError):
    """The state file could not be read or written."""
