"""Abstract base class for terminal multiplexer backends.

Defines the narrow surface the store and monitor need from a multiplexer.
"""

from abc import ABC, abstractmethod


class SessionBackend(ABC):
    """Abstract interface for session backends.

    Session backends provide the ability to:
    - Capture the primary pane's recent output
    - Resolve the PID of the pane's foreground process
    - Check whether a session still exists

    Failures raise ExternalCommandError rather than returning sentinels, so
    callers can tell "no output matched" apart from "could not capture".
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier (e.g., 'tmux')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the backend is installed.

        Returns:
            True if the backend can be used, False otherwise.
        """

    @abstractmethod
    def capture_output(self, session_id: str) -> str:
        """Capture recent terminal content from the session's primary pane.

        Args:
            session_id: The session identifier.

        Returns:
            Terminal content as a string.

        Raises:
            NoPanesError: If the session has no panes.
            ExternalCommandError: If the capture fails or times out.
        """

    @abstractmethod
    def resolve_pid(self, session_id: str) -> int:
        """Resolve the process ID running in the session's primary pane.

        Args:
            session_id: The session identifier.

        Returns:
            The pane's process ID.

        Raises:
            NoPanesError: If the session has no panes.
            ExternalCommandError: If the PID cannot be read.
        """

    @abstractmethod
    def session_exists(self, session_id: str) -> bool:
        """Check whether a session exists.

        Args:
            session_id: The session identifier.

        Returns:
            True if the session exists, False if it does not.

        Raises:
            ExternalCommandError: If existence cannot be determined.
        """
