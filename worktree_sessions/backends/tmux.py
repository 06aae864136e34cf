"""tmux session backend.

Shells out to the tmux binary. Every call carries a short timeout so a hung
tmux server cannot stall a monitor worker.
"""

import logging
import shutil
import subprocess

from worktree_sessions.backends.base import SessionBackend
from worktree_sessions.exceptions import ExternalCommandError, NoPanesError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 2.0

# Exit codes reported by _run_tmux when tmux itself never ran to completion
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


def _run_tmux(*args: str, timeout: float = DEFAULT_TIMEOUT, executable: str = "tmux") -> tuple[int, str, str]:
    """Run a tmux command.

    Args:
        *args: Command arguments to pass to tmux.
        timeout: Command timeout in seconds.
        executable: tmux binary to invoke.

    Returns:
        Tuple of (return_code, stdout, stderr).
    """
    cmd = [executable, *args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return (result.returncode, result.stdout or "", result.stderr or "")
    except subprocess.TimeoutExpired:
        return (EXIT_TIMEOUT, "", "Command timed out")
    except FileNotFoundError:
        return (EXIT_NOT_FOUND, "", "tmux not found")


class TmuxBackend(SessionBackend):
    """tmux-based session backend."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, executable: str = "tmux"):
        """Initialize the tmux backend.

        Args:
            timeout: Timeout in seconds for each tmux call.
            executable: tmux binary to invoke.
        """
        self.timeout = timeout
        self.executable = executable

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "tmux"

    def is_available(self) -> bool:
        """Check if tmux is installed."""
        return shutil.which(self.executable) is not None

    def _run(self, *args: str) -> tuple[int, str, str]:
        return _run_tmux(*args, timeout=self.timeout, executable=self.executable)

    def _check(self, action: str, *args: str) -> str:
        """Run tmux and return stdout, raising on any non-zero exit."""
        returncode, stdout, stderr = self._run(*args)
        if returncode != 0:
            detail = stderr.strip() or f"exit status {returncode}"
            raise ExternalCommandError(f"failed to {action}: {detail}")
        return stdout

    def list_panes(self, session_id: str) -> list[str]:
        """List pane IDs of a session.

        Args:
            session_id: The session name.

        Returns:
            Pane IDs (e.g. ["%0", "%1"]), possibly empty.
        """
        stdout = self._check("list panes", "list-panes", "-t", session_id, "-F", "#{pane_id}")
        return [line for line in stdout.strip().split("\n") if line]

    def _primary_pane(self, session_id: str) -> str:
        panes = self.list_panes(session_id)
        if not panes:
            raise NoPanesError(session_id)
        return panes[0]

    def capture_output(self, session_id: str) -> str:
        """Capture the visible content of the session's first pane."""
        pane = self._primary_pane(session_id)
        return self._check("capture pane", "capture-pane", "-t", f"{session_id}:{pane}", "-p")

    def resolve_pid(self, session_id: str) -> int:
        """Read the PID of the session's first pane."""
        pane = self._primary_pane(session_id)
        stdout = self._check(
            "get pane PID", "display-message", "-t", f"{session_id}:{pane}", "-p", "#{pane_pid}"
        )
        pid_str = stdout.strip()
        try:
            return int(pid_str)
        except ValueError:
            raise ExternalCommandError(f"invalid PID format: {pid_str!r}") from None

    def session_exists(self, session_id: str) -> bool:
        """Check a session with `tmux has-session`.

        Exit status 1 means the session is absent; timeouts and a missing
        tmux binary are errors rather than a negative answer.
        """
        returncode, _, stderr = self._run("has-session", "-t", session_id)
        if returncode == 0:
            return True
        if returncode == 1:
            return False
        raise ExternalCommandError(f"failed to check tmux session: {stderr.strip()}")
