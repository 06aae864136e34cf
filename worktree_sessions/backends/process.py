"""OS process table queries."""

import subprocess

from worktree_sessions.exceptions import ExternalCommandError


def read_scheduler_state(pid: int, timeout: float = 2.0) -> str:
    """Return the scheduler state code of a process as reported by `ps`.

    Args:
        pid: Process ID to query.
        timeout: Seconds to wait for `ps`.

    Returns:
        The raw state code, e.g. "S", "R+", "Z".

    Raises:
        ExternalCommandError: If the PID is invalid, `ps` fails or times out,
            or the process does not exist.
    """
    if pid <= 0:
        raise ExternalCommandError(f"invalid PID: {pid}")

    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "state="],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise ExternalCommandError(f"ps timed out for PID {pid}") from None
    except FileNotFoundError:
        raise ExternalCommandError("ps not found") from None

    state = (result.stdout or "").strip()
    if result.returncode != 0 or not state:
        raise ExternalCommandError(f"failed to get process state for PID {pid}")
    return state
