"""Terminal multiplexer backend implementations."""

from worktree_sessions.backends.base import SessionBackend
from worktree_sessions.backends.process import read_scheduler_state
from worktree_sessions.backends.tmux import TmuxBackend

__all__ = [
    "SessionBackend",
    "TmuxBackend",
    "read_scheduler_state",
]
