"""Worktree session monitoring for terminal multiplexer sessions."""

__version__ = "0.1.0"
