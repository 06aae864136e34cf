"""Pytest configuration and shared fixtures for worktree session tests."""

import tempfile
from pathlib import Path

import pytest

from worktree_sessions.backends.base import SessionBackend
from worktree_sessions.exceptions import ExternalCommandError, NoPanesError


class FakeBackend(SessionBackend):
    """In-memory SessionBackend.

    Sessions are registered with add(); output, PID and existence can then
    be changed per test. An exception set in capture_errors / pid_errors /
    exists_errors is raised instead of answering.
    """

    def __init__(self):
        self.outputs: dict[str, str] = {}
        self.pids: dict[str, int] = {}
        self.existing: set[str] = set()
        self.capture_errors: dict[str, Exception] = {}
        self.pid_errors: dict[str, Exception] = {}
        self.exists_errors: dict[str, Exception] = {}
        self.capture_calls = 0

    @property
    def backend_name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    def add(self, session_id: str, pid: int = 4242, output: str = "") -> None:
        self.pids[session_id] = pid
        self.outputs[session_id] = output
        self.existing.add(session_id)

    def capture_output(self, session_id: str) -> str:
        self.capture_calls += 1
        if session_id in self.capture_errors:
            raise self.capture_errors[session_id]
        if session_id not in self.outputs:
            raise NoPanesError(session_id)
        return self.outputs[session_id]

    def resolve_pid(self, session_id: str) -> int:
        if session_id in self.pid_errors:
            raise self.pid_errors[session_id]
        if session_id not in self.pids:
            raise NoPanesError(session_id)
        return self.pids[session_id]

    def session_exists(self, session_id: str) -> bool:
        if session_id in self.exists_errors:
            raise self.exists_errors[session_id]
        return session_id in self.existing


class FakeProbe:
    """Stands in for read_scheduler_state."""

    def __init__(self, code: str = "S"):
        self.code = code
        self.error: Exception | None = None
        self.calls: list[int] = []

    def __call__(self, pid: int, timeout: float) -> str:
        self.calls.append(pid)
        if self.error is not None:
            raise self.error
        return self.code


@pytest.fixture
def temp_dir():
    """Create a temporary directory for state files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def backend():
    """Create an empty FakeBackend."""
    return FakeBackend()


@pytest.fixture
def probe():
    """Create a FakeProbe reporting a sleeping process."""
    return FakeProbe()


@pytest.fixture
def probe_failure():
    """An error for FakeProbe.error."""
    return ExternalCommandError("failed to get process state")
