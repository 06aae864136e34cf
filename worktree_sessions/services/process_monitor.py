"""ProcessMonitor - polls sessions and classifies what their process is doing.

Two independent signals are combined:

1. Output: the last lines of the session's pane are matched against a
   table of (regex, state, confidence) patterns.
2. Process table: the scheduler state of the pane's PID, used when the
   output gives nothing.

Each monitored session gets its own worker thread that polls on a fixed
interval. A transition updates the in-memory entry, is written through to
the state store when one is wired, and is announced to the registered state
hooks.
"""

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from worktree_sessions.backends.base import SessionBackend
from worktree_sessions.backends.process import read_scheduler_state
from worktree_sessions.exceptions import (
    AlreadyMonitoringError,
    DetectionError,
    SessionNotFoundError,
    WorktreeSessionsError,
)
from worktree_sessions.models.session import MonitoredSession, ProcessState, StateChange
from worktree_sessions.services.state_store import SessionStateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_PROBE_TIMEOUT = 2.0
RECENT_OUTPUT_LINES = 20

TRIGGER_POLL = "poll"
TRIGGER_ON_DEMAND = "state_detection"

StateHook = Callable[[str, ProcessState, ProcessState], None]
ProcessProbe = Callable[[int, float], str]


@dataclass
class StatePattern:
    """One row of the output classification table.

    Confidence is a fixed weight for the pattern, not a measure of how well
    it matched.
    """

    pattern: str
    state: ProcessState
    confidence: float
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.regex = re.compile(self.pattern)


DEFAULT_STATE_PATTERNS: list[StatePattern] = [
    StatePattern(r"claude>", ProcessState.IDLE, 0.9),
    StatePattern(r"Processing\.\.\.", ProcessState.BUSY, 0.8),
    StatePattern(r"Waiting for input", ProcessState.WAITING, 0.9),
    StatePattern(r"Error:", ProcessState.ERROR, 0.95),
    StatePattern(r"Exception:", ProcessState.ERROR, 0.95),
    StatePattern(r"Failed:", ProcessState.ERROR, 0.9),
    StatePattern(r"Loading\.\.\.", ProcessState.BUSY, 0.7),
    StatePattern(r"Generating", ProcessState.BUSY, 0.8),
    StatePattern(r"Analyzing", ProcessState.BUSY, 0.8),
    StatePattern(r"\(esc to interrupt\)", ProcessState.BUSY, 0.85),
    StatePattern(r"\[y/n\]", ProcessState.WAITING, 0.85),
    StatePattern(r"Do you want to\s+", ProcessState.WAITING, 0.85),
]

# First character of a `ps -o state=` code
SCHEDULER_STATES: dict[str, ProcessState] = {
    "R": ProcessState.BUSY,
    "S": ProcessState.IDLE,
    "D": ProcessState.WAITING,
    "Z": ProcessState.ERROR,
}


def analyze_output(output: str, patterns: list[StatePattern] | None = None) -> ProcessState:
    """Classify terminal output.

    Only the last RECENT_OUTPUT_LINES lines are considered. The matching
    pattern with the highest confidence wins; on a tie the earlier pattern
    in the table wins.

    Args:
        output: Captured terminal content.
        patterns: Classification table. Defaults to DEFAULT_STATE_PATTERNS.

    Returns:
        The classified state, or UNKNOWN if nothing matched.
    """
    if patterns is None:
        patterns = DEFAULT_STATE_PATTERNS

    recent = "\n".join(output.split("\n")[-RECENT_OUTPUT_LINES:])

    best_state = ProcessState.UNKNOWN
    best_confidence = 0.0
    for pattern in patterns:
        if pattern.confidence > best_confidence and pattern.regex.search(recent):
            best_state = pattern.state
            best_confidence = pattern.confidence

    return best_state


def map_scheduler_state(code: str) -> ProcessState:
    """Map a `ps` state code (e.g. "S+", "R") to a ProcessState."""
    code = code.strip()
    if not code:
        return ProcessState.UNKNOWN
    return SCHEDULER_STATES.get(code[0], ProcessState.UNKNOWN)


class ProcessMonitor:
    """Tracks the process state of terminal sessions.

    Responsibilities:
    1. Resolve and remember each session's pane PID
    2. Poll each session on its own worker thread
    3. Classify state from output and the process table
    4. Record transitions, write them through to the store, notify hooks
    """

    def __init__(
        self,
        backend: SessionBackend,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        state_store: SessionStateStore | None = None,
        patterns: list[StatePattern] | None = None,
        process_probe: ProcessProbe = read_scheduler_state,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        """Initialize the monitor.

        Args:
            backend: Captures output and resolves PIDs.
            poll_interval: Seconds between polls of each session.
            state_store: If given, transitions update the stored last_state.
            patterns: Output classification table.
            process_probe: Returns the scheduler state code of a PID.
            probe_timeout: Timeout passed to process_probe.
        """
        self._backend = backend
        self.poll_interval = poll_interval
        self._store = state_store
        self._patterns = list(patterns) if patterns is not None else list(DEFAULT_STATE_PATTERNS)
        self._probe = process_probe
        self._probe_timeout = probe_timeout

        self._sessions: dict[str, MonitoredSession] = {}
        self._workers: dict[str, threading.Thread] = {}
        self._hooks: list[StateHook] = []
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._shutdown = threading.Event()

    # =========================================================================
    # Registration
    # =========================================================================

    def start_monitoring(self, session_id: str) -> None:
        """Start polling a session.

        Raises:
            AlreadyMonitoringError: If the session is already monitored.
            ExternalCommandError: If the session's PID cannot be resolved.
        """
        with self._lock:
            if session_id in self._sessions:
                raise AlreadyMonitoringError(session_id)

        pid = self._backend.resolve_pid(session_id)

        with self._lock:
            if session_id in self._sessions:
                raise AlreadyMonitoringError(session_id)
            session = MonitoredSession(session_id=session_id, pid=pid)
            self._sessions[session_id] = session
            worker = threading.Thread(
                target=self._worker,
                args=(session,),
                name=f"monitor-{session_id}",
                daemon=True,
            )
            self._workers[session_id] = worker

        worker.start()
        logger.info(f"Started monitoring {session_id} (pid {pid})")

    def stop_monitoring(self, session_id: str) -> None:
        """Stop polling a session. Its worker exits on the next tick.

        Raises:
            SessionNotFoundError: If the session is not monitored.
        """
        with self._lock:
            if session_id not in self._sessions:
                raise SessionNotFoundError(session_id, f"session {session_id} is not being monitored")
            del self._sessions[session_id]
            self._workers.pop(session_id, None)
        logger.info(f"Stopped monitoring {session_id}")

    def register_state_hook(self, hook: StateHook) -> None:
        """Register a callable run on every transition as hook(session_id, from, to)."""
        with self._lock:
            self._hooks.append(hook)

    # =========================================================================
    # Queries
    # =========================================================================

    def _get(self, session_id: str) -> MonitoredSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, f"session {session_id} is not being monitored")
        return session

    def get_process_state(self, session_id: str) -> ProcessState:
        """Current state of a monitored session."""
        with self._lock:
            return self._get(session_id).current_state

    def get_process_pid(self, session_id: str) -> int:
        """Pane PID resolved when monitoring started."""
        with self._lock:
            return self._get(session_id).pid

    def get_state_history(self, session_id: str) -> list[StateChange]:
        """Recorded transitions, oldest first."""
        with self._lock:
            return list(self._get(session_id).history)

    def get_last_state_change(self, session_id: str) -> datetime:
        """When the session last changed state (or started monitoring)."""
        with self._lock:
            return self._get(session_id).last_state_change

    def monitored_sessions(self) -> list[str]:
        """IDs of all monitored sessions."""
        with self._lock:
            return list(self._sessions)

    def is_monitoring(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    # =========================================================================
    # Detection
    # =========================================================================

    def detect_state_change(self, session_id: str) -> tuple[bool, ProcessState]:
        """Classify a session now and commit the result if it changed.

        Args:
            session_id: A monitored session.

        Returns:
            (changed, new_state).

        Raises:
            SessionNotFoundError: If the session is not monitored.
            DetectionError: If both the output and process signals failed.
        """
        return self._detect(session_id, TRIGGER_ON_DEMAND)

    def _detect(self, session_id: str, trigger: str) -> tuple[bool, ProcessState]:
        with self._lock:
            pid = self._get(session_id).pid

        new_state = self._classify(session_id, pid)

        change = self._update_session_state(session_id, new_state, trigger)
        if change is None:
            return False, new_state

        self._write_through(session_id, change)
        self._run_hooks(session_id, change.from_state, change.to_state)
        return True, new_state

    def _classify(self, session_id: str, pid: int) -> ProcessState:
        output_error = None
        try:
            output_state = analyze_output(self._backend.capture_output(session_id), self._patterns)
        except WorktreeSessionsError as e:
            output_error = e
            output_state = ProcessState.UNKNOWN

        if output_state != ProcessState.UNKNOWN:
            return output_state

        try:
            code = self._probe(pid, self._probe_timeout)
        except WorktreeSessionsError as e:
            if output_error is not None:
                raise DetectionError(session_id, output_error, e) from e
            return output_state

        return map_scheduler_state(code)

    def _update_session_state(
        self, session_id: str, new_state: ProcessState, trigger: str
    ) -> StateChange | None:
        """Commit a transition under the lock. Returns None if nothing changed."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id, f"session {session_id} is not being monitored")
            if session.current_state == new_state:
                return None

            change = StateChange(
                from_state=session.current_state,
                to_state=new_state,
                timestamp=datetime.now(),
                trigger=trigger,
            )
            session.record(change)

        logger.info(
            f"Session {session_id}: {change.from_state.value} -> {change.to_state.value} ({trigger})"
        )
        return change

    def _write_through(self, session_id: str, change: StateChange) -> None:
        """Persist the session's latest committed state.

        Write-throughs run one at a time and each reads the state current at
        write time, so an older transition never lands after a newer one.
        """
        if self._store is None:
            return

        with self._persist_lock:
            with self._lock:
                session = self._sessions.get(session_id)
                if session is not None:
                    state, timestamp = session.current_state, session.last_state_change
                else:
                    state, timestamp = change.to_state, change.timestamp

            try:
                self._store.update_session(session_id, {"last_state": state, "last_access": timestamp})
            except SessionNotFoundError:
                logger.debug(f"Session {session_id} not in state store, skipping write-through")
            except WorktreeSessionsError as e:
                logger.error(f"Failed to persist state for {session_id}: {e}")

    def _run_hooks(self, session_id: str, from_state: ProcessState, to_state: ProcessState) -> None:
        with self._lock:
            hooks = list(self._hooks)

        for hook in hooks:
            try:
                hook(session_id, from_state, to_state)
            except Exception as e:
                logger.warning(f"State hook {hook!r} failed for {session_id}: {e}")

    # =========================================================================
    # Workers
    # =========================================================================

    def _still_registered(self, session: MonitoredSession) -> bool:
        with self._lock:
            return self._sessions.get(session.session_id) is session

    def _worker(self, session: MonitoredSession) -> None:
        """Poll one session until it is deregistered or the monitor shuts down."""
        session_id = session.session_id
        while not self._shutdown.wait(self.poll_interval):
            if not self._still_registered(session):
                break
            try:
                self._detect(session_id, TRIGGER_POLL)
            except SessionNotFoundError:
                break
            except WorktreeSessionsError as e:
                logger.debug(f"Poll failed for {session_id}: {e}")
            except Exception:
                logger.exception(f"Unexpected error polling {session_id}")
        logger.debug(f"Worker for {session_id} exited")

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel all workers.

        Args:
            timeout: If given, wait up to this many seconds for each worker
                to exit. Otherwise return immediately.
        """
        self._shutdown.set()
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()

        if timeout is not None:
            for worker in workers:
                worker.join(timeout=timeout)
        logger.info("ProcessMonitor shut down")

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown.is_set()
