"""SessionStateStore - durable record of known terminal sessions.

Sessions are kept in memory keyed by session ID and written to a single
YAML file on every mutation. Writes go to a temporary sibling file that is
atomically renamed over the real path, so a reader opening the file never
sees a partial write.

A corrupt state file never fails the load: it is copied aside to
``<path>.backup.<timestamp>`` and the store starts empty.

If a write fails after an in-memory mutation, the mutation is kept and the
store runs ahead of disk until the next successful write.
"""

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from worktree_sessions.backends.base import SessionBackend
from worktree_sessions.exceptions import (
    SessionNotFoundError,
    SessionValidationError,
    StatePersistenceError,
    WorktreeSessionsError,
)
from worktree_sessions.models.session import PersistedSession, ProcessState, to_local_naive

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


class _CorruptStateError(Exception):
    """The state file exists but cannot be turned into sessions."""


def _parse_last_access(value: Any) -> datetime:
    if isinstance(value, datetime):
        return to_local_naive(value)
    if isinstance(value, str):
        try:
            return to_local_naive(datetime.fromisoformat(value))
        except ValueError:
            pass
    raise SessionValidationError(f"last_access must be a datetime, got {value!r}")


def _parse_last_state(value: Any) -> ProcessState:
    try:
        return ProcessState(value)
    except ValueError:
        raise SessionValidationError(f"last_state must be a ProcessState, got {value!r}") from None


def _parse_text(field: str) -> Callable[[Any], str]:
    def parse(value: Any) -> str:
        if not isinstance(value, str):
            raise SessionValidationError(f"{field} must be a string, got {value!r}")
        return value

    return parse


def _check_serializable(session: PersistedSession) -> None:
    try:
        yaml.safe_dump(session.model_dump(mode="json"))
    except (ValueError, TypeError, yaml.YAMLError) as e:
        raise SessionValidationError(f"session {session.id} cannot be serialized: {e}") from e


# First-class update keys and the converter for each
_FIELD_PARSERS: dict[str, Callable[[Any], Any]] = {
    "last_access": _parse_last_access,
    "last_state": _parse_last_state,
    "directory": _parse_text("directory"),
    "branch": _parse_text("branch"),
}


class SessionStateStore:
    """Central store for persisted session metadata.

    All map access goes through a single lock scoped to the instance.
    Mutations persist while still holding it. Every read hands out deep
    copies so callers cannot change store state behind its back.
    """

    def __init__(self, path: str | Path, backend: SessionBackend | None = None):
        """Initialize an empty store.

        Use load_state() to read an existing file.

        Args:
            path: Location of the YAML state file.
            backend: Used by cleanup_stale_entries to check session existence.
        """
        self.path = Path(path)
        self._backend = backend
        self._sessions: dict[str, PersistedSession] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # Loading
    # =========================================================================

    @classmethod
    def load(cls, path: str | Path, backend: SessionBackend | None = None) -> "SessionStateStore":
        """Load a store from disk.

        Args:
            path: Location of the YAML state file.
            backend: Session backend for stale-entry cleanup.

        Returns:
            The loaded store. Empty if the file was missing, empty or corrupt.

        Raises:
            StatePersistenceError: If the file exists but cannot be read, or a
                missing file cannot be created.
        """
        store = cls(path, backend=backend)

        if not store.path.exists():
            store.save()
            logger.info(f"Created new session state file at {store.path}")
            return store

        try:
            raw = store.path.read_bytes()
        except OSError as e:
            raise StatePersistenceError(f"failed to read state file {store.path}: {e}") from e

        if not raw.strip():
            return store

        try:
            store._sessions = cls._parse(raw)
        except _CorruptStateError as e:
            store._backup_corrupt_file(raw, e)
            return store

        logger.info(f"Loaded {len(store._sessions)} sessions from {store.path}")
        return store

    @staticmethod
    def _parse(raw: bytes) -> dict[str, PersistedSession]:
        try:
            data = yaml.safe_load(raw.decode("utf-8"))
        except (UnicodeDecodeError, yaml.YAMLError) as e:
            raise _CorruptStateError(str(e)) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise _CorruptStateError(f"expected a mapping, got {type(data).__name__}")

        sessions = {}
        for session_id, entry in data.items():
            if not isinstance(entry, dict):
                raise _CorruptStateError(f"entry {session_id!r} is not a mapping")
            try:
                session = PersistedSession.model_validate(entry)
            except ValidationError as e:
                raise _CorruptStateError(f"entry {session_id!r}: {e}") from e
            sessions[str(session_id)] = session
        return sessions

    def _backup_corrupt_file(self, raw: bytes, reason: Exception) -> None:
        timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = Path(f"{self.path}.backup.{timestamp}")
        try:
            backup_path.write_bytes(raw)
            logger.warning(
                f"Corrupted state file {self.path} ({reason}) backed up to {backup_path}"
            )
        except OSError as e:
            logger.error(f"Corrupted state file {self.path} could not be backed up: {e}")

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self) -> None:
        """Write the full session map to disk atomically.

        Raises:
            StatePersistenceError: If serialization or the write fails.
        """
        with self._lock:
            self._save_unlocked()

    def _save_unlocked(self) -> None:
        try:
            data = {sid: s.model_dump(mode="json") for sid, s in self._sessions.items()}
            text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, indent=2)
        except (ValueError, TypeError, yaml.YAMLError) as e:
            raise StatePersistenceError(f"failed to serialize state: {e}") from e

        temp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp", text=True
            )
            temp_path = Path(temp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(temp_path, self.path)
        except OSError as e:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            logger.error(f"Failed to save session state to {self.path}: {e}")
            raise StatePersistenceError(f"failed to write state file {self.path}: {e}") from e

        logger.debug(f"Saved state: {len(self._sessions)} sessions")

    # =========================================================================
    # Session CRUD
    # =========================================================================

    def add_session(self, session: PersistedSession) -> None:
        """Insert or replace a session and persist.

        Args:
            session: The session to store. A copy is kept.

        Raises:
            SessionValidationError: If the session ID is empty or the session
                cannot be serialized.
            StatePersistenceError: If the write fails.
        """
        if not session.id:
            raise SessionValidationError("session ID cannot be empty")

        stored = session.model_copy(deep=True)
        _check_serializable(stored)
        with self._lock:
            existing = self._sessions.get(stored.id)
            if existing is not None and (
                (existing.project, existing.worktree, existing.branch)
                != (stored.project, stored.worktree, stored.branch)
            ):
                logger.warning(
                    f"Session ID {stored.id} collides: replacing "
                    f"{existing.project}/{existing.worktree}/{existing.branch} with "
                    f"{stored.project}/{stored.worktree}/{stored.branch}"
                )
            self._sessions[stored.id] = stored
            self._save_unlocked()

    def remove_session(self, session_id: str) -> None:
        """Remove a session and persist.

        Raises:
            SessionNotFoundError: If the session is unknown.
            StatePersistenceError: If the write fails.
        """
        with self._lock:
            if session_id not in self._sessions:
                raise SessionNotFoundError(session_id)
            del self._sessions[session_id]
            self._save_unlocked()

    def update_session(self, session_id: str, updates: dict[str, Any]) -> None:
        """Update fields of a session and persist.

        Keys ``last_access``, ``last_state``, ``directory`` and ``branch``
        update the matching fields. Any other key is stored in the session's
        metadata as is.

        Args:
            session_id: The session to update.
            updates: Field and metadata values to apply.

        Raises:
            SessionNotFoundError: If the session is unknown.
            SessionValidationError: If a first-class field gets a value of the
                wrong type, or a metadata value cannot be serialized. Nothing
                is applied in that case.
            StatePersistenceError: If the write fails.
        """
        fields = {}
        metadata = {}
        for key, value in updates.items():
            parser = _FIELD_PARSERS.get(key)
            if parser is None:
                metadata[key] = value
            else:
                fields[key] = parser(value)

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

            updated = session.model_copy(deep=True)
            for key, value in fields.items():
                setattr(updated, key, value)
            updated.metadata.update(metadata)
            _check_serializable(updated)

            self._sessions[session_id] = updated
            self._save_unlocked()

    def get_session(self, session_id: str) -> PersistedSession:
        """Get a copy of a session.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return session.model_copy(deep=True)

    def list_sessions(self) -> list[PersistedSession]:
        """List copies of all sessions."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values()]

    def get_sessions_by_project(self, project: str) -> list[PersistedSession]:
        """Get copies of all sessions for a project."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values() if s.project == project]

    def get_sessions_by_worktree(self, worktree: str) -> list[PersistedSession]:
        """Get copies of all sessions for a worktree."""
        with self._lock:
            return [
                s.model_copy(deep=True) for s in self._sessions.values() if s.worktree == worktree
            ]

    @property
    def session_count(self) -> int:
        """Number of stored sessions."""
        with self._lock:
            return len(self._sessions)

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup_stale_entries(self, max_age: timedelta) -> int:
        """Remove entries not accessed within max_age whose session is gone.

        Stale candidates are checked with the backend outside the lock. A
        failed existence check counts as "gone".

        Args:
            max_age: Entries with last_access older than now - max_age are
                candidates.

        Returns:
            Number of entries removed.

        Raises:
            WorktreeSessionsError: If the store has no backend.
            StatePersistenceError: If the write fails.
        """
        if self._backend is None:
            raise WorktreeSessionsError("no session backend configured for cleanup")

        try:
            cutoff = datetime.now() - max_age
        except OverflowError:
            # Older than any representable time: nothing is stale
            cutoff = datetime.min
        with self._lock:
            candidates = [sid for sid, s in self._sessions.items() if s.last_access < cutoff]

        gone = []
        for session_id in candidates:
            try:
                if not self._backend.session_exists(session_id):
                    gone.append(session_id)
            except Exception as e:
                logger.debug(f"Existence check failed for {session_id}, treating as gone: {e}")
                gone.append(session_id)

        removed = 0
        with self._lock:
            for session_id in gone:
                session = self._sessions.get(session_id)
                # Skip entries touched or removed while the backend was queried
                if session is not None and session.last_access < cutoff:
                    del self._sessions[session_id]
                    removed += 1
            if removed:
                self._save_unlocked()
                logger.info(f"Cleaned up {removed} stale sessions")

        return removed


def load_state(path: str | Path, backend: SessionBackend | None = None) -> SessionStateStore:
    """Load (or create) the session state store at path."""
    return SessionStateStore.load(path, backend=backend)
