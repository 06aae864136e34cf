"""Tests for SessionStateStore."""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from worktree_sessions.exceptions import (
    ExternalCommandError,
    SessionNotFoundError,
    SessionValidationError,
    StatePersistenceError,
    WorktreeSessionsError,
)
from worktree_sessions.models.session import PersistedSession, ProcessState
from worktree_sessions.services.state_store import SessionStateStore, load_state


@pytest.fixture
def state_path(temp_dir):
    """Path of the state file inside a temp dir."""
    return temp_dir / "state" / "sessions.yaml"


@pytest.fixture
def store(state_path, backend):
    """Create a freshly loaded store with a fake backend."""
    return load_state(state_path, backend=backend)


@pytest.fixture
def session():
    """Create a sample session."""
    return PersistedSession(
        id="ccmgr-proj-wt-main",
        name="ccmgr-proj-wt-main",
        project="proj",
        worktree="wt",
        branch="main",
        directory="/home/user/proj-wt",
        created=datetime(2024, 5, 1, 12, 0, 0),
        last_access=datetime(2024, 5, 1, 12, 30, 0),
        environment={"EDITOR": "vim"},
        metadata={"owner": "dev"},
    )


def _make(session_id: str, project: str = "proj", worktree: str = "wt", **kwargs) -> PersistedSession:
    return PersistedSession(id=session_id, project=project, worktree=worktree, **kwargs)


class TestLoadState:
    """Tests for loading the state file."""

    def test_missing_file_created(self, state_path):
        """A missing file yields an empty store and is created on disk."""
        store = load_state(state_path)

        assert store.session_count == 0
        assert state_path.exists()

    def test_empty_file_is_not_corruption(self, state_path):
        """A zero-byte file gives an empty store and no backup."""
        state_path.parent.mkdir(parents=True)
        state_path.write_bytes(b"")

        store = load_state(state_path)

        assert store.session_count == 0
        assert list(state_path.parent.glob("sessions.yaml.backup.*")) == []

    @pytest.mark.parametrize(
        "garbage",
        [
            b"this is { not [ valid",
            b"just a plain sentence",
            b"- a\n- list\n",
            b"\xff\xfe\x00binary\x80",
            b"ccmgr-x-y-z: not-a-mapping\n",
            b"ccmgr-x-y-z:\n  last_state: exploded\n",
        ],
    )
    def test_corrupt_file_backed_up(self, state_path, garbage):
        """Corrupt content yields an empty store, no error and a backup file."""
        state_path.parent.mkdir(parents=True)
        state_path.write_bytes(garbage)

        store = load_state(state_path)

        assert store.session_count == 0
        backups = list(state_path.parent.glob("sessions.yaml.backup.*"))
        assert len(backups) == 1
        assert backups[0].read_bytes() == garbage

    def test_round_trip_through_disk(self, state_path, session):
        """Sessions survive a reload."""
        store = load_state(state_path)
        store.add_session(session)

        reloaded = load_state(state_path)

        assert reloaded.get_session(session.id) == session

    def test_file_is_indented_yaml_keyed_by_id(self, store, state_path, session):
        """The state file is block-style YAML keyed by session ID."""
        store.add_session(session)

        text = state_path.read_text()
        data = yaml.safe_load(text)

        assert list(data) == [session.id]
        assert data[session.id]["last_state"] == "unknown"
        assert "\n  project: proj\n" in text

    def test_unknown_fields_tolerated(self, state_path):
        """Extra fields from newer versions do not break loading."""
        state_path.parent.mkdir(parents=True)
        state_path.write_text(
            "ccmgr-a-b-c:\n"
            "  id: ccmgr-a-b-c\n"
            "  project: a\n"
            "  future_field: 42\n"
            "  environment: null\n"
        )

        store = load_state(state_path)

        loaded = store.get_session("ccmgr-a-b-c")
        assert loaded.project == "a"
        assert loaded.environment == {}

    def test_offset_timestamps_in_file_normalized(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text(
            "ccmgr-a-b-c:\n"
            "  id: ccmgr-a-b-c\n"
            "  last_access: '2020-01-01T00:00:00+00:00'\n"
        )

        loaded = load_state(state_path).get_session("ccmgr-a-b-c")

        assert loaded.last_access.tzinfo is None
        assert loaded.last_access == (
            datetime(2020, 1, 1, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        )


class TestAddSession:
    """Tests for add_session."""

    def test_add_and_get(self, store, session):
        """A stored session can be read back with all fields."""
        store.add_session(session)

        loaded = store.get_session(session.id)

        assert loaded == session
        assert loaded is not session

    def test_empty_id_rejected(self, store):
        """An empty session ID raises a validation error."""
        with pytest.raises(SessionValidationError):
            store.add_session(PersistedSession(id=""))
        assert store.session_count == 0

    def test_none_maps_normalized(self, store, state_path):
        """None environment/metadata are stored as empty maps."""
        store.add_session(PersistedSession(id="ccmgr-a-b-c", environment=None, metadata=None))

        loaded = store.get_session("ccmgr-a-b-c")
        assert loaded.environment == {}
        assert loaded.metadata == {}
        data = yaml.safe_load(state_path.read_text())
        assert data["ccmgr-a-b-c"]["environment"] == {}
        assert data["ccmgr-a-b-c"]["metadata"] == {}

    def test_caller_mutation_after_add_ignored(self, store, session):
        """Mutating the added object does not change the store."""
        store.add_session(session)
        session.environment["EDITOR"] = "emacs"

        assert store.get_session(session.id).environment == {"EDITOR": "vim"}

    def test_add_replaces_existing(self, store, session):
        """Adding an existing ID replaces the entry."""
        store.add_session(session)
        store.add_session(session.model_copy(update={"directory": "/tmp/other"}))

        assert store.session_count == 1
        assert store.get_session(session.id).directory == "/tmp/other"

    def test_unserializable_session_rejected(self, store, state_path):
        with pytest.raises(SessionValidationError):
            store.add_session(_make("ccmgr-a-b-c", metadata={"handle": object()}))

        assert store.session_count == 0
        store.add_session(_make("ccmgr-x-y-z"))
        assert load_state(state_path).session_count == 1

    def test_offset_timestamps_normalized(self, store):
        """Offset-aware timestamps are kept as naive local time."""
        aware = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        store.add_session(_make("ccmgr-a-b-c", created=aware, last_access=aware))

        loaded = store.get_session("ccmgr-a-b-c")
        assert loaded.created.tzinfo is None
        assert loaded.last_access == aware.astimezone().replace(tzinfo=None)

    def test_collision_logged(self, store, session, caplog):
        """Replacing an entry for a different triple logs a warning."""
        store.add_session(session)
        store.add_session(session.model_copy(update={"project": "other"}))

        assert "collides" in caplog.text


class TestGetSession:
    """Tests for reads returning copies."""

    def test_not_found(self, store):
        with pytest.raises(SessionNotFoundError):
            store.get_session("ccmgr-missing-x-y")

    def test_returned_maps_are_independent(self, store, session):
        """Mutating a returned copy does not leak into the store."""
        store.add_session(session)

        copy = store.get_session(session.id)
        copy.environment["NEW"] = "1"
        copy.metadata["owner"] = "someone-else"
        copy.directory = "/changed"

        again = store.get_session(session.id)
        assert again.environment == {"EDITOR": "vim"}
        assert again.metadata == {"owner": "dev"}
        assert again.directory == "/home/user/proj-wt"

    def test_list_sessions_returns_copies(self, store, session):
        """list_sessions returns deep copies."""
        store.add_session(session)

        listed = store.list_sessions()
        listed[0].metadata["x"] = 1

        assert len(listed) == 1
        assert "x" not in store.get_session(session.id).metadata

    def test_filters(self, store):
        """Project and worktree filters return matching entries."""
        store.add_session(_make("ccmgr-a-one-main", project="a", worktree="one"))
        store.add_session(_make("ccmgr-a-two-main", project="a", worktree="two"))
        store.add_session(_make("ccmgr-b-one-main", project="b", worktree="one"))

        assert {s.id for s in store.get_sessions_by_project("a")} == {
            "ccmgr-a-one-main",
            "ccmgr-a-two-main",
        }
        assert {s.id for s in store.get_sessions_by_worktree("one")} == {
            "ccmgr-a-one-main",
            "ccmgr-b-one-main",
        }
        assert store.get_sessions_by_project("zzz") == []


class TestRemoveSession:
    """Tests for remove_session."""

    def test_remove(self, store, session, state_path):
        """Removed sessions are gone from memory and disk."""
        store.add_session(session)
        store.remove_session(session.id)

        assert store.session_count == 0
        assert load_state(state_path).session_count == 0

    def test_remove_not_found(self, store):
        with pytest.raises(SessionNotFoundError):
            store.remove_session("ccmgr-missing-x-y")


class TestUpdateSession:
    """Tests for update_session."""

    def test_not_found(self, store):
        with pytest.raises(SessionNotFoundError):
            store.update_session("ccmgr-missing-x-y", {"branch": "dev"})

    def test_first_class_fields(self, store, session):
        """Recognized keys update typed fields exactly."""
        store.add_session(session)
        accessed = datetime(2024, 6, 1, 9, 0, 0)

        store.update_session(
            session.id,
            {
                "last_access": accessed,
                "last_state": ProcessState.BUSY,
                "directory": "/new/dir",
                "branch": "develop",
            },
        )

        loaded = store.get_session(session.id)
        assert loaded.last_access == accessed
        assert loaded.last_state == ProcessState.BUSY
        assert loaded.directory == "/new/dir"
        assert loaded.branch == "develop"
        assert loaded.metadata == {"owner": "dev"}

    def test_unrecognized_keys_go_to_metadata(self, store, session):
        """Other keys land in metadata verbatim."""
        store.add_session(session)

        store.update_session(session.id, {"ticket": "ABC-1", "attempts": 3})

        metadata = store.get_session(session.id).metadata
        assert metadata == {"owner": "dev", "ticket": "ABC-1", "attempts": 3}

    def test_state_value_string_accepted(self, store, session):
        """last_state accepts the enum's string value."""
        store.add_session(session)
        store.update_session(session.id, {"last_state": "waiting"})

        assert store.get_session(session.id).last_state == ProcessState.WAITING

    def test_wrong_type_rejected_atomically(self, store, session):
        """A badly typed first-class value applies nothing."""
        store.add_session(session)

        with pytest.raises(SessionValidationError):
            store.update_session(session.id, {"branch": "dev", "directory": 42})

        loaded = store.get_session(session.id)
        assert loaded.branch == "main"
        assert loaded.directory == "/home/user/proj-wt"

    def test_update_persisted(self, store, session, state_path):
        """Updates are written to disk before returning."""
        store.add_session(session)
        store.update_session(session.id, {"last_state": ProcessState.ERROR})

        assert load_state(state_path).get_session(session.id).last_state == ProcessState.ERROR

    def test_offset_last_access_stored_as_local_time(self, store, session):
        """An ISO timestamp with an offset is converted to naive local time."""
        store.add_session(session)

        store.update_session(session.id, {"last_access": "2020-01-01T00:00:00+00:00"})

        expected = datetime(2020, 1, 1, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        loaded = store.get_session(session.id)
        assert loaded.last_access == expected
        assert loaded.last_access.tzinfo is None

    def test_unserializable_metadata_rejected(self, store, session, state_path):
        """A metadata value that cannot be written is rejected before it is applied."""
        store.add_session(session)

        with pytest.raises(SessionValidationError):
            store.update_session(session.id, {"handle": object(), "ticket": "X"})

        assert store.get_session(session.id).metadata == {"owner": "dev"}

        store.add_session(_make("ccmgr-x-y-z"))
        assert load_state(state_path).session_count == 2


class TestPersistenceFailure:
    """Tests for write failures."""

    def test_failed_write_leaves_memory_ahead_of_disk(self, store, session, state_path, monkeypatch):
        """A failed persist raises, keeps the in-memory change, and a later write reconciles."""
        store.add_session(session)

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("worktree_sessions.services.state_store.os.replace", fail_replace)
        with pytest.raises(StatePersistenceError):
            store.update_session(session.id, {"branch": "develop"})

        assert store.get_session(session.id).branch == "develop"
        assert load_state(state_path).get_session(session.id).branch == "main"
        assert list(state_path.parent.glob("*.tmp")) == []

        monkeypatch.undo()
        store.update_session(session.id, {"ticket": "X"})

        on_disk = load_state(state_path).get_session(session.id)
        assert on_disk.branch == "develop"
        assert on_disk.metadata["ticket"] == "X"


    def test_temp_file_unique_per_write(self, store, state_path, monkeypatch):
        """Each write renames its own temp file from the state directory."""
        sources = []
        real_replace = os.replace

        def record_replace(src, dst):
            sources.append(Path(src))
            real_replace(src, dst)

        monkeypatch.setattr("worktree_sessions.services.state_store.os.replace", record_replace)
        store.add_session(_make("ccmgr-a-b-c"))
        store.add_session(_make("ccmgr-a-b-d"))

        assert len(set(sources)) == 2
        assert all(source.parent == state_path.parent for source in sources)
        assert Path(f"{state_path}.tmp") not in sources

    def test_foreign_temp_file_left_alone(self, store, state_path):
        """A partial temp file from another writer is never renamed over the state file."""
        foreign = Path(f"{state_path}.tmp")
        foreign.write_text("ccmgr-half: {id: ccm")

        store.add_session(_make("ccmgr-a-b-c"))

        assert foreign.read_text() == "ccmgr-half: {id: ccm"
        assert load_state(state_path).get_session("ccmgr-a-b-c").id == "ccmgr-a-b-c"


class TestCleanupStaleEntries:
    """Tests for cleanup_stale_entries."""

    def test_removes_old_entries_without_session(self, store, backend):
        """Old entries whose session is gone are removed."""
        old = datetime.now() - timedelta(days=3)
        store.add_session(_make("ccmgr-a-b-gone", last_access=old))
        store.add_session(_make("ccmgr-a-b-alive", last_access=old))
        store.add_session(_make("ccmgr-a-b-fresh"))
        backend.existing.add("ccmgr-a-b-alive")

        removed = store.cleanup_stale_entries(timedelta(days=1))

        assert removed == 1
        assert {s.id for s in store.list_sessions()} == {"ccmgr-a-b-alive", "ccmgr-a-b-fresh"}

    def test_failed_check_counts_as_gone(self, store, backend):
        """An existence check that errors removes the entry."""
        old = datetime.now() - timedelta(days=3)
        store.add_session(_make("ccmgr-a-b-c", last_access=old))
        backend.exists_errors["ccmgr-a-b-c"] = ExternalCommandError("tmux timed out")

        assert store.cleanup_stale_entries(timedelta(days=1)) == 1
        assert store.session_count == 0

    @pytest.mark.parametrize("error", [OSError("socket gone"), RuntimeError("backend bug")])
    def test_unexpected_check_error_counts_as_gone(self, store, backend, error):
        old = datetime.now() - timedelta(days=3)
        store.add_session(_make("ccmgr-a-b-c", last_access=old))
        backend.exists_errors["ccmgr-a-b-c"] = error

        assert store.cleanup_stale_entries(timedelta(days=1)) == 1

    def test_offset_last_access_after_reload(self, store, state_path, backend):
        """Entries updated with offset timestamps can be cleaned up after a reload."""
        store.add_session(_make("ccmgr-a-b-c"))
        store.update_session("ccmgr-a-b-c", {"last_access": "2020-01-01T00:00:00+00:00"})

        reloaded = load_state(state_path, backend=backend)

        assert reloaded.cleanup_stale_entries(timedelta(hours=1)) == 1
        assert reloaded.session_count == 0

    def test_no_removal_no_write(self, store, backend, state_path):
        """Nothing is persisted when nothing was removed."""
        store.add_session(_make("ccmgr-a-b-c"))
        state_path.unlink()

        assert store.cleanup_stale_entries(timedelta(days=1)) == 0
        assert not state_path.exists()

    def test_requires_backend(self, state_path):
        """Cleanup without a backend is an error."""
        store = SessionStateStore(state_path)
        with pytest.raises(WorktreeSessionsError):
            store.cleanup_stale_entries(timedelta(days=1))
