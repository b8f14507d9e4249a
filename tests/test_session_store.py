import pytest

from reflection_gate.errors import StateCorrupt
from reflection_gate.models import GateStatus, Session
from reflection_gate.session_store import (
    FileSessionStore,
    MemorySessionStore,
    load_or_create,
    sanitize_session_id,
    save_quietly,
)


class TestFileSessionStore:
    def test_put_and_get(self, tmp_path):
        store = FileSessionStore(tmp_path / "sessions")
        session = Session(id="abc-123", cwd="/work")
        session.gate.status = GateStatus.PENDING
        store.put(session)
        loaded = store.get("abc-123")
        assert loaded.cwd == "/work"
        assert loaded.gate.status == GateStatus.PENDING

    def test_get_missing(self, tmp_path):
        assert FileSessionStore(tmp_path).get("nope") is None

    def test_corrupt_file_raises(self, tmp_path):
        store = FileSessionStore(tmp_path)
        store.path_for("bad").write_text("{not json")
        with pytest.raises(StateCorrupt):
            store.get("bad")

    def test_no_temp_files_left(self, tmp_path):
        store = FileSessionStore(tmp_path)
        store.put(Session(id="s1"))
        store.put(Session(id="s1"))
        assert [p.name for p in tmp_path.iterdir()] == ["s1.json"]

    def test_delete_and_list(self, tmp_path):
        store = FileSessionStore(tmp_path)
        store.put(Session(id="a"))
        store.put(Session(id="b"))
        assert store.list_ids() == ["a", "b"]
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.list_ids() == ["b"]

    def test_unsafe_ids_stay_inside_directory(self, tmp_path):
        store = FileSessionStore(tmp_path)
        assert store.path_for("../../etc/passwd").parent == tmp_path
        assert sanitize_session_id("..") == "_"


class TestLoadOrCreate:
    def test_creates_fresh_session(self):
        session = load_or_create(MemorySessionStore(), "new", cwd="/repo")
        assert session.id == "new"
        assert session.cwd == "/repo"
        assert session.gate.status == GateStatus.IDLE

    def test_corrupt_state_starts_fresh(self, tmp_path, caplog):
        store = FileSessionStore(tmp_path)
        store.path_for("s1").write_text("[]")
        session = load_or_create(store, "s1")
        assert session.gate.status == GateStatus.IDLE
        assert "Starting fresh session" in caplog.text


class TestSaveQuietly:
    def test_write_failure_is_reported(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        store = FileSessionStore(blocker)
        assert save_quietly(store, Session(id="s1")) is False

    def test_success(self):
        store = MemorySessionStore()
        assert save_quietly(store, Session(id="s1")) is True
        assert store.get("s1") is not None
