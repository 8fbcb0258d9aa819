"""Tests for the storage backends and the session store."""

import asyncio
import json
import os
from datetime import timedelta

import pytest

from generation.errors import StorageError
from generation.normalizer import normalize_question
from generation.schemas import RegistryEntry, Session, utcnow
from parsing.schemas import Chunk
from storage import create_backend
from storage.backends import FileBackend, RedisBackend
from storage.session_store import (
    MODEL_FAILURE_ERROR,
    NO_QUESTION_ERROR,
    SESSIONS_LIST_KEY,
    SessionStore,
    derive_status,
    session_key,
)

from conftest import FakeRedis, question_json


def _run(coro):
    return asyncio.run(coro)


def _chunk(i: int) -> Chunk:
    return Chunk(
        id=f"chunk_{i}", heading=f"Section {i}", content=f"Contenu de la section {i}",
        page_range=str(i), start_page=i, end_page=i,
    )


def _session(session_id: str = "s1", total: int = 3, questions: int = 0, used: int = 0, **kw) -> Session:
    chunks = [_chunk(i) for i in range(1, 4)]
    return Session(
        id=session_id,
        filename="cours.pdf",
        total=total,
        chunks=chunks,
        chunk_order=[i % 3 for i in range(total)],
        used_chunks=[i % 3 for i in range(used)],
        questions=[normalize_question(json.loads(question_json(f"Q{i}"))) for i in range(questions)],
        **kw,
    )


class TestFileBackend:
    """Test the JSON-file backend."""

    def test_round_trip(self, file_backend: FileBackend) -> None:
        _run(file_backend.set_json("session:abc", {"a": 1, "é": "ü"}))
        assert _run(file_backend.get_json("session:abc")) == {"a": 1, "é": "ü"}

    def test_key_maps_to_file_name(self, file_backend: FileBackend) -> None:
        _run(file_backend.set_json("sessions:list", []))
        assert os.path.exists(os.path.join(file_backend.root, "sessions-list.json"))

    def test_no_temp_files_left(self, file_backend: FileBackend) -> None:
        _run(file_backend.set_json("session:x", {"v": 1}))
        _run(file_backend.set_json("session:x", {"v": 2}))
        assert sorted(os.listdir(file_backend.root)) == ["session-x.json"]
        assert _run(file_backend.get_json("session:x")) == {"v": 2}

    def test_missing_key(self, file_backend: FileBackend) -> None:
        assert _run(file_backend.get_json("session:nope")) is None

    def test_corrupt_file(self, file_backend: FileBackend) -> None:
        os.makedirs(file_backend.root, exist_ok=True)
        with open(file_backend.path_for("session:bad"), "w", encoding="utf-8") as f:
            f.write("{not json")
        with pytest.raises(StorageError):
            _run(file_backend.get_json("session:bad"))

    @pytest.mark.parametrize("key", ["../etc/passwd", "a/b", "", "session:..x"])
    def test_invalid_keys(self, file_backend: FileBackend, key: str) -> None:
        with pytest.raises(StorageError):
            file_backend.path_for(key)

    def test_delete(self, file_backend: FileBackend) -> None:
        _run(file_backend.set_json("session:gone", {}))
        _run(file_backend.delete("session:gone"))
        _run(file_backend.delete("session:gone"))
        assert _run(file_backend.get_json("session:gone")) is None


class TestRedisBackend:
    def test_round_trip(self, fake_redis: FakeRedis) -> None:
        backend = RedisBackend(fake_redis)
        _run(backend.set_json("session:r", {"total": 4}))
        assert _run(backend.get_json("session:r")) == {"total": 4}
        assert fake_redis.data["session:r"] == '{"total": 4}'

    def test_outage_is_storage_error(self, fake_redis: FakeRedis) -> None:
        backend = RedisBackend(fake_redis)
        fake_redis.fail = True
        with pytest.raises(StorageError):
            _run(backend.get_json("session:r"))
        with pytest.raises(StorageError):
            _run(backend.set_json("session:r", {}))

    def test_corrupt_value(self, fake_redis: FakeRedis) -> None:
        fake_redis.data["session:r"] = "{oops"
        with pytest.raises(StorageError):
            _run(RedisBackend(fake_redis).get_json("session:r"))


class TestCreateBackend:
    def test_kinds(self, tmp_path) -> None:
        assert isinstance(create_backend("file", str(tmp_path)), FileBackend)
        assert isinstance(create_backend("REDIS"), RedisBackend)

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            create_backend("sqlite")


class TestDeriveStatus:
    """Test status derivation from the record's bookkeeping."""

    def test_processing(self) -> None:
        assert derive_status(_session(questions=1, used=1)) == "processing"

    def test_enough_questions(self) -> None:
        assert derive_status(_session(total=2, questions=2, used=2)) == "completed"

    def test_exhausted_with_questions(self) -> None:
        assert derive_status(_session(total=3, questions=1, used=3)) == "completed"

    def test_exhausted_without_questions(self) -> None:
        assert derive_status(_session(total=3, questions=0, used=3)) == "failed"

    def test_failed_is_terminal(self) -> None:
        assert derive_status(_session(questions=3, used=3, status="failed")) == "failed"

    def test_order_used_up_with_budget_left(self) -> None:
        session = _session(total=3, questions=1, used=3, slot_budget=6)
        assert session.next_slot is None
        assert session.can_extend
        assert derive_status(session) == "processing"

    def test_budget_spent(self) -> None:
        session = _session(total=3, questions=1, used=3, slot_budget=3)
        assert not session.can_extend
        assert derive_status(session) == "completed"


class TestSessionStore:
    """Test session records and the registry projection."""

    def test_create_and_read(self, store: SessionStore) -> None:
        session = _session()
        _run(store.create(session))
        loaded = _run(store.read("s1"))
        assert loaded.id == "s1"
        assert loaded.chunk_order == [0, 1, 2]
        entries = _run(store.list_entries())
        assert [e.id for e in entries] == ["s1"]

    def test_read_missing(self, store: SessionStore) -> None:
        assert _run(store.read("ghost")) is None

    def test_invalid_record_is_storage_error(self, store: SessionStore) -> None:
        _run(store.backend.set_json(session_key("broken"), {"id": "broken", "total": 0}))
        with pytest.raises(StorageError):
            _run(store.read("broken"))

    def test_upsert_replaces_in_place(self, store: SessionStore) -> None:
        _run(store.create(_session("a")))
        _run(store.create(_session("b")))
        entry = RegistryEntry.from_session(_session("a", questions=1, used=1))
        entry.available = 1
        _run(store.upsert_entry(entry))
        entries = _run(store.list_entries())
        assert [e.id for e in entries] == ["b", "a"]
        assert entries[1].available == 1

    def test_reconcile_heals_stale_counters(self, store: SessionStore) -> None:
        session = _session(total=3, questions=3, used=3)
        _run(store.create(session))
        healed = _run(store.reconcile(_run(store.read("s1"))))
        assert healed.status == "completed"
        assert healed.available == 3
        assert _run(store.read("s1")).status == "completed"
        assert _run(store.list_entries())[0].status == "completed"

    def test_reconcile_restores_missing_entry(self, store: SessionStore) -> None:
        session = _session(questions=1, used=1)
        _run(store.write(session))
        _run(store.reconcile(session))
        entries = _run(store.list_entries())
        assert [(e.id, e.available) for e in entries] == [("s1", 1)]

    def test_reconcile_sets_error_on_empty_failure(self, store: SessionStore) -> None:
        session = _session(total=3, questions=0, used=3)
        _run(store.create(session))
        healed = _run(store.reconcile(session))
        assert healed.status == "failed"
        assert healed.error == NO_QUESTION_ERROR

    def test_model_failures_are_not_blamed_on_the_document(self, store: SessionStore) -> None:
        session = _session(total=3, questions=0, used=3, model_failures=3)
        _run(store.create(session))
        healed = _run(store.reconcile(session))
        assert healed.status == "failed"
        assert healed.error == MODEL_FAILURE_ERROR

    def test_list_sessions_newest_first_and_reconciled(self, store: SessionStore) -> None:
        old = _session("old", created_at=utcnow() - timedelta(hours=1))
        new = _session("new", total=2, questions=2, used=2)
        _run(store.create(new))
        _run(store.create(old))
        sessions = _run(store.list_sessions())
        assert [s.id for s in sessions] == ["new", "old"]
        assert sessions[0].status == "completed"
        assert sessions[0].available == 2

    def test_malformed_registry_entries_are_skipped(self, store: SessionStore) -> None:
        _run(store.create(_session("ok")))
        data = _run(store.backend.get_json(SESSIONS_LIST_KEY))
        data.append({"nonsense": True})
        _run(store.backend.set_json(SESSIONS_LIST_KEY, data))
        assert [e.id for e in _run(store.list_entries())] == ["ok"]
