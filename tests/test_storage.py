"""
Tests for storage backends and unit-of-work support
"""

import pytest
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from agent_bank.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage, ensure_utc
)
from agent_bank.errors import StorageError


test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


def exercise_crud(storage: StorageInterface):
    storage.save("test_table", "record_1", test_data)
    assert storage.load("test_table", "record_1") == test_data

    assert storage.exists("test_table", "record_1")
    assert not storage.exists("test_table", "non_existent")

    storage.save("test_table", "record_2", {"id": "record_2", "name": "Second"})
    assert [r["id"] for r in storage.load_all("test_table")] == ["test_001", "record_2"]

    results = storage.find("test_table", {"name": "Second"})
    assert len(results) == 1
    assert results[0]["id"] == "record_2"

    assert storage.count("test_table") == 2
    assert storage.delete("test_table", "record_1")
    assert not storage.delete("test_table", "record_1")
    assert storage.count("test_table") == 1

    storage.clear_table("test_table")
    assert storage.count("test_table") == 0


def exercise_rollback(storage: StorageInterface):
    storage.save("accounts", "a1", {"id": "a1", "balance": "10.00"})

    with pytest.raises(RuntimeError):
        with storage.atomic():
            storage.save("accounts", "a1", {"id": "a1", "balance": "0.00"})
            storage.save("accounts", "a2", {"id": "a2", "balance": "10.00"})
            raise RuntimeError("boom")

    assert storage.load("accounts", "a1")["balance"] == "10.00"
    assert storage.load("accounts", "a2") is None
    assert not storage.in_transaction


class TestInMemoryStorage:
    """Test InMemoryStorage"""

    def test_basic_operations(self):
        exercise_crud(InMemoryStorage())

    def test_loaded_records_are_copies(self):
        storage = InMemoryStorage()
        storage.save("t", "r", {"id": "r", "tags": ["a"]})
        loaded = storage.load("t", "r")
        loaded["tags"].append("b")
        assert storage.load("t", "r")["tags"] == ["a"]

    def test_atomic_rollback(self):
        exercise_rollback(InMemoryStorage())

    def test_atomic_commit(self):
        storage = InMemoryStorage()
        with storage.atomic():
            storage.save("t", "r", {"id": "r"})
            assert storage.in_transaction
        assert storage.exists("t", "r")
        assert not storage.in_transaction

    def test_nested_blocks_join_outer_transaction(self):
        storage = InMemoryStorage()
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                storage.save("t", "outer", {"id": "outer"})
                raise RuntimeError("outer failure")

        assert storage.count("t") == 0

    def test_swallowed_nested_failure_dooms_outer_transaction(self):
        storage = InMemoryStorage()
        with pytest.raises(StorageError):
            with storage.atomic():
                storage.save("t", "first", {"id": "first"})
                try:
                    with storage.atomic():
                        storage.save("t", "second", {"id": "second"})
                        raise ValueError("nested failure")
                except ValueError:
                    pass

        assert storage.count("t") == 0
        assert not storage.in_transaction


class TestSQLiteStorage:
    """Test SQLiteStorage"""

    def test_basic_operations(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            exercise_crud(storage)
            storage.close()

    def test_atomic_rollback(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            exercise_rollback(storage)
            storage.close()

    def test_rollback_of_first_write_keeps_table_usable(self):
        storage = SQLiteStorage(":memory:")
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", "r", {"id": "r"})
                raise RuntimeError("boom")

        assert storage.load("fresh", "r") is None
        storage.save("fresh", "r", {"id": "r"})
        assert storage.exists("fresh", "r")
        storage.close()

    def test_failed_commit_rolls_back(self, monkeypatch):
        storage = SQLiteStorage(":memory:")
        storage.save("t", "kept", {"id": "kept"})

        def failing_commit():
            raise StorageError("SQLite error: disk I/O error")
        monkeypatch.setattr(storage, "_commit", failing_commit)

        with pytest.raises(StorageError):
            with storage.atomic():
                storage.save("t", "lost", {"id": "lost"})

        monkeypatch.undo()
        assert not storage._connection.in_transaction
        assert not storage.in_transaction
        assert storage.load("t", "lost") is None

        with storage.atomic():
            storage.save("t", "after", {"id": "after"})
        assert storage.exists("t", "after")
        storage.close()

    def test_data_persists_across_connections(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("t", "r", {"id": "r", "amount": "1.50"})
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("t", "r") == {"id": "r", "amount": "1.50"}
            reopened.close()

    def test_update_keeps_insertion_order(self):
        storage = SQLiteStorage(":memory:")
        storage.save("t", "first", {"id": "first", "v": 1})
        storage.save("t", "second", {"id": "second", "v": 1})
        storage.save("t", "first", {"id": "first", "v": 2})
        assert [r["id"] for r in storage.load_all("t")] == ["first", "second"]
        storage.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/bank.db")
            assert isinstance(storage, SQLiteStorage)
            storage.close()

    def test_config_object(self):
        class Settings:
            database_url = "memory://"
        assert isinstance(create_storage(Settings()), InMemoryStorage)

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/bank")


def test_ensure_utc_marks_naive_datetimes():
    naive = datetime(2025, 1, 1, 12, 0)
    assert ensure_utc(naive).tzinfo == timezone.utc
    assert ensure_utc(None) is None
