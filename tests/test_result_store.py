"""Tests for the SQLite result store."""

import sqlite3
import threading

import pytest

from errors import NotFound, StoreError, StoreWriteError
from result_store import ResultStore, TestRecord


def record(test_id, all_success=True, duration=0.5):
    return TestRecord(test_id, "2025-03-01 10:00:00", duration, all_success)


class TestAllocation:
    def test_first_id_is_one(self, store):
        assert store.allocate_next_id() == 1

    def test_ids_increase(self, store):
        ids = [store.allocate_next_id() for _ in range(5)]
        assert ids == [1, 2, 3, 4, 5]

    def test_allocated_ids_are_reserved_without_insert(self, store):
        first = store.allocate_next_id()
        second = store.allocate_next_id()
        assert second == first + 1

    def test_continues_after_existing_records(self, store):
        store.insert_record(record(10))
        assert store.allocate_next_id() == 11

    def test_survives_reopen(self, store):
        store.allocate_next_id()
        store.allocate_next_id()
        reopened = ResultStore(store.db_path)
        assert reopened.allocate_next_id() == 3

    def test_continues_numbering_of_legacy_table(self, tmp_path):
        path = tmp_path / "legacy.db"
        db = sqlite3.connect(path)
        db.execute("CREATE TABLE test_logs (test_id INTEGER, timestamp TEXT, duration REAL, result INTEGER)")
        db.execute("INSERT INTO test_logs VALUES (41, '2024-01-01 00:00:00', 1.0, 1)")
        db.commit()
        db.close()
        assert ResultStore(str(path)).allocate_next_id() == 42

    def test_concurrent_allocation_is_unique(self, store):
        """Separate store instances share only the database file, like separate processes."""
        n_workers, per_worker = 8, 10
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(n_workers)
        store.prepare()

        def worker():
            local = ResultStore(store.db_path)
            barrier.wait()
            ids = [local.allocate_next_id() for _ in range(per_worker)]
            with results_lock:
                results.extend(ids)

        threads = [threading.Thread(target=worker) for _ in range(n_workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == n_workers * per_worker
        assert len(set(results)) == len(results)
        assert sorted(results) == list(range(1, n_workers * per_worker + 1))

    def test_concurrent_allocation_same_instance(self, store):
        results = []

        def worker():
            results.append(store.allocate_next_id())

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == list(range(1, 21))

    def test_unopenable_store(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        bad = ResultStore(str(blocker / "records.db"))
        with pytest.raises(StoreError):
            bad.allocate_next_id()


class TestInsertAndLookup:
    def test_lookup_returns_inserted(self, store):
        store.insert_record(record(1, all_success=False, duration=1.25))
        got = store.lookup(1)
        assert got == TestRecord(1, "2025-03-01 10:00:00", 1.25, False)

    def test_lookup_unknown(self, store):
        with pytest.raises(NotFound) as exc:
            store.lookup(99)
        assert exc.value.test_id == 99

    def test_duplicate_insert_fails_loudly(self, store):
        store.insert_record(record(1))
        with pytest.raises(StoreWriteError):
            store.insert_record(record(1, all_success=False))
        assert store.lookup(1).all_success is True

    def test_insert_into_unopenable_store(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        bad = ResultStore(str(blocker / "records.db"))
        with pytest.raises(StoreWriteError):
            bad.insert_record(record(1))

    def test_result_stored_as_integer(self, store):
        store.insert_record(record(1, all_success=True))
        store.insert_record(record(2, all_success=False))
        db = sqlite3.connect(store.db_path)
        rows = db.execute("SELECT test_id, result FROM test_logs ORDER BY test_id").fetchall()
        db.close()
        assert rows == [(1, 1), (2, 0)]


class TestExport:
    def test_empty(self, store):
        assert store.export_all() == []

    def test_ascending_regardless_of_insert_order(self, store):
        for tid in (3, 1, 2):
            store.insert_record(record(tid))
        assert [r.test_id for r in store.export_all()] == [1, 2, 3]

    def test_restartable(self, store):
        store.insert_record(record(1))
        assert store.export_all() == store.export_all()
        assert store.allocate_next_id() == 2
