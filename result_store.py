#!/usr/bin/env python3
"""
SQLite-backed store of completed test runs.

One row per dispatch cycle in test_logs. Test ids are handed out from the
id_sequence table inside a BEGIN IMMEDIATE transaction, so concurrent
harness processes sharing the same database file never receive the same id.
Each operation opens its own connection; an in-process lock serializes the
threads of one process.

Usage:
    from result_store import ResultStore, TestRecord

    store = ResultStore("~/HW_tester/records.db")
    test_id = store.allocate_next_id()
    store.insert_record(TestRecord(test_id, "2025-01-01 12:00:00", 0.42, True))
    print(store.lookup(test_id))
"""

import logging
import os
import sqlite3
import threading
from collections import namedtuple
from contextlib import closing

from errors import NotFound, StoreError, StoreWriteError
from protocol import MAX_TEST_ID

log = logging.getLogger("hwtest.store")

TestRecord = namedtuple('TestRecord', ['test_id', 'timestamp', 'duration', 'all_success'])
TestRecord.__test__ = False  # not a pytest class

BUSY_TIMEOUT = 10.0  # seconds to wait for another process holding the write lock

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS test_logs ("
    "test_id INTEGER PRIMARY KEY, "
    "timestamp TEXT, "
    "duration REAL, "
    "result INTEGER)",
    "CREATE TABLE IF NOT EXISTS id_sequence ("
    "name TEXT PRIMARY KEY, "
    "value INTEGER NOT NULL)",
)

_SEQUENCE_NAME = "test_id"


def _row_to_record(row):
    test_id, timestamp, duration, result = row
    return TestRecord(test_id, timestamp, duration, bool(result))


class ResultStore:
    def __init__(self, db_path):
        self.db_path = os.path.expanduser(db_path)
        self._lock = threading.Lock()
        self._prepared = False

    def _connect(self):
        """Open a connection in autocommit mode; transactions are explicit."""
        return sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT, isolation_level=None)

    def prepare(self):
        """Create the database directory and tables if missing."""
        if self._prepared:
            return
        try:
            parent = os.path.dirname(self.db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with closing(self._connect()) as db:
                for statement in _SCHEMA:
                    db.execute(statement)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open result store {self.db_path}: {e}") from e
        self._prepared = True
        log.debug("Result store ready at %s", self.db_path)

    def allocate_next_id(self):
        """Reserve and return the next test id.

        The sequence row and the highest logged id are read and the sequence
        is advanced inside one write transaction, so the returned id is
        greater than every id handed out before, by any process.
        """
        self.prepare()
        with self._lock:
            try:
                with closing(self._connect()) as db:
                    db.execute("BEGIN IMMEDIATE")
                    try:
                        row = db.execute(
                            "SELECT value FROM id_sequence WHERE name = ?", (_SEQUENCE_NAME,)
                        ).fetchone()
                        last_reserved = row[0] if row else 0
                        last_logged = db.execute("SELECT MAX(test_id) FROM test_logs").fetchone()[0] or 0
                        next_id = max(last_reserved, last_logged) + 1
                        if next_id > MAX_TEST_ID:
                            raise StoreError("Test id space exhausted")
                        db.execute(
                            "INSERT INTO id_sequence (name, value) VALUES (?, ?) "
                            "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                            (_SEQUENCE_NAME, next_id),
                        )
                        db.execute("COMMIT")
                    except BaseException:
                        if db.in_transaction:
                            db.execute("ROLLBACK")
                        raise
            except sqlite3.Error as e:
                raise StoreError(f"Allocating test id failed: {e}") from e
        log.debug("Allocated test id %d", next_id)
        return next_id

    def insert_record(self, record):
        """Persist a completed test run. Raises StoreWriteError on any failure."""
        try:
            self.prepare()
        except StoreError as e:
            raise StoreWriteError(str(e)) from e
        with self._lock:
            try:
                with closing(self._connect()) as db:
                    db.execute(
                        "INSERT INTO test_logs (test_id, timestamp, duration, result) VALUES (?, ?, ?, ?)",
                        (record.test_id, record.timestamp, float(record.duration), int(bool(record.all_success))),
                    )
            except sqlite3.Error as e:
                raise StoreWriteError(f"Logging test #{record.test_id} failed: {e}") from e
        log.debug("Logged test #%d", record.test_id)

    def lookup(self, test_id):
        """Return the record for test_id. Raises NotFound if there is none."""
        self.prepare()
        try:
            with closing(self._connect()) as db:
                row = db.execute(
                    "SELECT test_id, timestamp, duration, result FROM test_logs WHERE test_id = ?",
                    (test_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Reading test #{test_id} failed: {e}") from e
        if row is None:
            raise NotFound(test_id)
        return _row_to_record(row)

    def export_all(self):
        """Return every record, ascending by test id."""
        self.prepare()
        try:
            with closing(self._connect()) as db:
                rows = db.execute(
                    "SELECT test_id, timestamp, duration, result FROM test_logs ORDER BY test_id ASC"
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Exporting records failed: {e}") from e
        return [_row_to_record(row) for row in rows]
