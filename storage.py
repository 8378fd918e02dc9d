# storage.py
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from config import DB_FILE
from models import now_ms

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        created INTEGER NOT NULL,
        updated INTEGER NOT NULL,
        data TEXT NOT NULL,
        output TEXT,
        error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created)",
    # Pending work, FIFO by position
    """
    CREATE TABLE IF NOT EXISTS queue (
        position INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL UNIQUE
    )
    """,
    # Per-job event log; AUTOINCREMENT keeps ids increasing across trims
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        stream_key TEXT NOT NULL,
        fields TEXT NOT NULL,
        created INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_stream ON events(stream_key, id)",
    """
    CREATE TABLE IF NOT EXISTS stream_groups (
        stream_key TEXT NOT NULL,
        group_name TEXT NOT NULL,
        last_delivered INTEGER NOT NULL DEFAULT 0,
        created INTEGER NOT NULL,
        PRIMARY KEY (stream_key, group_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stream_pending (
        stream_key TEXT NOT NULL,
        group_name TEXT NOT NULL,
        entry_id INTEGER NOT NULL,
        consumer TEXT NOT NULL,
        delivered INTEGER NOT NULL,
        PRIMARY KEY (stream_key, group_name, entry_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS config (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]


class Storage:
    def __init__(self, db_path=DB_FILE):
        self.db_path = db_path
        # Serializes writes from the worker task, relays and request handlers
        self.lock = threading.RLock()
        self.conn = None
        try:
            self._open()
        except sqlite3.DatabaseError as e:
            self._reset_corrupt(e)

    def _open(self):
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        # Lets a standalone worker process share the file with the server
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        for stmt in SCHEMA:
            self.conn.execute(stmt)
        self.conn.commit()

    def _reset_corrupt(self, error):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

        if self.db_path != ":memory:" and os.path.exists(self.db_path):
            moved = f"{self.db_path}.corrupt-{now_ms()}"
            os.replace(self.db_path, moved)
            for suffix in ("-wal", "-shm"):
                if os.path.exists(self.db_path + suffix):
                    os.remove(self.db_path + suffix)
            logger.warning("Store %s is unreadable (%s); moved to %s, starting empty", self.db_path, error, moved)
        else:
            logger.warning("Store %s is unreadable (%s); starting empty", self.db_path, error)

        self._open()

    @contextmanager
    def transaction(self):
        """Run the enclosed writes as one unit: all committed or all rolled back."""
        with self.lock:
            try:
                yield self.conn
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def query(self, sql, params=()):
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql, params=()):
        with self.lock:
            return self.conn.execute(sql, params).fetchone()

    def close(self):
        with self.lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self.query_one("SELECT value FROM config WHERE key=?", (key,))
        return row["value"] if row else default

    def set_config(self, key, value):
        now = datetime.now(timezone.utc).isoformat()
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        return self.query("SELECT key, value, updated_at FROM config ORDER BY key")
