# event_log.py
import json
import logging
import sqlite3

from errors import NotFound, TransientIOError
from models import EventEntry, now_ms

logger = logging.getLogger(__name__)


def stream_key(job_id):
    return f"job:{job_id}:stream"


def _entries(rows):
    return [EventEntry(id=r["id"], fields=json.loads(r["fields"])) for r in rows]


class EventLog:
    """Append-only per-key logs of string-field events.

    Entry ids come from a single AUTOINCREMENT column, so they are strictly
    increasing within every key and never reused after a trim.
    """

    def __init__(self, storage):
        self.storage = storage

    def append(self, key, fields) -> int:
        record = {str(k): str(v) for k, v in fields.items()}
        try:
            with self.storage.transaction() as conn:
                cur = conn.execute(
                    "INSERT INTO events (stream_key, fields, created) VALUES (?, ?, ?)",
                    (key, json.dumps(record), now_ms()),
                )
                return cur.lastrowid
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while appending to {key}: {e}") from e

    def read_range(self, key, from_id=0, limit=10):
        """Entries with id > from_id, oldest first, at most `limit` of them."""
        try:
            rows = self.storage.query("""
                SELECT id, fields FROM events
                WHERE stream_key=? AND id>?
                ORDER BY id LIMIT ?
            """, (key, int(from_id or 0), int(limit)))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while reading {key}: {e}") from e
        return _entries(rows)

    def trim(self, key, maxlen):
        """Keep only the newest `maxlen` entries of a key."""
        try:
            with self.storage.transaction() as conn:
                conn.execute("""
                    DELETE FROM events
                    WHERE stream_key=? AND id NOT IN (
                        SELECT id FROM events WHERE stream_key=? ORDER BY id DESC LIMIT ?
                    )
                """, (key, key, max(int(maxlen), 0)))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while trimming {key}: {e}") from e

    def length(self, key):
        try:
            row = self.storage.query_one("SELECT COUNT(*) AS c FROM events WHERE stream_key=?", (key,))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while measuring {key}: {e}") from e
        return row["c"]

    def last_id(self, key):
        try:
            row = self.storage.query_one("SELECT MAX(id) AS m FROM events WHERE stream_key=?", (key,))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while reading {key}: {e}") from e
        return row["m"] or 0

    def delete(self, key):
        try:
            with self.storage.transaction() as conn:
                conn.execute("DELETE FROM events WHERE stream_key=?", (key,))
                conn.execute("DELETE FROM stream_pending WHERE stream_key=?", (key,))
                conn.execute("DELETE FROM stream_groups WHERE stream_key=?", (key,))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while deleting {key}: {e}") from e

    # ---------------- Consumer groups ----------------
    def create_group(self, key, group, start_id="$"):
        """Register a consumer group; "$" starts after the current tail, "0" at the beginning.

        Creating a group that already exists is a no-op.
        """
        start = self.last_id(key) if start_id == "$" else int(start_id)
        try:
            with self.storage.transaction() as conn:
                conn.execute("""
                    INSERT OR IGNORE INTO stream_groups (stream_key, group_name, last_delivered, created)
                    VALUES (?, ?, ?, ?)
                """, (key, group, start, now_ms()))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while creating group {group} on {key}: {e}") from e

    def read_group(self, key, group, consumer, count=10, ack_ids=()):
        """Acknowledge `ack_ids`, then hand out entries this group has not yet delivered."""
        try:
            with self.storage.transaction() as conn:
                row = conn.execute(
                    "SELECT last_delivered FROM stream_groups WHERE stream_key=? AND group_name=?",
                    (key, group),
                ).fetchone()
                if not row:
                    raise NotFound(f"Consumer group {group} does not exist for {key}")

                if ack_ids:
                    conn.executemany(
                        "DELETE FROM stream_pending WHERE stream_key=? AND group_name=? AND entry_id=?",
                        [(key, group, int(i)) for i in ack_ids],
                    )

                rows = conn.execute("""
                    SELECT id, fields FROM events
                    WHERE stream_key=? AND id>?
                    ORDER BY id LIMIT ?
                """, (key, row["last_delivered"], int(count))).fetchall()
                entries = _entries(rows)
                if entries:
                    delivered = now_ms()
                    conn.executemany("""
                        INSERT OR REPLACE INTO stream_pending (stream_key, group_name, entry_id, consumer, delivered)
                        VALUES (?, ?, ?, ?, ?)
                    """, [(key, group, e.id, consumer, delivered) for e in entries])
                    conn.execute(
                        "UPDATE stream_groups SET last_delivered=? WHERE stream_key=? AND group_name=?",
                        (entries[-1].id, key, group),
                    )
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while reading group {group} of {key}: {e}") from e
        return entries

    def pending(self, key, group):
        try:
            rows = self.storage.query("""
                SELECT entry_id, consumer FROM stream_pending
                WHERE stream_key=? AND group_name=? ORDER BY entry_id
            """, (key, group))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while reading pending entries of {group} on {key}: {e}") from e
        return [(r["entry_id"], r["consumer"]) for r in rows]
