# jobs.py
import json
import logging
import sqlite3
import uuid

from errors import InvalidTransition, NotFound, TransientIOError, ValidationError
from models import (
    PENDING, PROCESSING, STATUSES, STATUS_RANK, SUCCEEDED, FAILED, TERMINAL_STATUSES,
    Job, now_ms,
)

logger = logging.getLogger(__name__)


def is_empty_payload(data):
    return data is None or (isinstance(data, (str, list, dict)) and len(data) == 0)


class JobStore:
    """Job records plus the FIFO queue of job ids still to be worked.

    Both live in the same sqlite file as the event log; every mutation is
    committed before the call returns.
    """

    def __init__(self, storage):
        self.storage = storage

    def create_job(self, data) -> Job:
        if is_empty_payload(data):
            raise ValidationError("Job data is required")
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Job data must be JSON serializable: {e}")

        job = Job(id=str(uuid.uuid4()), data=data)
        try:
            with self.storage.transaction() as conn:
                conn.execute("""
                    INSERT INTO jobs (id, status, created, updated, data)
                    VALUES (?, ?, ?, ?, ?)
                """, (job.id, job.status, job.created, job.updated, payload))
                conn.execute("INSERT INTO queue (job_id) VALUES (?)", (job.id,))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while creating job: {e}") from e

        logger.info("Job %s created", job.id)
        return job

    def get_job(self, job_id):
        try:
            row = self.storage.query_one("SELECT * FROM jobs WHERE id=?", (job_id,))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while reading job {job_id}: {e}") from e
        return Job.from_row(row) if row else None

    def require_job(self, job_id) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise NotFound("Job not found")
        return job

    def peek_next_job(self):
        """Job at the head of the queue; it stays queued until the worker removes it."""
        try:
            row = self.storage.query_one("""
                SELECT j.* FROM queue q JOIN jobs j ON j.id = q.job_id
                ORDER BY q.position LIMIT 1
            """)
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while reading queue: {e}") from e
        return Job.from_row(row) if row else None

    def update_status(self, job_id, status, output=None, error=None):
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status!r}")
        if output is not None and status != SUCCEEDED:
            raise InvalidTransition("output can only be stored on a succeeded job")
        if status == SUCCEEDED and output is None:
            raise InvalidTransition("a succeeded job must carry its output")
        if error is not None and status != FAILED:
            raise InvalidTransition("error can only be stored on a failed job")

        try:
            with self.storage.transaction() as conn:
                row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
                if not row:
                    return None
                job = Job.from_row(row)

                if job.status in TERMINAL_STATUSES and status != job.status:
                    raise InvalidTransition(f"Job {job_id} is already {job.status}")
                if STATUS_RANK[status] < STATUS_RANK[job.status]:
                    raise InvalidTransition(f"Job {job_id} cannot move from {job.status} back to {status}")

                job.status = status
                job.updated = max(now_ms(), job.created)
                if output is not None:
                    job.output = output
                if error is not None:
                    job.error = error

                conn.execute("""
                    UPDATE jobs SET status=?, updated=?, output=?, error=?
                    WHERE id=?
                """, (
                    job.status,
                    job.updated,
                    json.dumps(job.output) if job.output is not None else None,
                    job.error,
                    job_id,
                ))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while updating job {job_id}: {e}") from e
        return job

    def remove_from_queue(self, job_id):
        try:
            with self.storage.transaction() as conn:
                conn.execute("DELETE FROM queue WHERE job_id=?", (job_id,))
        except sqlite3.Error as e:
            raise TransientIOError(f"DB error while dequeuing job {job_id}: {e}") from e

    def list_pending(self):
        return self.list_jobs(status=PENDING)

    # ---------------- Diagnostics ----------------
    def list_jobs(self, status=None, limit=None):
        sql = "SELECT * FROM jobs"
        params = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY created, rowid"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [Job.from_row(r) for r in self.storage.query(sql, params)]

    def recent_jobs(self, limit=50):
        rows = self.storage.query("SELECT * FROM jobs ORDER BY created DESC, rowid DESC LIMIT ?", (limit,))
        return [Job.from_row(r) for r in rows]

    def queue_ids(self):
        return [r["job_id"] for r in self.storage.query("SELECT job_id FROM queue ORDER BY position")]

    def counts(self):
        out = {s: 0 for s in STATUSES}
        for row in self.storage.query("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status"):
            out[row["status"]] = row["c"]
        return out

    def in_flight(self):
        """Jobs left in processing, e.g. by a worker that crashed mid-job."""
        return self.list_jobs(status=PROCESSING)
