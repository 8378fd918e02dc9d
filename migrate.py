# migrate.py
# Import state written by the earlier whole-file store: every job in a
# jobs.json array and the pending ids in a queue.json document shaped like
# {"jobs": [id, ...]}. Missing or unreadable files are treated as empty.
import json
import logging
import os

from models import PENDING, PROCESSING, STATUSES, SUCCEEDED, now_ms

logger = logging.getLogger(__name__)


def _load(path, kind):
    if not path or not os.path.exists(path):
        logger.warning("No %s file found at %s, treating as empty", kind, path)
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Invalid %s file %s (%s), treating as empty", kind, path, e)
        return None


def import_legacy_files(storage, jobs_path="jobs.json", queue_path="queue.json"):
    """Copy legacy jobs and queue into `storage`. Returns (jobs_imported, queued)."""
    raw_jobs = _load(jobs_path, "jobs")
    raw_queue = _load(queue_path, "queue")

    jobs = {}
    for item in raw_jobs if isinstance(raw_jobs, list) else []:
        if not isinstance(item, dict) or not item.get("id") or item.get("status") not in STATUSES:
            logger.warning("Skipping malformed job record: %r", item)
            continue
        created = int(item.get("created") or now_ms())
        updated = max(int(item.get("updated") or created), created)
        output = item.get("output") if item["status"] == SUCCEEDED else None
        jobs[str(item["id"])] = (item["status"], created, updated, item.get("data"), output)

    queue_ids = []
    ids = raw_queue.get("jobs") if isinstance(raw_queue, dict) else None
    for job_id in ids if isinstance(ids, list) else []:
        job_id = str(job_id)
        entry = jobs.get(job_id)
        if entry is None or entry[0] not in (PENDING, PROCESSING) or job_id in queue_ids:
            logger.warning("Dropping queue entry %s: no matching pending job", job_id)
            continue
        queue_ids.append(job_id)

    imported = 0
    with storage.transaction() as conn:
        for job_id, (status, created, updated, data, output) in jobs.items():
            cur = conn.execute("""
                INSERT OR IGNORE INTO jobs (id, status, created, updated, data, output)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                job_id, status, created, updated, json.dumps(data),
                json.dumps(output) if output is not None else None,
            ))
            imported += cur.rowcount
        for job_id in queue_ids:
            conn.execute("INSERT OR IGNORE INTO queue (job_id) VALUES (?)", (job_id,))

    logger.info("Imported %s job(s), %s queued", imported, len(queue_ids))
    return imported, len(queue_ids)
