# worker.py
import asyncio
import json
import logging
import uuid

from errors import ProcessingError
from event_log import stream_key
from models import (
    COMPLETED, ERROR, FAILED, PROCESSING, PROGRESS, STARTED, SUCCEEDED, now_ms,
)

logger = logging.getLogger(__name__)


def default_step_handler(job, step):
    """One unit of simulated work: a short description of the chunk processed."""
    return f"Processed chunk {step} of data: {json.dumps(job.data)[:20]}..."


class Worker:
    """Single consumer that drains the job queue one job at a time.

    The queue head is only removed once the job is finished or has failed,
    so a crash mid-job leaves it at the head and it is picked up again on the
    next start.
    """

    def __init__(self, store, events, worker_id=None, poll_interval=1.0, step_delay=1.0, steps=60,
                 stream_maxlen=100, error_backoff=1.0, step_handler=None, stop_event=None):
        self.store = store
        self.events = events
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.step_delay = step_delay
        self.steps = steps
        self.stream_maxlen = stream_maxlen
        self.error_backoff = error_backoff
        self.step_handler = step_handler or default_step_handler
        self.stop_event = stop_event or asyncio.Event()

    async def run(self):
        logger.info("%s started (poll=%ss, steps=%s, step_delay=%ss)",
                    self.worker_id, self.poll_interval, self.steps, self.step_delay)
        while not self.stop_event.is_set():
            try:
                if not await self.run_once():
                    await self._pause(self.poll_interval)
            except Exception:
                logger.exception("%s: unexpected error, resuming in %ss", self.worker_id, self.error_backoff)
                await self._pause(self.error_backoff)
        logger.info("%s stopped", self.worker_id)

    def stop(self):
        self.stop_event.set()

    async def _pause(self, seconds):
        # Wakes early when stop() is called
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("Job %s: %s -> %s %s", job_id, old_state, new_state, extra)

    async def run_once(self):
        """Handle the job at the queue head. Returns False when the queue is empty."""
        job = self.store.peek_next_job()
        if job is None:
            return False

        if job.is_terminal:
            # Finalized earlier but the dequeue did not go through
            self.store.remove_from_queue(job.id)
            logger.warning("Job %s was already %s; removed from queue", job.id, job.status)
            return True

        self.store.update_status(job.id, PROCESSING)
        self._log_transition(job.id, job.status, PROCESSING, f"(claimed by {self.worker_id})")

        try:
            output = await self.process_job(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_failure(job, e)
            return True

        self.store.update_status(job.id, SUCCEEDED, output=output)
        self.store.remove_from_queue(job.id)
        self._log_transition(job.id, PROCESSING, SUCCEEDED, f"(steps={len(output)})")
        return True

    async def process_job(self, job):
        key = stream_key(job.id)
        start = now_ms()
        output = []

        self.events.append(key, {
            "type": STARTED,
            "jobId": job.id,
            "timestamp": now_ms(),
            "message": "Job processing started",
        })

        for i in range(self.steps):
            await asyncio.sleep(self.step_delay)
            step = i + 1
            try:
                data = self.step_handler(job, step)
            except Exception as e:
                raise ProcessingError(f"step {step} failed: {e}") from e

            ts = now_ms()
            record = {
                "step": step,
                "timestamp": ts,
                "processingTime": ts - start,
                "data": data,
            }
            output.append(record)
            self.events.append(key, {"type": PROGRESS, "jobId": job.id, **record})
            logger.debug("Job %s - step %s completed", job.id, step)

        self.events.append(key, {
            "type": COMPLETED,
            "jobId": job.id,
            "timestamp": now_ms(),
            "processingTime": now_ms() - start,
            "message": "Job processing completed",
        })
        self.events.trim(key, self.stream_maxlen)
        return output

    def _handle_failure(self, job, exc):
        message = exc.message if isinstance(exc, ProcessingError) else str(exc)
        logger.error("Error processing job %s: %s", job.id, message)

        try:
            self.events.append(stream_key(job.id), {
                "type": ERROR,
                "jobId": job.id,
                "timestamp": now_ms(),
                "error": message,
            })
        except Exception:
            logger.exception("Could not record error event for job %s", job.id)

        self.store.update_status(job.id, FAILED, error=message)
        self.store.remove_from_queue(job.id)
        self._log_transition(job.id, PROCESSING, FAILED, f"(error={message})")
