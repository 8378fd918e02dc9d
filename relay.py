# relay.py
import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from event_log import stream_key
from models import COMPLETED, ERROR, FAILED, INITIAL, PROGRESS, STARTED, SUCCEEDED, now_ms

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    INITIALIZING = "initializing"
    TAILING = "tailing"
    REPLAYING = "replaying"
    CLOSED = "closed"


TRANSITIONS = {
    RelayState.INITIALIZING: {RelayState.TAILING, RelayState.REPLAYING, RelayState.CLOSED},
    RelayState.TAILING: {RelayState.CLOSED},
    RelayState.REPLAYING: {RelayState.CLOSED},
    RelayState.CLOSED: set(),
}


@dataclass
class RelayEvent:
    data: Dict[str, Any] = field(default_factory=dict)
    # Event log entry id; None for the snapshot and for replayed events
    id: Optional[int] = None

    @property
    def type(self):
        return self.data.get("type")


def format_sse(event):
    lines = []
    if event.id is not None:
        lines.append(f"id: {event.id}")
    lines.append(f"event: {event.type}")
    lines.append(f"data: {json.dumps(event.data)}")
    return "\n".join(lines) + "\n\n"


def _field(value):
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def replay_events(job):
    """Rebuild a finished job's timeline from its stored record.

    Succeeded jobs give started, one progress per output record, completed.
    Failed jobs give started, error. The result depends only on the record.
    """
    events = [{
        "type": STARTED,
        "jobId": job.id,
        "timestamp": str(job.created),
        "message": "Job processing started",
    }]

    if job.status == FAILED:
        events.append({
            "type": ERROR,
            "jobId": job.id,
            "timestamp": str(job.updated),
            "error": job.error or "Job failed",
        })
        return events

    records = job.output if isinstance(job.output, list) else []
    for item in records:
        if not isinstance(item, dict):
            item = {"data": item}
        events.append({
            "type": PROGRESS,
            "jobId": job.id,
            "step": str(item.get("step") or 0),
            "timestamp": str(item.get("timestamp") or 0),
            "processingTime": str(item.get("processingTime") or 0),
            "data": _field(item.get("data")),
        })

    events.append({
        "type": COMPLETED,
        "jobId": job.id,
        "timestamp": str(job.updated),
        "processingTime": str(job.updated - job.created),
        "message": "Job processing completed",
    })
    return events


class JobRelay:
    """Streams one job's events to one observer.

    After the `initial` snapshot it either tails the job's event log until a
    terminal event, or, for a job that already finished, replays a timeline
    built from the stored record. Whichever branch runs, nothing is emitted
    after the first completed/error event.
    """

    def __init__(self, store, events, job_id, poll_interval=0.5, batch_size=10, grace=0.1,
                 settle_delay=0.5, replay_start_delay=0.2, replay_step_delay=0.1, last_event_id=None):
        self.store = store
        self.events = events
        self.job_id = job_id
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.grace = grace
        self.settle_delay = settle_delay
        self.replay_start_delay = replay_start_delay
        self.replay_step_delay = replay_step_delay

        self.state = RelayState.INITIALIZING
        self.completed = False
        self.cursor = _parse_cursor(last_event_id)
        self.job = None

    def _transition(self, new_state):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"relay for {self.job_id}: cannot go from {self.state.value} to {new_state.value}")
        logger.debug("relay %s: %s -> %s", self.job_id, self.state.value, new_state.value)
        self.state = new_state

    def open(self):
        """Load the job; raises NotFound before anything is streamed."""
        self.job = self.store.require_job(self.job_id)
        return self.job

    def _should_replay(self, job):
        if job.status == SUCCEEDED and job.output is not None:
            return True
        # A failed job with no retained history would otherwise be tailed forever
        return job.status == FAILED and self.events.length(stream_key(job.id)) == 0

    def _final_event(self, key):
        """Terminal event for a finished job whose log has nothing past the cursor."""
        current = self.store.get_job(self.job_id)
        if current is None or not current.is_terminal:
            return None
        # The worker logs the terminal entry before it updates the record
        if self.events.read_range(key, self.cursor, 1):
            return None
        return replay_events(current)[-1]

    async def stream(self):
        if self.state is not RelayState.INITIALIZING:
            raise RuntimeError(f"relay for {self.job_id} has already streamed")
        job = self.job or self.open()
        logger.info("relay %s opened (status=%s)", job.id, job.status)
        try:
            yield RelayEvent({
                "type": INITIAL,
                "jobId": job.id,
                "timestamp": str(now_ms()),
                "job": job.to_dict(),
            })

            try:
                if self._should_replay(job):
                    self._transition(RelayState.REPLAYING)
                    await asyncio.sleep(self.settle_delay)
                    if not self.completed:
                        timeline = replay_events(job)
                        for i, data in enumerate(timeline):
                            if data["type"] in (COMPLETED, ERROR):
                                self.completed = True
                            yield RelayEvent(data)
                            if self.completed:
                                break
                            await asyncio.sleep(self.replay_start_delay if i == 0 else self.replay_step_delay)
                else:
                    self._transition(RelayState.TAILING)
                    key = stream_key(job.id)
                    while not self.completed:
                        final = None
                        try:
                            entries = self.events.read_range(key, self.cursor, self.batch_size)
                            if not entries:
                                final = self._final_event(key)
                        except Exception:
                            logger.exception("relay %s: error reading %s", job.id, key)
                            entries = []

                        for entry in entries:
                            self.cursor = entry.id
                            if entry.is_terminal:
                                self.completed = True
                            yield RelayEvent(dict(entry.fields), id=entry.id)
                            if self.completed:
                                break

                        if final is not None:
                            self.completed = True
                            yield RelayEvent(final)
                        elif not self.completed and len(entries) < self.batch_size:
                            # A full batch means more may be waiting; read again straight away
                            await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.exception("relay %s failed mid-stream", job.id)
                if not self.completed:
                    self.completed = True
                    yield RelayEvent({
                        "type": ERROR,
                        "jobId": job.id,
                        "timestamp": str(now_ms()),
                        "error": getattr(e, "message", None) or str(e) or type(e).__name__,
                    })

            # Let the final message flush before the channel closes
            await asyncio.sleep(self.grace)
        finally:
            self._transition(RelayState.CLOSED)
            logger.info("relay %s closed (completed=%s, cursor=%s)", job.id, self.completed, self.cursor)


def _parse_cursor(last_event_id):
    try:
        return max(int(last_event_id), 0) if last_event_id else 0
    except (TypeError, ValueError):
        return 0
