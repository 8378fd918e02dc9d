# models.py
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Job states
PENDING = "pending"
PROCESSING = "processing"
SUCCEEDED = "succeeded"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, SUCCEEDED, FAILED)
TERMINAL_STATUSES = (SUCCEEDED, FAILED)

# Forward-only ordering; succeeded and failed are both terminal
STATUS_RANK = {PENDING: 0, PROCESSING: 1, SUCCEEDED: 2, FAILED: 2}

# Event types
STARTED = "started"
PROGRESS = "progress"
COMPLETED = "completed"
ERROR = "error"
INITIAL = "initial"

TERMINAL_EVENTS = (COMPLETED, ERROR)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    id: str
    data: Any
    status: str = PENDING
    created: int = field(default_factory=now_ms)
    updated: int = 0
    output: Any = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.updated:
            self.updated = self.created

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "status": self.status,
            "created": self.created,
            "updated": self.updated,
            "data": self.data,
        }
        if self.output is not None:
            d["output"] = self.output
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            status=row["status"],
            created=row["created"],
            updated=row["updated"],
            data=json.loads(row["data"]),
            output=json.loads(row["output"]) if row["output"] is not None else None,
            error=row["error"],
        )


@dataclass
class EventEntry:
    id: int
    fields: Dict[str, str]

    @property
    def type(self):
        return self.fields.get("type")

    @property
    def is_terminal(self):
        return self.type in TERMINAL_EVENTS
