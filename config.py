# config.py
import os
from dataclasses import dataclass, fields

DB_FILE = os.environ.get("JOBSTREAM_DB", "queue.db")

DEFAULT_CONFIG = {
    # worker
    "poll_interval": "1.0",
    "step_delay": "1.0",
    "steps": "60",
    "stream_maxlen": "100",
    "error_backoff": "1.0",
    # relay
    "relay_poll_interval": "0.5",
    "relay_batch_size": "10",
    "relay_grace": "0.1",
    "replay_settle": "0.5",
    "replay_start_delay": "0.2",
    "replay_step_delay": "0.1",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

INT_KEYS = {"steps", "stream_maxlen", "relay_batch_size"}


def parse_config_value(key, value):
    if key in INT_KEYS:
        return int(value)
    return float(value)


def validate_config(key, value):
    """Check a key/value pair before it is written to the config table."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        parsed = parse_config_value(key, value)
    except ValueError:
        kind = "an integer" if key in INT_KEYS else "a number"
        raise ValueError(f"{key} must be {kind}, got {value!r}")
    if parsed < 0:
        raise ValueError(f"{key} must be >= 0")
    if key in INT_KEYS and parsed == 0:
        raise ValueError(f"{key} must be > 0")
    return parsed


@dataclass
class Settings:
    poll_interval: float = 1.0
    step_delay: float = 1.0
    steps: int = 60
    stream_maxlen: int = 100
    error_backoff: float = 1.0
    relay_poll_interval: float = 0.5
    relay_batch_size: int = 10
    relay_grace: float = 0.1
    replay_settle: float = 0.5
    replay_start_delay: float = 0.2
    replay_step_delay: float = 0.1

    @classmethod
    def from_storage(cls, storage, **overrides):
        """Defaults, then the config table, then explicit overrides (None is skipped)."""
        values = {}
        for f in fields(cls):
            raw = storage.get_config(f.name, default=DEFAULT_CONFIG[f.name])
            try:
                values[f.name] = parse_config_value(f.name, raw)
            except ValueError:
                values[f.name] = parse_config_value(f.name, DEFAULT_CONFIG[f.name])
        for key, value in overrides.items():
            if value is not None:
                values[key] = parse_config_value(key, value)
        return cls(**values)

    def worker_kwargs(self):
        return {
            "poll_interval": self.poll_interval,
            "step_delay": self.step_delay,
            "steps": self.steps,
            "stream_maxlen": self.stream_maxlen,
            "error_backoff": self.error_backoff,
        }

    def relay_kwargs(self):
        return {
            "poll_interval": self.relay_poll_interval,
            "batch_size": self.relay_batch_size,
            "grace": self.relay_grace,
            "settle_delay": self.replay_settle,
            "replay_start_delay": self.replay_start_delay,
            "replay_step_delay": self.replay_step_delay,
        }
