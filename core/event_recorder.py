"""
Append-only domain event log (logs/events.jsonl).

One JSON object per line, tagged with the run id of the server process that
wrote it. Every server start is a new run, so a run groups the toggles and
merges of one deployment. Writing is best effort: a full disk or a read-only
volume is logged and ignored.
"""

import datetime
import json
import logging
import os
import secrets
import threading
from typing import Any, Dict

from core import config

SCHEMA_VERSION = 1

RUN_START = "RUN_START"
RUN_END = "RUN_END"
UNLOCK_TOGGLE = "UNLOCK_TOGGLE"
UNLOCK_ROLLBACK = "UNLOCK_ROLLBACK"
MERGE = "MERGE"
LOGOUT = "LOGOUT"
EVENT_TYPES = {RUN_START, RUN_END, UNLOCK_TOGGLE, UNLOCK_ROLLBACK, MERGE, LOGOUT}

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_recorder = None


def new_run_id() -> str:
    """run_<utc timestamp>_<suffix>; the suffix keeps restarts within a second apart."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return f"run_{now.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(3)}"


class EventRecorder:
    def __init__(self, log_dir: str = None, run_id: str = None):
        self.run_id = run_id or new_run_id()
        self.log_path = os.path.join(log_dir or config.LOG_DIR, "events.jsonl")

    def record(self, event_type: str, payload: Dict[str, Any], actor: str = "user"):
        """Append one event. Unknown event types are a programming error."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        entry = {
            "schema_version": SCHEMA_VERSION,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "run_id": self.run_id,
            "event_type": event_type,
            "actor": actor,
            "payload": payload,
        }

        try:
            with _lock:
                os.makedirs(os.path.dirname(self.log_path), exist_ok=True)
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            logger.warning(f"Event logging failed ({event_type}): {e}")


def get_event_recorder() -> EventRecorder:
    """Process-wide recorder; created on first use with a fresh run id."""
    global _recorder
    if _recorder is None:
        _recorder = EventRecorder()
    return _recorder
