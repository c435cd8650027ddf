"""
Event logging utilities for NDJSON format.

Every reconciliation and teardown pass appends to $RIGGER_HOME/events.ndjson;
``rigger status`` reads it back as the run report. Only the most recent
MAX_PASSES passes are kept.
"""

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import get_rigger_home

_write_lock = threading.Lock()

# Passes kept in the log; older ones are dropped when a new pass starts
MAX_PASSES = 20


def events_file() -> Path:
    return get_rigger_home() / "events.ndjson"


def _is_pass_start(line: str) -> bool:
    try:
        return json.loads(line).get("type") in PASS_START_TYPES
    except (json.JSONDecodeError, AttributeError):
        return False


def trim_events(keep_passes: int) -> None:
    """
    Drop everything before the last keep_passes passes from the event log.

    The rewrite goes through a temporary file and an atomic rename. Callers
    hold the write lock.
    """
    logs_file = events_file()
    if keep_passes < 0 or not logs_file.exists():
        return

    with open(logs_file, "r") as f:
        lines = f.readlines()
    starts = [index for index, line in enumerate(lines) if _is_pass_start(line)]
    if len(starts) <= keep_passes:
        return

    fd, tmp_name = tempfile.mkstemp(prefix=f".{logs_file.name}.", dir=str(logs_file.parent))
    try:
        with os.fdopen(fd, "w") as f:
            f.writelines(lines[starts[-keep_passes]:] if keep_passes else [])
        os.replace(tmp_name, logs_file)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def emit_event(event_type: str, data: Dict[str, Any]) -> None:
    """
    Append an event to the event log.

    Args:
        event_type: Event type (e.g., "PASS_START", "DECISION", "RESOURCE_FAILED")
        data: Event data
    """
    logs_file = events_file()

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with _write_lock:
        logs_file.parent.mkdir(parents=True, exist_ok=True)
        if event_type in PASS_START_TYPES:
            trim_events(MAX_PASSES - 1)
        with open(logs_file, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
            f.flush()


def read_events() -> List[Dict[str, Any]]:
    """
    Read all events from the event log.

    Returns:
        List of events
    """
    logs_file = events_file()

    if not logs_file.exists():
        return []

    events = []
    with open(logs_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def last_pass_events() -> List[Dict[str, Any]]:
    """Events belonging to the most recent pass (reconcile or teardown)."""
    events = read_events()
    for index in range(len(events) - 1, -1, -1):
        if events[index].get("type") in PASS_START_TYPES:
            return events[index:]
    return events


def get_last_event() -> Optional[Dict[str, Any]]:
    events = read_events()
    return events[-1] if events else None


def get_status_from_events() -> str:
    """
    Summarize the last pass as a status string.

    Returns:
        Status string
    """
    last_event = get_last_event()
    if not last_event:
        return "unknown"

    status_map = {
        EventTypes.PASS_START: "reconciling",
        EventTypes.PROBE: "reconciling",
        EventTypes.DECISION: "reconciling",
        EventTypes.ACTION_START: "reconciling",
        EventTypes.ACTION_DONE: "reconciling",
        EventTypes.LEDGER_UPSERT: "reconciling",
        EventTypes.RESOURCE_FAILED: "failed",
        EventTypes.TEARDOWN_START: "tearing_down",
        EventTypes.TEARDOWN_RESOURCE: "tearing_down",
    }

    event_type = last_event.get("type", "")
    if event_type in (EventTypes.PASS_DONE, EventTypes.TEARDOWN_DONE):
        ok = last_event.get("data", {}).get("ok", False)
        if event_type == EventTypes.PASS_DONE:
            return "converged" if ok else "failed"
        return "destroyed" if ok else "failed"

    return status_map.get(event_type, "unknown")


class EventTypes:
    PASS_START = "PASS_START"
    PROBE = "PROBE"
    DECISION = "DECISION"
    ACTION_START = "ACTION_START"
    ACTION_DONE = "ACTION_DONE"
    LEDGER_UPSERT = "LEDGER_UPSERT"
    RESOURCE_FAILED = "RESOURCE_FAILED"
    PASS_DONE = "PASS_DONE"
    TEARDOWN_START = "TEARDOWN_START"
    TEARDOWN_RESOURCE = "TEARDOWN_RESOURCE"
    TEARDOWN_DONE = "TEARDOWN_DONE"
    TF_COMMAND = "TF_COMMAND"


PASS_START_TYPES = (EventTypes.PASS_START, EventTypes.TEARDOWN_START)
