"""Batch status vocabulary: transitions, display mapping and progress."""
from __future__ import annotations

import math

NOT_STARTED = "Not Started"
IN_PROCESS = "In-Process"
ON_HOLD = "On-Hold"
COMPLETED = "Completed"
RELEASED = "Released"
REJECTED = "Rejected"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    NOT_STARTED: frozenset({IN_PROCESS, ON_HOLD, REJECTED}),
    IN_PROCESS: frozenset({ON_HOLD, COMPLETED, REJECTED, RELEASED}),
    ON_HOLD: frozenset({IN_PROCESS, REJECTED}),
    COMPLETED: frozenset({RELEASED, REJECTED}),
    RELEASED: frozenset(),
    REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)
RELEASABLE_FROM = tuple(sorted(status for status, targets in ALLOWED_TRANSITIONS.items() if RELEASED in targets))

# Named actions offered by the batch action endpoint.
BATCH_ACTIONS = {
    "start": IN_PROCESS,
    "hold": ON_HOLD,
    "resume": IN_PROCESS,
    "complete": COMPLETED,
    "reject": REJECTED,
    "release": RELEASED,
}

DISPLAY_STATUS = {
    IN_PROCESS: ("In Progress", "yellow"),
    ON_HOLD: ("QA Hold", "gray"),
    RELEASED: ("Released", "green"),
    COMPLETED: ("Completed", "orange"),
}
DEFAULT_DISPLAY_STATUS = ("Not Started", "blue")

# displayStatus -> summary counter key
SUMMARY_BUCKETS = {
    "Not Started": "notStarted",
    "In Progress": "inProgress",
    "Completed": "completed",
    "QA Hold": "qaHold",
    "Released": "released",
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def display_status(status: str | None) -> tuple[str, str]:
    """Map raw status to (displayStatus, statusColor)."""
    return DISPLAY_STATUS.get(status or "", DEFAULT_DISPLAY_STATUS)


def empty_summary(total: int = 0) -> dict[str, int]:
    summary = {"totalBatches": total}
    summary.update({key: 0 for key in SUMMARY_BUCKETS.values()})
    return summary


def progress_percent(completed_steps: int, total_steps: int) -> int:
    """Completed share of process steps, 0..100, half rounded up; 0 without steps."""
    if total_steps <= 0:
        return 0
    completed = max(0, min(completed_steps, total_steps))
    return int(math.floor(completed * 100 / total_steps + 0.5))
