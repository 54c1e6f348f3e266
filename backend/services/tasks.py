"""Estate task rules.

Any status may move to any other. Reaching DONE stamps completed_at unless the caller
supplied one; leaving DONE clears it the same way.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from models import TaskStatus, EstateEventType


def parse_task_status(value: Any) -> Optional[TaskStatus]:
    if isinstance(value, TaskStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return TaskStatus(value.strip().upper())
    except ValueError:
        return None


def apply_completion(updates: Dict[str, Any], previous: Optional[TaskStatus], now: Optional[datetime] = None):
    """Keep completed_at in step with a status change in `updates` (mutates it)."""
    next_status = updates.get("status")
    if next_status is None or next_status == previous or "completed_at" in updates:
        return
    if next_status == TaskStatus.DONE:
        updates["completed_at"] = now or datetime.now(timezone.utc)
    elif previous == TaskStatus.DONE:
        updates["completed_at"] = None


def task_event_type(previous: Optional[TaskStatus], next_status: Optional[TaskStatus]) -> EstateEventType:
    if next_status is not None and next_status != previous:
        if next_status == TaskStatus.DONE:
            return EstateEventType.TASK_COMPLETED
        if previous == TaskStatus.DONE:
            return EstateEventType.TASK_REOPENED
    return EstateEventType.TASK_UPDATED


TASK_EVENT_SUMMARIES = {
    EstateEventType.TASK_COMPLETED: "Task completed",
    EstateEventType.TASK_REOPENED: "Task reopened",
    EstateEventType.TASK_UPDATED: "Task updated",
}
