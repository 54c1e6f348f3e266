"""Estate activity log.

Append-only timeline of estate mutations. Writers call log_estate_event after the main
change has been persisted; readers page newest-first with a created_at cursor.
"""
from database import database
from models import EstateEvent, EstateEventType
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple, Iterable, Union
import logging

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 25
MAX_LIMIT = 100

# Legacy names still emitted by older call sites
ESTATE_EVENT_TYPE_ALIASES = {
    "DOCUMENT_ADDED": EstateEventType.DOCUMENT_CREATED,
    "DOCUMENT_REMOVED": EstateEventType.DOCUMENT_DELETED,
    "DOCUMENT_UPSERTED": EstateEventType.DOCUMENT_UPDATED,
    "NOTE_EDITED": EstateEventType.NOTE_UPDATED,
    "NOTE_ARCHIVED": EstateEventType.NOTE_DELETED,
    "TASK_DONE": EstateEventType.TASK_COMPLETED,
    "TASK_UNDONE": EstateEventType.TASK_REOPENED,
    "INVOICE_SENT": EstateEventType.INVOICE_STATUS_CHANGED,
    "INVOICE_PAID": EstateEventType.INVOICE_STATUS_CHANGED,
    "INVOICE_VOID": EstateEventType.INVOICE_STATUS_CHANGED,
}


def normalize_estate_event_type(value: Union[str, EstateEventType, None]) -> EstateEventType:
    """Canonical event type for value; unknown input falls back to ESTATE_UPDATED."""
    if isinstance(value, EstateEventType):
        return value
    raw = (value or "").strip().upper() if isinstance(value, str) else ""
    if not raw:
        return EstateEventType.ESTATE_UPDATED

    aliased = ESTATE_EVENT_TYPE_ALIASES.get(raw)
    if aliased:
        return aliased

    try:
        return EstateEventType(raw)
    except ValueError:
        return EstateEventType.ESTATE_UPDATED


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {"from": before_val, "to": after_val}

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    return value[:limit]


async def log_estate_event(
    owner_id: str,
    estate_id: str,
    type: Union[str, EstateEventType],
    summary: str,
    detail: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    entity_id: Optional[str] = None,
) -> str:
    """Append one activity event. Failures are logged and never raised.

    Returns the event_id, or "" when the write failed.
    """
    try:
        db = database.get_db()

        event = EstateEvent(
            estate_id=estate_id,
            owner_id=owner_id,
            type=normalize_estate_event_type(type),
            entity_id=entity_id,
            summary=_truncate(summary, 240) or "Estate updated",
            detail=_truncate(detail, 4000),
            meta=meta or None,
        )

        doc = event.model_dump()
        doc["type"] = event.type.value

        await db.estate_events.insert_one(doc)
        logger.info(f"Estate event logged: {event.type.value} estate_id={estate_id}")
        return event.event_id
    except Exception as e:
        logger.error(f"Failed to log estate event: {e}")
        # Never fail the main operation due to activity log failure
        return ""


def _parse_cursor(cursor: Optional[str]) -> Optional[datetime]:
    if not isinstance(cursor, str) or not cursor.strip():
        return None
    try:
        dt = datetime.fromisoformat(cursor.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


async def get_estate_events(
    estate_id: str,
    owner_id: Optional[str] = None,
    types: Optional[Iterable[Union[str, EstateEventType]]] = None,
    limit: int = DEFAULT_LIMIT,
    cursor: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Activity timeline for an estate, newest first.

    cursor is an exclusive created_at ISO timestamp; the returned next_cursor is the
    created_at of the last row (None when the page is empty).
    """
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = DEFAULT_LIMIT
    limit = max(1, min(MAX_LIMIT, limit))

    query: Dict[str, Any] = {"estate_id": estate_id}

    if isinstance(owner_id, str) and owner_id.strip():
        query["owner_id"] = owner_id.strip()

    type_values = [normalize_estate_event_type(t).value for t in (types or [])]
    if type_values:
        query["type"] = {"$in": sorted(set(type_values))}

    before = _parse_cursor(cursor)
    if before:
        query["created_at"] = {"$lt": before}

    db = database.get_db()
    docs = await db.estate_events.find(query, {"_id": 0}).sort("created_at", -1).limit(limit).to_list(length=limit)

    rows = []
    for d in docs:
        rows.append({
            "event_id": d.get("event_id"),
            "estate_id": d.get("estate_id"),
            "owner_id": d.get("owner_id"),
            "type": d.get("type"),
            "entity_id": d.get("entity_id"),
            "summary": d.get("summary") or "",
            "detail": d.get("detail"),
            "meta": d.get("meta"),
            "created_at": _iso(d.get("created_at")),
        })

    next_cursor = rows[-1]["created_at"] if rows else None
    return rows, next_cursor
