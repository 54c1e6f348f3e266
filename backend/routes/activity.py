from fastapi import APIRouter, Request, Query
from typing import Optional
from middleware import estate_route_guard
from services.estate_events import get_estate_events, DEFAULT_LIMIT
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/activity", tags=["activity"])


@router.get("")
async def list_activity(
    request: Request,
    estate_id: str,
    limit: int = Query(DEFAULT_LIMIT),
    cursor: Optional[str] = None,
    types: Optional[str] = Query(None, description="Comma-separated event types"),
):
    """Estate activity timeline, newest first. Page with the returned next_cursor."""
    await estate_route_guard(request, estate_id)

    type_list = [t for t in (types or "").split(",") if t.strip()]
    rows, next_cursor = await get_estate_events(
        estate_id,
        types=type_list or None,
        limit=limit,
        cursor=cursor,
    )
    return {"events": rows, "next_cursor": next_cursor}
