"""Note Routes - Free-text estate notes.

Endpoints:
- GET /api/estates/{estate_id}/notes - Any member, pinned first then newest
- POST /api/estates/{estate_id}/notes - Create (EDITOR+)
- GET /api/estates/{estate_id}/notes/{note_id} - Any member
- PATCH /api/estates/{estate_id}/notes/{note_id} - Edit body (EDITOR+), pin/unpin (OWNER)
- DELETE /api/estates/{estate_id}/notes/{note_id} - Delete (EDITOR+)
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from database import database
from models import EstateNote, EstateEventType
from middleware import estate_route_guard, estate_edit_guard
from services.estate_events import log_estate_event
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/notes", tags=["notes"])

NOTE_MAX_LENGTH = 5000
BODY_PREVIEW_LENGTH = 240


class NoteCreateRequest(BaseModel):
    body: str
    pinned: bool = False


class NoteUpdateRequest(BaseModel):
    body: Optional[str] = None
    pinned: Optional[bool] = None


def _clean_body(value: Optional[str]) -> str:
    body = (value or "").strip()
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is required")
    if len(body) > NOTE_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Body cannot exceed {NOTE_MAX_LENGTH} characters",
        )
    return body


def _forbid_pin(detail: str = "Only the owner can pin or unpin notes"):
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def _load_note(estate_id: str, note_id: str) -> dict:
    db = database.get_db()
    note = await db.estate_notes.find_one({"estate_id": estate_id, "note_id": note_id}, {"_id": 0})
    if not note:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Note not found")
    return note


@router.get("")
async def list_notes(request: Request, estate_id: str):
    await estate_route_guard(request, estate_id)
    db = database.get_db()
    notes = await db.estate_notes.find(
        {"estate_id": estate_id}, {"_id": 0}
    ).sort([("pinned", -1), ("created_at", -1)]).to_list(length=500)
    return {"notes": notes}


@router.get("/{note_id}")
async def get_note(request: Request, estate_id: str, note_id: str):
    await estate_route_guard(request, estate_id)
    return {"note": await _load_note(estate_id, note_id)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_note(request: Request, estate_id: str, body: NoteCreateRequest):
    user, access = await estate_edit_guard(request, estate_id)
    text = _clean_body(body.body)
    if body.pinned and not access.is_owner:
        _forbid_pin()

    db = database.get_db()
    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0, "owner_id": 1})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")

    note = EstateNote(
        estate_id=estate_id,
        owner_id=estate["owner_id"],
        created_by=user["user_id"],
        body=text,
        pinned=body.pinned,
    )
    doc = note.model_dump()
    await db.estate_notes.insert_one(doc)
    doc.pop("_id", None)

    await log_estate_event(
        owner_id=estate["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.NOTE_CREATED,
        summary="Note created",
        meta={"pinned": note.pinned, "body_preview": text[:BODY_PREVIEW_LENGTH], "actor_id": user["user_id"]},
        entity_id=note.note_id,
    )
    return {"note": doc}


@router.patch("/{note_id}")
async def update_note(request: Request, estate_id: str, note_id: str, body: NoteUpdateRequest):
    user, access = await estate_edit_guard(request, estate_id)

    fields = body.model_dump(exclude_unset=True)
    updates = {}
    if "body" in fields:
        updates["body"] = _clean_body(fields["body"])
    if "pinned" in fields:
        if fields["pinned"] is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="pinned must be true or false")
        if not access.is_owner:
            _forbid_pin()
        updates["pinned"] = fields["pinned"]
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields provided")

    note = await _load_note(estate_id, note_id)
    body_changed = "body" in updates and updates["body"] != note.get("body")
    pin_changed = "pinned" in updates and updates["pinned"] != bool(note.get("pinned"))
    if not body_changed and not pin_changed:
        return {"note": note}

    updates["updated_at"] = datetime.now(timezone.utc)
    db = database.get_db()
    await db.estate_notes.update_one({"estate_id": estate_id, "note_id": note_id}, {"$set": updates})
    note.update(updates)

    if pin_changed:
        await log_estate_event(
            owner_id=note["owner_id"],
            estate_id=estate_id,
            type=EstateEventType.NOTE_PINNED if note["pinned"] else EstateEventType.NOTE_UNPINNED,
            summary="Note pinned" if note["pinned"] else "Note unpinned",
            meta={"pinned": note["pinned"], "actor_id": user["user_id"]},
            entity_id=note_id,
        )
    if body_changed:
        await log_estate_event(
            owner_id=note["owner_id"],
            estate_id=estate_id,
            type=EstateEventType.NOTE_UPDATED,
            summary="Note updated",
            meta={"body_preview": note["body"][:BODY_PREVIEW_LENGTH], "actor_id": user["user_id"]},
            entity_id=note_id,
        )
    return {"note": note}


@router.delete("/{note_id}")
async def delete_note(request: Request, estate_id: str, note_id: str):
    user, _ = await estate_edit_guard(request, estate_id)
    note = await _load_note(estate_id, note_id)

    db = database.get_db()
    await db.estate_notes.delete_one({"estate_id": estate_id, "note_id": note_id})

    await log_estate_event(
        owner_id=note["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.NOTE_DELETED,
        summary="Note deleted",
        meta={"was_pinned": bool(note.get("pinned")), "actor_id": user["user_id"]},
        entity_id=note_id,
    )
    return {"success": True}
