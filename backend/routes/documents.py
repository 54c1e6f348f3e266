"""Document Routes - Estate document index (metadata about where documents live).

Sensitive documents are visible to callers with can_view_sensitive only. Everyone else
gets 404 for them, never 403, so their existence is not disclosed.
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime, timezone
from database import database
from models import EstateDocument, EstateEventType
from middleware import estate_route_guard, estate_edit_guard
from services.estate_access import EstateAccess
from services.estate_events import log_estate_event, calculate_diff
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/documents", tags=["documents"])

EDITABLE_FIELDS = ("label", "subject", "location", "url", "tags", "notes", "is_sensitive")


class DocumentCreateRequest(BaseModel):
    label: str
    subject: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    tags: List[str] = []
    notes: Optional[str] = None
    is_sensitive: bool = False


class DocumentUpdateRequest(BaseModel):
    label: Optional[str] = None
    subject: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    is_sensitive: Optional[bool] = None


def _normalize_tags(tags) -> List[str]:
    seen = []
    for tag in tags or []:
        tag = (tag or "").strip().lower()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


async def _load_visible_document(estate_id: str, document_id: str, access: EstateAccess) -> dict:
    db = database.get_db()
    document = await db.estate_documents.find_one(
        {"estate_id": estate_id, "document_id": document_id},
        {"_id": 0}
    )
    if not document or (document.get("is_sensitive") and not access.can_view_sensitive):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return document


@router.get("")
async def list_documents(request: Request, estate_id: str):
    _, access = await estate_route_guard(request, estate_id)
    db = database.get_db()

    query = {"estate_id": estate_id}
    if not access.can_view_sensitive:
        query["is_sensitive"] = {"$ne": True}

    documents = await db.estate_documents.find(query, {"_id": 0}).sort("created_at", -1).to_list(length=500)
    return {"documents": documents, "can_view_sensitive": access.can_view_sensitive}


@router.get("/{document_id}")
async def get_document(request: Request, estate_id: str, document_id: str):
    _, access = await estate_route_guard(request, estate_id)
    return {"document": await _load_visible_document(estate_id, document_id, access)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_document(request: Request, estate_id: str, body: DocumentCreateRequest):
    user, access = await estate_edit_guard(request, estate_id)

    if body.is_sensitive and not access.can_view_sensitive:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")

    label = body.label.strip()
    if not label:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Label is required")

    db = database.get_db()
    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0, "owner_id": 1})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")

    document = EstateDocument(
        estate_id=estate_id,
        owner_id=estate["owner_id"],
        subject=(body.subject or "").strip().upper() or "OTHER",
        label=label,
        location=body.location,
        url=body.url,
        tags=_normalize_tags(body.tags),
        notes=body.notes,
        is_sensitive=body.is_sensitive,
    )
    doc = document.model_dump()
    await db.estate_documents.insert_one(doc)
    doc.pop("_id", None)

    await log_estate_event(
        owner_id=estate["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.DOCUMENT_CREATED,
        summary="Document added",
        detail=f"Added document {label}",
        meta={"subject": document.subject, "is_sensitive": document.is_sensitive, "actor_id": user["user_id"]},
        entity_id=document.document_id,
    )
    return {"document": doc}


@router.patch("/{document_id}")
async def update_document(request: Request, estate_id: str, document_id: str, body: DocumentUpdateRequest):
    user, access = await estate_edit_guard(request, estate_id)
    document = await _load_visible_document(estate_id, document_id, access)

    updates = {k: v for k, v in body.model_dump(exclude_unset=True).items() if k in EDITABLE_FIELDS}
    if updates.get("is_sensitive") and not access.can_view_sensitive:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    if "label" in updates and not (updates["label"] or "").strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Label is required")
    if "tags" in updates:
        updates["tags"] = _normalize_tags(updates["tags"])

    diff = calculate_diff({k: document.get(k) for k in updates}, updates)
    if not diff:
        return {"document": document}

    updates["updated_at"] = datetime.now(timezone.utc)
    db = database.get_db()
    await db.estate_documents.update_one(
        {"estate_id": estate_id, "document_id": document_id},
        {"$set": updates}
    )
    document.update(updates)

    await log_estate_event(
        owner_id=document["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.DOCUMENT_UPDATED,
        summary="Document updated",
        detail=f"Updated document {document.get('label')}",
        meta={"diff": diff, "actor_id": user["user_id"]},
        entity_id=document_id,
    )
    return {"document": document}


@router.delete("/{document_id}")
async def delete_document(request: Request, estate_id: str, document_id: str):
    user, access = await estate_edit_guard(request, estate_id)
    document = await _load_visible_document(estate_id, document_id, access)

    db = database.get_db()
    await db.estate_documents.delete_one({"estate_id": estate_id, "document_id": document_id})

    await log_estate_event(
        owner_id=document["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.DOCUMENT_DELETED,
        summary="Document removed",
        detail=f"Removed document {document.get('label')}",
        meta={"actor_id": user["user_id"]},
        entity_id=document_id,
    )
    return {"success": True}
