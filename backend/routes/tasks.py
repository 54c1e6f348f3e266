"""Task Routes - Estate to-do items.

Endpoints:
- GET /api/estates/{estate_id}/tasks - Any member, newest first, optional status filter
- POST /api/estates/{estate_id}/tasks - Create (EDITOR+)
- GET /api/estates/{estate_id}/tasks/{task_id} - Any member
- PATCH /api/estates/{estate_id}/tasks/{task_id} - Edit (EDITOR+)
- DELETE /api/estates/{estate_id}/tasks/{task_id} - Delete (EDITOR+)
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from database import database
from models import EstateTask, EstateEventType, TaskStatus
from middleware import estate_route_guard, estate_edit_guard
from services.tasks import parse_task_status, apply_completion, task_event_type, TASK_EVENT_SUMMARIES
from services.estate_events import log_estate_event, calculate_diff
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/tasks", tags=["tasks"])

EDITABLE_FIELDS = (
    "title", "description", "status", "due_date", "completed_at",
    "related_document_id", "related_invoice_id",
)


class TaskCreateRequest(BaseModel):
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[datetime] = None
    related_document_id: Optional[str] = None
    related_invoice_id: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    related_document_id: Optional[str] = None
    related_invoice_id: Optional[str] = None


def _required_status(value) -> TaskStatus:
    parsed = parse_task_status(value)
    if not parsed:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status (NOT_STARTED|IN_PROGRESS|DONE)")
    return parsed


def _optional_text(value: Optional[str]) -> Optional[str]:
    return (value or "").strip() or None


async def _load_task(estate_id: str, task_id: str) -> dict:
    db = database.get_db()
    task = await db.estate_tasks.find_one({"estate_id": estate_id, "task_id": task_id}, {"_id": 0})
    if not task:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


@router.get("")
async def list_tasks(request: Request, estate_id: str, status_filter: Optional[str] = None):
    await estate_route_guard(request, estate_id)
    db = database.get_db()

    query = {"estate_id": estate_id}
    if status_filter:
        query["status"] = _required_status(status_filter).value

    tasks = await db.estate_tasks.find(query, {"_id": 0}).sort("created_at", -1).to_list(length=500)
    return {"tasks": tasks}


@router.get("/{task_id}")
async def get_task(request: Request, estate_id: str, task_id: str):
    await estate_route_guard(request, estate_id)
    return {"task": await _load_task(estate_id, task_id)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(request: Request, estate_id: str, body: TaskCreateRequest):
    user, _ = await estate_edit_guard(request, estate_id)

    title = body.title.strip()
    if not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    task_status = _required_status(body.status) if body.status else TaskStatus.NOT_STARTED

    db = database.get_db()
    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0, "owner_id": 1})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")

    task = EstateTask(
        estate_id=estate_id,
        owner_id=estate["owner_id"],
        created_by=user["user_id"],
        title=title,
        description=_optional_text(body.description),
        status=task_status,
        due_date=body.due_date,
        completed_at=datetime.now(timezone.utc) if task_status == TaskStatus.DONE else None,
        related_document_id=_optional_text(body.related_document_id),
        related_invoice_id=_optional_text(body.related_invoice_id),
    )
    doc = task.model_dump()
    doc["status"] = task.status.value
    await db.estate_tasks.insert_one(doc)
    doc.pop("_id", None)

    await log_estate_event(
        owner_id=estate["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.TASK_CREATED,
        summary="Task created",
        detail=f"Task created: {title}",
        meta={"status": task.status.value, "due_date": task.due_date, "actor_id": user["user_id"]},
        entity_id=task.task_id,
    )
    return {"task": doc}


@router.patch("/{task_id}")
async def update_task(request: Request, estate_id: str, task_id: str, body: TaskUpdateRequest):
    user, _ = await estate_edit_guard(request, estate_id)

    updates = {k: v for k, v in body.model_dump(exclude_unset=True).items() if k in EDITABLE_FIELDS}
    if "title" in updates:
        updates["title"] = (updates["title"] or "").strip()
        if not updates["title"]:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    if "status" in updates:
        updates["status"] = _required_status(updates["status"])
    for key in ("description", "related_document_id", "related_invoice_id"):
        if key in updates:
            updates[key] = _optional_text(updates[key])
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields provided")

    task = await _load_task(estate_id, task_id)
    previous = parse_task_status(task.get("status"))
    apply_completion(updates, previous)
    next_status = updates.get("status")
    if next_status is not None:
        updates["status"] = next_status.value

    diff = calculate_diff({k: task.get(k) for k in updates}, updates)
    if not diff:
        return {"task": task}

    updates["updated_at"] = datetime.now(timezone.utc)
    db = database.get_db()
    await db.estate_tasks.update_one({"estate_id": estate_id, "task_id": task_id}, {"$set": updates})
    task.update(updates)

    event_type = task_event_type(previous, next_status)
    await log_estate_event(
        owner_id=task["owner_id"],
        estate_id=estate_id,
        type=event_type,
        summary=TASK_EVENT_SUMMARIES[event_type],
        detail=f"Task {task.get('title')}",
        meta={
            "diff": diff,
            "previous_status": previous.value if previous else None,
            "status": task.get("status"),
            "actor_id": user["user_id"],
        },
        entity_id=task_id,
    )
    return {"task": task}


@router.delete("/{task_id}")
async def delete_task(request: Request, estate_id: str, task_id: str):
    user, _ = await estate_edit_guard(request, estate_id)
    task = await _load_task(estate_id, task_id)

    db = database.get_db()
    await db.estate_tasks.delete_one({"estate_id": estate_id, "task_id": task_id})

    await log_estate_event(
        owner_id=task["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.TASK_DELETED,
        summary="Task deleted",
        detail=f"Task deleted: {task.get('title')}",
        meta={"title": task.get("title"), "status": task.get("status"), "actor_id": user["user_id"]},
        entity_id=task_id,
    )
    return {"success": True}
