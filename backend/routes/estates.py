"""Estate Routes - CRUD for probate cases.

Endpoints:
- GET /api/estates - Estates the caller owns or collaborates on
- POST /api/estates - Create (plan-limited)
- GET /api/estates/{estate_id} - Estate with the caller's access flags
- PATCH /api/estates/{estate_id} - Edit (EDITOR+)
- DELETE /api/estates/{estate_id} - Delete (OWNER)
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from database import database
from models import Estate, EstateStatus, EstateEventType, PlanId
from middleware import require_auth, estate_route_guard, estate_edit_guard, estate_owner_guard
from services.estate_access import resolve_role, build_request_access_href
from services.entitlements import can_create_another_estate, EntitlementError
from services.estate_events import log_estate_event, calculate_diff
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates", tags=["estates"])

EDITABLE_FIELDS = (
    "label", "decedent_name", "date_of_death",
    "court_county", "court_state", "court_case_number", "status",
)


class EstateCreateRequest(BaseModel):
    label: str
    decedent_name: str
    date_of_death: Optional[str] = None
    court_county: Optional[str] = None
    court_state: Optional[str] = None
    court_case_number: Optional[str] = None


class EstateUpdateRequest(BaseModel):
    label: Optional[str] = None
    decedent_name: Optional[str] = None
    date_of_death: Optional[str] = None
    court_county: Optional[str] = None
    court_state: Optional[str] = None
    court_case_number: Optional[str] = None
    status: Optional[EstateStatus] = None


def _estate_summary(estate: dict, user_id: str) -> dict:
    role = resolve_role(estate, user_id)
    return {
        "estate_id": estate["estate_id"],
        "label": estate.get("label"),
        "decedent_name": estate.get("decedent_name"),
        "status": estate.get("status"),
        "court_case_number": estate.get("court_case_number"),
        "role": role.value if role else None,
        "updated_at": estate.get("updated_at"),
    }


@router.get("")
async def list_estates(request: Request):
    user = await require_auth(request)
    db = database.get_db()

    estates = await db.estates.find(
        {"$or": [{"owner_id": user["user_id"]}, {"collaborators.user_id": user["user_id"]}]},
        {"_id": 0, "invites": 0}
    ).sort("updated_at", -1).to_list(length=500)

    return {"estates": [_estate_summary(e, user["user_id"]) for e in estates]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_estate(request: Request, body: EstateCreateRequest):
    user = await require_auth(request)
    db = database.get_db()

    label = body.label.strip()
    decedent_name = body.decedent_name.strip()
    if not label or not decedent_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="label and decedent_name are required")

    owner = await db.users.find_one({"user_id": user["user_id"]}, {"_id": 0})
    owned_count = await db.estates.count_documents({"owner_id": user["user_id"]})
    if not can_create_another_estate(owner, owned_count):
        raise EntitlementError("Upgrade to Pro to create more estates", PlanId.PRO)

    estate = Estate(
        owner_id=user["user_id"],
        label=label,
        decedent_name=decedent_name,
        date_of_death=body.date_of_death,
        court_county=body.court_county,
        court_state=body.court_state,
        court_case_number=body.court_case_number,
    )
    doc = estate.model_dump()
    doc["status"] = estate.status.value
    await db.estates.insert_one(doc)
    doc.pop("_id", None)

    await log_estate_event(
        owner_id=user["user_id"],
        estate_id=estate.estate_id,
        type=EstateEventType.ESTATE_CREATED,
        summary="Estate created",
        detail=f"Created estate {label}",
        entity_id=estate.estate_id,
    )

    logger.info(f"Estate created: {estate.estate_id} by {user['user_id']}")
    return {"estate": doc}


@router.get("/{estate_id}")
async def get_estate(request: Request, estate_id: str):
    _, access = await estate_route_guard(request, estate_id)
    db = database.get_db()

    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")
    if not access.is_owner:
        # Invite tokens are owner-only
        estate.pop("invites", None)

    return {
        "estate": estate,
        "access": access.to_dict(),
        "request_access_href": None if access.can_edit else build_request_access_href(estate_id, f"/app/estates/{estate_id}"),
    }


@router.patch("/{estate_id}")
async def update_estate(request: Request, estate_id: str, body: EstateUpdateRequest):
    user, _ = await estate_edit_guard(request, estate_id)
    db = database.get_db()

    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")

    updates = body.model_dump(exclude_unset=True)
    updates = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS}
    if "status" in updates:
        if updates["status"] is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="status cannot be null")
        updates["status"] = EstateStatus(updates["status"]).value
    for required in ("label", "decedent_name"):
        if required in updates and not (updates[required] or "").strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{required} cannot be empty")

    before = {k: estate.get(k) for k in updates}
    diff = calculate_diff(before, updates)
    if not diff:
        return {"estate": estate}

    updates["updated_at"] = datetime.now(timezone.utc)
    await db.estates.update_one({"estate_id": estate_id}, {"$set": updates})
    estate.update(updates)

    await log_estate_event(
        owner_id=estate["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.ESTATE_UPDATED,
        summary="Estate details updated",
        meta={"diff": diff, "actor_id": user["user_id"]},
        entity_id=estate_id,
    )
    return {"estate": estate}


@router.delete("/{estate_id}")
async def delete_estate(request: Request, estate_id: str):
    user, _ = await estate_owner_guard(request, estate_id)
    db = database.get_db()

    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0, "label": 1, "owner_id": 1})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")

    await db.estates.delete_one({"estate_id": estate_id})

    await log_estate_event(
        owner_id=user["user_id"],
        estate_id=estate_id,
        type=EstateEventType.ESTATE_DELETED,
        summary="Estate deleted",
        detail=f"Deleted estate {estate.get('label')}",
        entity_id=estate_id,
    )
    logger.info(f"Estate deleted: {estate_id} by {user['user_id']}")
    return {"success": True}
