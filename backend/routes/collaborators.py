"""Collaborator Routes - Estate membership management.

Endpoints:
- GET /api/estates/{estate_id}/collaborators - Any member
- POST /api/estates/{estate_id}/collaborators - Add or re-role (OWNER)
- PATCH /api/estates/{estate_id}/collaborators/{user_id} - Change role (OWNER)
- DELETE /api/estates/{estate_id}/collaborators/{user_id} - Remove (OWNER)
"""
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel
from middleware import estate_route_guard, estate_owner_guard
from services.collaborators import (
    CollaboratorError, list_collaborators, add_collaborator,
    change_collaborator_role, remove_collaborator,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/collaborators", tags=["collaborators"])


class AddCollaboratorRequest(BaseModel):
    user_id: str
    role: str


class ChangeRoleRequest(BaseModel):
    role: str


def _raise(e: CollaboratorError):
    raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("")
async def get_collaborators(request: Request, estate_id: str):
    await estate_route_guard(request, estate_id)
    try:
        return await list_collaborators(estate_id)
    except CollaboratorError as e:
        _raise(e)


@router.post("")
async def post_collaborator(request: Request, estate_id: str, body: AddCollaboratorRequest):
    await estate_owner_guard(request, estate_id)
    try:
        collaborators = await add_collaborator(estate_id, body.user_id.strip(), body.role)
    except CollaboratorError as e:
        _raise(e)
    return {"collaborators": collaborators}


@router.patch("/{user_id}")
async def patch_collaborator(request: Request, estate_id: str, user_id: str, body: ChangeRoleRequest):
    await estate_owner_guard(request, estate_id)
    try:
        collaborators = await change_collaborator_role(estate_id, user_id, body.role)
    except CollaboratorError as e:
        _raise(e)
    return {"collaborators": collaborators}


@router.delete("/{user_id}")
async def delete_collaborator(request: Request, estate_id: str, user_id: str):
    user, _ = await estate_owner_guard(request, estate_id)
    try:
        collaborators = await remove_collaborator(estate_id, user_id, user["user_id"])
    except CollaboratorError as e:
        _raise(e)
    return {"collaborators": collaborators}
