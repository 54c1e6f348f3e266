"""Invite Routes - Shareable collaborator invite links.

Endpoints:
- GET /api/estates/{estate_id}/invites - List, newest first (OWNER)
- POST /api/estates/{estate_id}/invites - Create or rotate (OWNER, Pro)
- DELETE /api/estates/{estate_id}/invites/{token} - Revoke (OWNER)
- POST /api/estates/{estate_id}/invites/{token}/accept - Join as the invited email

Write endpoints share a best-effort limit of 40 requests/minute per client.
"""
from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel
from database import database
from middleware import require_auth, estate_owner_guard
from services.collaborators import CollaboratorError, list_invites, create_invite, revoke_invite, accept_invite
from utils.rate_limiter import rate_limiter, get_client_key
from utils.public_app_url import get_public_app_url
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/invites", tags=["invites"])

INVITE_WRITE_LIMIT = 40
NO_STORE = {"Cache-Control": "no-store, max-age=0", "Pragma": "no-cache"}


class CreateInviteRequest(BaseModel):
    email: str
    role: str


def _raise(e: CollaboratorError):
    raise HTTPException(status_code=e.status_code, detail=e.message, headers=NO_STORE)


async def _limit_writes(request: Request):
    allowed, retry_after = await rate_limiter.check_rate_limit(
        get_client_key(request, "estate-invites"), INVITE_WRITE_LIMIT, 60
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again shortly.",
            headers={"Retry-After": str(retry_after), **NO_STORE},
        )


@router.get("")
async def get_invites(request: Request, response: Response, estate_id: str):
    await estate_owner_guard(request, estate_id)
    response.headers.update(NO_STORE)
    try:
        return {"invites": await list_invites(estate_id)}
    except CollaboratorError as e:
        _raise(e)


@router.post("")
async def post_invite(request: Request, response: Response, estate_id: str, body: CreateInviteRequest):
    await _limit_writes(request)
    user, _ = await estate_owner_guard(request, estate_id)

    db = database.get_db()
    actor = await db.users.find_one({"user_id": user["user_id"]}, {"_id": 0})
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    try:
        payload, created = await create_invite(estate_id, actor, body.email, body.role, get_public_app_url())
    except CollaboratorError as e:
        _raise(e)

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    response.headers.update(NO_STORE)
    return payload


@router.delete("/{token}")
async def delete_invite(request: Request, response: Response, estate_id: str, token: str):
    await _limit_writes(request)
    user, _ = await estate_owner_guard(request, estate_id)
    try:
        result = await revoke_invite(estate_id, user["user_id"], token=token)
    except CollaboratorError as e:
        _raise(e)
    response.headers.update(NO_STORE)
    return result


@router.post("/{token}/accept")
async def post_accept_invite(request: Request, estate_id: str, token: str):
    token_user = await require_auth(request)
    db = database.get_db()
    user = await db.users.find_one({"user_id": token_user["user_id"]}, {"_id": 0})
    if not user or not user.get("email"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        return await accept_invite(estate_id, token, user)
    except CollaboratorError as e:
        _raise(e)
