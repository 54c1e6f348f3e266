"""Collaborator Service - Estate membership and invite links.

Collaborators and invites are embedded arrays on the estate document. Each change is a
single conditional update ($push / $pull / filtered $set) whose filter restates the state
the change was decided on. When another request got there first nothing is modified and
the caller gets a 409 to retry.

Rules:
- OWNER is never stored as a collaborator; assignable roles are EDITOR and VIEWER.
- New collaborators (added directly or through an invite) count against the owner's
  collaborators_per_estate limit.
- Invites need the collaborator_invites feature, expire after 7 days and are capped at
  50 pending per estate. Re-inviting a pending email rotates its token.
"""
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple

from database import database
from models import InviteStatus, EstateEventType, PlanId
from auth import normalize_email
from services.estate_access import is_assignable_role, to_id_string
from services.entitlements import get_entitlements, require_feature, EntitlementError
from services.estate_events import log_estate_event

logger = logging.getLogger(__name__)

INVITE_TTL = timedelta(days=7)
MAX_PENDING_INVITES_PER_ESTATE = 50

CONCURRENT_CHANGE = "Estate was changed by another request. Reload and try again."


class CollaboratorError(Exception):
    """Request-level failure with the HTTP status the route should answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Motor hands back naive UTC datetimes
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_invite_expired(invite: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    if invite.get("status") != InviteStatus.PENDING.value:
        return False
    expires_at = _aware(invite.get("expires_at"))
    if not expires_at:
        return False
    return expires_at <= (now or _now())


def make_invite_token() -> str:
    return secrets.token_hex(24)


async def _load_estate(estate_id: str) -> Dict[str, Any]:
    db = database.get_db()
    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0})
    if not estate:
        raise CollaboratorError("Estate not found", 404)
    return estate


async def _apply(query: Dict[str, Any], update: Dict[str, Any], array_filters: Optional[List[Dict[str, Any]]] = None) -> bool:
    """Conditional estate update. False when the filter no longer matches."""
    db = database.get_db()
    if array_filters:
        result = await db.estates.update_one(query, update, array_filters=array_filters)
    else:
        result = await db.estates.update_one(query, update)
    return result.modified_count > 0


async def _apply_or_conflict(query: Dict[str, Any], update: Dict[str, Any], array_filters: Optional[List[Dict[str, Any]]] = None):
    if not await _apply(query, update, array_filters):
        logger.info(f"Estate {query.get('estate_id')} changed underneath a collaborator update")
        raise CollaboratorError(CONCURRENT_CHANGE, 409)


def _find_collaborator(collaborators: List[Dict[str, Any]], user_id: str) -> Optional[Dict[str, Any]]:
    for collab in collaborators:
        if to_id_string(collab.get("user_id")) == user_id:
            return collab
    return None


async def _enforce_collaborator_limit(estate: Dict[str, Any]) -> int:
    """Raise when the owner's plan has no room for another collaborator; return the limit."""
    db = database.get_db()
    owner = await db.users.find_one({"user_id": estate["owner_id"]}, {"_id": 0})
    limit = get_entitlements(owner).limits["collaborators_per_estate"]
    if len(estate.get("collaborators") or []) >= limit:
        raise EntitlementError("Collaborator limit reached for your plan", PlanId.PRO)
    return limit


def _new_member_guard(user_id: str, limit: int) -> Dict[str, Any]:
    # Array index limit-1 existing means the estate already holds `limit` collaborators
    return {
        "collaborators.user_id": {"$ne": user_id},
        f"collaborators.{limit - 1}": {"$exists": False},
    }


def _set_role_update(user_id: str, role: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    update = {"$set": {"collaborators.$[member].role": role, "updated_at": _now()}}
    return update, [{"member.user_id": user_id}]


def _member_with_role(user_id: str, role: Any) -> Dict[str, Any]:
    return {"collaborators": {"$elemMatch": {"user_id": user_id, "role": role}}}


# =============================================================================
# Collaborators
# =============================================================================

async def list_collaborators(estate_id: str) -> Dict[str, Any]:
    estate = await _load_estate(estate_id)
    return {
        "estate_id": estate_id,
        "owner_id": to_id_string(estate.get("owner_id")),
        "collaborators": estate.get("collaborators") or [],
    }


async def _set_collaborator_role(estate_id: str, owner_id: str, collab: Dict[str, Any], role: str):
    user_id = to_id_string(collab.get("user_id"))
    previous_role = collab.get("role")
    update, array_filters = _set_role_update(user_id, role)
    await _apply_or_conflict(
        {"estate_id": estate_id, **_member_with_role(user_id, previous_role)},
        update,
        array_filters,
    )
    collab["role"] = role
    await log_estate_event(
        owner_id=owner_id,
        estate_id=estate_id,
        type=EstateEventType.COLLABORATOR_ROLE_CHANGED,
        summary="Collaborator role changed",
        detail=f"Changed collaborator {user_id} from {previous_role} to {role}",
        meta={"user_id": user_id, "previous_role": previous_role, "role": role},
    )


async def add_collaborator(estate_id: str, user_id: str, role: str) -> List[Dict[str, Any]]:
    """Add user_id, or change the role of an existing collaborator. Same role is a no-op."""
    if not user_id or not is_assignable_role(role):
        raise CollaboratorError("Missing/invalid user_id or role (EDITOR|VIEWER)")

    estate = await _load_estate(estate_id)
    owner_id = to_id_string(estate.get("owner_id"))
    if user_id == owner_id:
        raise CollaboratorError("Owner already has access")

    collaborators = estate.get("collaborators") or []
    existing = _find_collaborator(collaborators, user_id)

    if existing:
        if existing.get("role") == role:
            return collaborators
        await _set_collaborator_role(estate_id, owner_id, existing, role)
        return collaborators

    limit = await _enforce_collaborator_limit(estate)

    db = database.get_db()
    if not await db.users.find_one({"user_id": user_id}, {"_id": 0, "user_id": 1}):
        raise CollaboratorError("User not found", 404)

    entry = {"user_id": user_id, "role": role, "added_at": _now()}
    await _apply_or_conflict(
        {"estate_id": estate_id, **_new_member_guard(user_id, limit)},
        {"$push": {"collaborators": entry}, "$set": {"updated_at": _now()}},
    )
    collaborators.append(entry)
    await log_estate_event(
        owner_id=owner_id,
        estate_id=estate_id,
        type=EstateEventType.COLLABORATOR_ADDED,
        summary="Collaborator added",
        detail=f"Added collaborator {user_id} as {role}",
        meta={"user_id": user_id, "role": role},
    )
    return collaborators


async def change_collaborator_role(estate_id: str, user_id: str, role: str) -> List[Dict[str, Any]]:
    if not user_id or not is_assignable_role(role):
        raise CollaboratorError("Missing/invalid user_id or role (EDITOR|VIEWER)")

    estate = await _load_estate(estate_id)
    owner_id = to_id_string(estate.get("owner_id"))
    if user_id == owner_id:
        raise CollaboratorError("Cannot change the owner's role")

    collaborators = estate.get("collaborators") or []
    collab = _find_collaborator(collaborators, user_id)
    if not collab:
        raise CollaboratorError("Collaborator not found", 404)

    if collab.get("role") == role:
        return collaborators

    await _set_collaborator_role(estate_id, owner_id, collab, role)
    return collaborators


async def remove_collaborator(estate_id: str, user_id: str, actor_id: str) -> List[Dict[str, Any]]:
    if not user_id:
        raise CollaboratorError("Missing/invalid user_id")
    if user_id == actor_id:
        raise CollaboratorError("Cannot remove yourself")

    estate = await _load_estate(estate_id)
    owner_id = to_id_string(estate.get("owner_id"))
    if user_id == owner_id:
        raise CollaboratorError("Cannot remove the owner")

    collaborators = estate.get("collaborators") or []
    removed = _find_collaborator(collaborators, user_id)
    if not removed:
        raise CollaboratorError("Collaborator not found", 404)

    pulled = await _apply(
        {"estate_id": estate_id, "collaborators.user_id": user_id},
        {"$pull": {"collaborators": {"user_id": user_id}}, "$set": {"updated_at": _now()}},
    )
    if not pulled:
        # Someone else removed them first
        raise CollaboratorError("Collaborator not found", 404)

    remaining = [c for c in collaborators if to_id_string(c.get("user_id")) != user_id]
    await log_estate_event(
        owner_id=owner_id,
        estate_id=estate_id,
        type=EstateEventType.COLLABORATOR_REMOVED,
        summary="Collaborator removed",
        detail=f"Removed collaborator {user_id}",
        meta={"user_id": user_id, "previous_role": removed.get("role")},
    )
    return remaining


# =============================================================================
# Invites
# =============================================================================

def _invite_view(invite: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    status = InviteStatus.EXPIRED.value if is_invite_expired(invite, now) else invite.get("status")
    return {
        "token": invite.get("token"),
        "email": invite.get("email"),
        "role": invite.get("role"),
        "status": status,
        "created_by": invite.get("created_by"),
        "created_at": invite.get("created_at"),
        "expires_at": invite.get("expires_at"),
        "accepted_by": invite.get("accepted_by"),
        "accepted_at": invite.get("accepted_at"),
        "revoked_at": invite.get("revoked_at"),
    }


def _pending_invite(token: str) -> Dict[str, Any]:
    return {"invites": {"$elemMatch": {"token": token, "status": InviteStatus.PENDING.value}}}


async def _mark_expired(estate_id: str, now: datetime, token: Optional[str] = None):
    """Flip lapsed PENDING invites (or just `token`) to EXPIRED; idempotent."""
    lapsed = {"lapsed.status": InviteStatus.PENDING.value, "lapsed.expires_at": {"$lte": now}}
    if token:
        lapsed["lapsed.token"] = token
    await _apply(
        {"estate_id": estate_id},
        {"$set": {"invites.$[lapsed].status": InviteStatus.EXPIRED.value, "updated_at": now}},
        [lapsed],
    )


def _pending_cap_guard(email: str, now: datetime) -> Dict[str, Any]:
    live_pending = {
        "$filter": {
            "input": {"$ifNull": ["$invites", []]},
            "as": "inv",
            "cond": {"$and": [
                {"$eq": ["$$inv.status", InviteStatus.PENDING.value]},
                {"$gt": ["$$inv.expires_at", now]},
            ]},
        }
    }
    return {
        "invites": {"$not": {"$elemMatch": {
            "email": email,
            "status": InviteStatus.PENDING.value,
            "expires_at": {"$gt": now},
        }}},
        "$expr": {"$lt": [{"$size": live_pending}, MAX_PENDING_INVITES_PER_ESTATE]},
    }


async def list_invites(estate_id: str) -> List[Dict[str, Any]]:
    """Invites newest first; lapsed pending invites are persisted as EXPIRED."""
    estate = await _load_estate(estate_id)
    invites = estate.get("invites") or []
    now = _now()

    if any(is_invite_expired(invite, now) for invite in invites):
        await _mark_expired(estate_id, now)

    views = [_invite_view(inv, now) for inv in invites]
    views.sort(key=lambda v: _aware(v["created_at"]) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    return views


async def create_invite(
    estate_id: str,
    actor: Dict[str, Any],
    email: Any,
    role: Any,
    invite_base_url: str,
) -> Tuple[Dict[str, Any], bool]:
    """
    Create an invite link, or rotate the token of a pending one for the same email.

    actor is the owner's user document. Returns (invite payload, created).
    """
    normalized = normalize_email(email)
    if not normalized or not is_assignable_role(role):
        raise CollaboratorError("Missing/invalid email or role (EDITOR|VIEWER)")

    if normalized == (actor.get("email") or "").lower():
        raise CollaboratorError("You cannot invite yourself.")

    require_feature(actor, "collaborator_invites")

    estate = await _load_estate(estate_id)
    invites = estate.get("invites") or []
    now = _now()

    pending = [i for i in invites if i.get("status") == InviteStatus.PENDING.value and not is_invite_expired(i, now)]
    existing = next((i for i in pending if i.get("email") == normalized), None)
    if not existing and len(pending) >= MAX_PENDING_INVITES_PER_ESTATE:
        raise CollaboratorError(
            "Invite limit reached. Revoke or wait for existing invites to expire.", 429
        )

    existing_tokens = {i.get("token") for i in invites}
    token = make_invite_token()
    for _ in range(3):
        if token not in existing_tokens:
            break
        token = make_invite_token()

    invite_url = f"{invite_base_url.rstrip('/')}/app/estates/{estate_id}/invites/{token}"
    previous_role = None

    if existing:
        previous_role = existing.get("role")
        expires_at = existing.get("expires_at") or now + INVITE_TTL
        await _apply_or_conflict(
            {"estate_id": estate_id, **_pending_invite(existing["token"])},
            {"$set": {
                "invites.$[inv].token": token,
                "invites.$[inv].role": role,
                "invites.$[inv].created_by": actor["user_id"],
                "invites.$[inv].created_at": now,
                "invites.$[inv].expires_at": expires_at,
                "updated_at": now,
            }},
            [{"inv.token": existing["token"]}],
        )
        invite = {**existing, "token": token, "role": role, "created_at": now, "expires_at": expires_at}
    else:
        invite = {
            "token": token,
            "email": normalized,
            "role": role,
            "status": InviteStatus.PENDING.value,
            "created_by": actor["user_id"],
            "created_at": now,
            "expires_at": now + INVITE_TTL,
        }
        await _apply_or_conflict(
            {"estate_id": estate_id, **_pending_cap_guard(normalized, now)},
            {"$push": {"invites": invite}, "$set": {"updated_at": now}},
        )

    await log_estate_event(
        owner_id=to_id_string(estate.get("owner_id")),
        estate_id=estate_id,
        type=EstateEventType.COLLABORATOR_INVITE_SENT,
        summary="Collaborator invite link created",
        detail=f"Invite link created for {normalized} ({role})",
        meta={
            "email": normalized,
            "role": role,
            "expires_at": invite["expires_at"],
            "reused": existing is not None,
            "previous_role": previous_role,
            "actor_id": actor["user_id"],
        },
    )

    payload = {
        "invite_url": invite_url,
        "token": token,
        "email": normalized,
        "role": role,
        "status": invite["status"],
        "expires_at": invite["expires_at"],
    }
    if existing:
        payload["previous_role"] = previous_role
    return payload, existing is None


async def revoke_invite(estate_id: str, actor_id: str, token: Optional[str] = None, email: Any = None) -> Dict[str, Any]:
    """Revoke by token (or email). Unknown targets and repeat revokes succeed quietly."""
    token = (token or "").strip() if isinstance(token, str) else ""
    normalized = normalize_email(email) if email else None
    if not token and not normalized:
        raise CollaboratorError("Provide token or email")

    estate = await _load_estate(estate_id)
    invites = estate.get("invites") or []

    target = None
    for invite in invites:
        if token and invite.get("token") == token:
            target = invite
            break
        if not token and normalized and invite.get("email") == normalized:
            target = invite
            break

    if not target:
        return {"status": "NOT_FOUND"}

    if target.get("status") == InviteStatus.REVOKED.value:
        return {"token": target["token"], "email": target["email"], "status": target["status"], "revoked_at": target.get("revoked_at")}

    now = _now()
    if is_invite_expired(target, now):
        await _mark_expired(estate_id, now, target["token"])
        return {"token": target["token"], "email": target["email"], "status": InviteStatus.EXPIRED.value, "expires_at": target.get("expires_at")}

    if target.get("status") != InviteStatus.PENDING.value:
        raise CollaboratorError(f"Invite is {str(target.get('status')).lower()}")

    await _apply_or_conflict(
        {"estate_id": estate_id, **_pending_invite(target["token"])},
        {"$set": {
            "invites.$[inv].status": InviteStatus.REVOKED.value,
            "invites.$[inv].revoked_at": now,
            "updated_at": now,
        }},
        [{"inv.token": target["token"]}],
    )
    await log_estate_event(
        owner_id=to_id_string(estate.get("owner_id")),
        estate_id=estate_id,
        type=EstateEventType.COLLABORATOR_INVITE_REVOKED,
        summary="Collaborator invite revoked",
        detail=f"Invite revoked for {target['email']} ({target['role']})",
        meta={"email": target["email"], "role": target["role"], "actor_id": actor_id},
    )
    return {"token": target["token"], "email": target["email"], "status": InviteStatus.REVOKED.value, "revoked_at": now}


async def accept_invite(estate_id: str, token: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """Join estate_id through an invite link; the caller's email must match the invite."""
    db = database.get_db()
    estate = await db.estates.find_one(
        {"estate_id": estate_id, "invites.token": token},
        {"_id": 0}
    )
    if not estate:
        raise CollaboratorError("Invite not found", 404)

    invites = estate.get("invites") or []
    invite = next((i for i in invites if i.get("token") == token), None)
    if not invite:
        raise CollaboratorError("Invite not found", 404)

    if invite.get("status") != InviteStatus.PENDING.value:
        raise CollaboratorError(f"Invite is {str(invite.get('status')).lower()}")

    now = _now()
    if is_invite_expired(invite, now):
        await _mark_expired(estate_id, now, token)
        raise CollaboratorError("Invite expired")

    user_email = (user.get("email") or "").lower()
    invite_email = (invite.get("email") or "").lower()
    if not invite_email or invite_email != user_email:
        raise CollaboratorError("Invite email does not match your account", 403)

    owner_id = to_id_string(estate.get("owner_id"))
    user_id = user["user_id"]
    if user_id == owner_id:
        raise CollaboratorError("Owner already has access")

    role = invite.get("role")
    existing = _find_collaborator(estate.get("collaborators") or [], user_id)

    query = {"estate_id": estate_id, **_pending_invite(token)}
    update: Dict[str, Any] = {"$set": {
        "invites.$[inv].status": InviteStatus.ACCEPTED.value,
        "invites.$[inv].accepted_by": user_id,
        "invites.$[inv].accepted_at": now,
        "updated_at": now,
    }}
    array_filters = [{"inv.token": token}]
    previous_role = existing.get("role") if existing else None

    if existing:
        if previous_role != role:
            query.update(_member_with_role(user_id, previous_role))
            update["$set"]["collaborators.$[member].role"] = role
            array_filters.append({"member.user_id": user_id})
        else:
            query["collaborators.user_id"] = user_id
    else:
        limit = await _enforce_collaborator_limit(estate)
        query.update(_new_member_guard(user_id, limit))
        update["$push"] = {"collaborators": {"user_id": user_id, "role": role, "added_at": now}}

    await _apply_or_conflict(query, update, array_filters)

    if existing and previous_role != role:
        await log_estate_event(
            owner_id=owner_id,
            estate_id=estate_id,
            type=EstateEventType.COLLABORATOR_ROLE_CHANGED,
            summary="Collaborator role updated",
            detail=f"Updated {user_email} from {previous_role} to {role}",
            meta={"user_id": user_id, "previous_role": previous_role, "role": role},
        )
    await log_estate_event(
        owner_id=owner_id,
        estate_id=estate_id,
        type=EstateEventType.COLLABORATOR_INVITE_ACCEPTED,
        summary="Invite accepted",
        detail=f"{user_email} accepted an invite as {role}",
        meta={"user_id": user_id, "email": invite_email, "role": role},
    )
    return {"estate_id": estate_id, "role": role}
