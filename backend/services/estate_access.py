"""Estate access resolution.

Computes a caller's effective role on an estate from the owner id and the embedded
collaborator list, and derives the permission flags routes act on.

Resolution order:
1. Caller is the estate owner -> OWNER
2. Caller is in collaborators -> stored role (OWNER or unknown values degrade to VIEWER)
3. Otherwise -> no access

Access checks fail closed: a missing identity, a missing estate or an unrecognised
membership all resolve to "no access".
"""
from dataclasses import dataclass, replace
from typing import Optional, Any
from urllib.parse import quote
import logging

from database import database
from models import EstateRole

logger = logging.getLogger(__name__)


ROLE_RANK = {
    EstateRole.OWNER: 3,
    EstateRole.EDITOR: 2,
    EstateRole.VIEWER: 1,
}

# OWNER belongs to estate.owner_id only
ASSIGNABLE_ROLES = frozenset({EstateRole.EDITOR, EstateRole.VIEWER})


@dataclass(frozen=True)
class EstateAccess:
    estate_id: str
    user_id: Optional[str]
    is_authenticated: bool
    has_access: bool
    role: EstateRole
    is_owner: bool
    can_edit: bool
    can_view_sensitive: bool
    meets_role_requirement: bool = True
    required_role: Optional[EstateRole] = None

    def to_dict(self) -> dict:
        return {
            "estate_id": self.estate_id,
            "is_authenticated": self.is_authenticated,
            "has_access": self.has_access,
            "role": self.role.value,
            "is_owner": self.is_owner,
            "can_edit": self.can_edit,
            "can_view_sensitive": self.can_view_sensitive,
            "meets_role_requirement": self.meets_role_requirement,
            "required_role": self.required_role.value if self.required_role else None,
        }


def has_role(actual: EstateRole, at_least: EstateRole) -> bool:
    return ROLE_RANK[actual] >= ROLE_RANK[at_least]


def normalize_role(value: Any) -> EstateRole:
    """Stored role -> EstateRole; anything unrecognised is treated as VIEWER."""
    if isinstance(value, EstateRole):
        return value
    if isinstance(value, str):
        try:
            return EstateRole(value)
        except ValueError:
            pass
    return EstateRole.VIEWER


def is_assignable_role(value: Any) -> bool:
    if isinstance(value, str):
        try:
            return EstateRole(value) in ASSIGNABLE_ROLES
        except ValueError:
            return False
    return False


def is_estate_editor_role(role: EstateRole) -> bool:
    return role in (EstateRole.OWNER, EstateRole.EDITOR)


def to_id_string(value: Any) -> str:
    return "" if value is None else str(value)


def normalize_collaborator_role(value: Any) -> EstateRole:
    """Collaborator entries can only grant EDITOR or VIEWER; a stored OWNER counts as VIEWER."""
    role = normalize_role(value)
    return role if role in ASSIGNABLE_ROLES else EstateRole.VIEWER


def is_estate_owner(estate: dict, user_id: Optional[str]) -> bool:
    if not estate or not user_id:
        return False
    owner_id = to_id_string(estate.get("owner_id"))
    return bool(owner_id) and owner_id == user_id


def resolve_role(estate: dict, user_id: Optional[str]) -> Optional[EstateRole]:
    """Role of user_id on an already-loaded estate document, or None."""
    if not estate or not user_id:
        return None

    if is_estate_owner(estate, user_id):
        return EstateRole.OWNER

    for collab in estate.get("collaborators") or []:
        if to_id_string(collab.get("user_id")) == user_id:
            return normalize_collaborator_role(collab.get("role"))
    return None


def access_from_role(estate_id: str, user_id: str, role: EstateRole, is_owner: bool) -> EstateAccess:
    return EstateAccess(
        estate_id=estate_id,
        user_id=user_id,
        is_authenticated=True,
        has_access=True,
        role=role,
        is_owner=is_owner,
        can_edit=has_role(role, EstateRole.EDITOR),
        # Sensitive items stay owner-only until product says otherwise
        can_view_sensitive=is_owner,
    )


def no_access(estate_id: str, user_id: Optional[str], required_role: Optional[EstateRole] = None) -> EstateAccess:
    return EstateAccess(
        estate_id=estate_id,
        user_id=user_id,
        is_authenticated=bool(user_id),
        has_access=False,
        role=EstateRole.VIEWER,
        is_owner=False,
        can_edit=False,
        can_view_sensitive=False,
        meets_role_requirement=False,
        required_role=required_role,
    )


async def get_estate_access(estate_id: str, user_id: Optional[str]) -> Optional[EstateAccess]:
    """Normalized access for estate_id + user_id, or None when unauthenticated or no access."""
    if not user_id or not estate_id:
        return None

    db = database.get_db()
    estate = await db.estates.find_one(
        {
            "estate_id": estate_id,
            "$or": [
                {"owner_id": user_id},
                {"collaborators.user_id": user_id},
            ],
        },
        {"_id": 0, "owner_id": 1, "collaborators": 1},
    )
    role = resolve_role(estate, user_id)
    if role is None:
        return None
    return access_from_role(estate_id, user_id, role, is_owner=is_estate_owner(estate, user_id))


async def require_estate_access(
    estate_id: str,
    user_id: Optional[str],
    required_role: Optional[EstateRole] = None,
) -> EstateAccess:
    """
    Always returns an EstateAccess so callers can render permission-aware responses.

    When required_role is given and the caller's role ranks below it, can_edit is forced
    False and meets_role_requirement reports the shortfall.
    """
    if not user_id:
        return no_access(estate_id, None, required_role)

    access = await get_estate_access(estate_id, user_id)
    if access is None:
        return no_access(estate_id, user_id, required_role)

    meets = has_role(access.role, required_role) if required_role else True
    return replace(
        access,
        can_edit=access.can_edit and meets,
        meets_role_requirement=meets,
        required_role=required_role,
    )


async def require_estate_edit_access(
    estate_id: str,
    user_id: Optional[str],
    required_role: Optional[EstateRole] = None,
) -> EstateAccess:
    """Like require_estate_access with the requirement defaulting to EDITOR."""
    access = await require_estate_access(estate_id, user_id, required_role or EstateRole.EDITOR)
    if not access.has_access:
        return access

    if not access.can_edit or not access.meets_role_requirement:
        return replace(
            access,
            can_edit=False,
            meets_role_requirement=False,
            required_role=access.required_role or EstateRole.EDITOR,
        )
    return access


def build_request_access_href(estate_id: str, from_path: Optional[str] = None) -> str:
    qs = f"?from={quote(from_path, safe='')}" if from_path else ""
    return f"/app/estates/{estate_id}/request-access{qs}"
