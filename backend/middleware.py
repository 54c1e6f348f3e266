from fastapi import Request, HTTPException, status
from typing import Optional, Tuple
import logging
from auth import decode_access_token
from models import EstateRole
from services.estate_access import EstateAccess, require_estate_access, require_estate_edit_access

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("user_id"):
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

def _deny_without_access(access: EstateAccess, estate_id: str, path: str):
    if not access.has_access:
        # Same answer as a missing estate; membership is not disclosed
        logger.info(f"ESTATE_GUARD_DENIED estate_id={estate_id} path={path} reason=NO_ACCESS")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Estate not found"
        )

async def estate_route_guard(
    request: Request,
    estate_id: str,
    required_role: Optional[EstateRole] = None,
) -> Tuple[dict, EstateAccess]:
    """Guard for estate read routes - auth, membership, optional minimum role."""
    user = await require_auth(request)
    access = await require_estate_access(estate_id, user["user_id"], required_role)
    _deny_without_access(access, estate_id, str(request.url.path))

    if required_role and not access.meets_role_requirement:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user, access

async def estate_edit_guard(
    request: Request,
    estate_id: str,
    required_role: Optional[EstateRole] = None,
) -> Tuple[dict, EstateAccess]:
    """Guard for estate mutations - EDITOR unless a stricter role is given."""
    user = await require_auth(request)
    access = await require_estate_edit_access(estate_id, user["user_id"], required_role)
    _deny_without_access(access, estate_id, str(request.url.path))

    if not access.can_edit:
        logger.info(
            f"ESTATE_GUARD_DENIED estate_id={estate_id} path={request.url.path} "
            f"reason=ROLE role={access.role.value} required={access.required_role.value}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user, access

async def estate_owner_guard(request: Request, estate_id: str) -> Tuple[dict, EstateAccess]:
    """Guard for owner-only estate routes."""
    return await estate_edit_guard(request, estate_id, EstateRole.OWNER)
