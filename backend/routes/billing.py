"""Billing Routes - Subscription status, checkout and Stripe billing portal.

Endpoints:
- GET /api/billing/status - Entitlements and upgrade reason
- GET /api/billing/plans - Static plan table
- POST /api/billing/checkout - Create checkout session for Pro
- POST /api/billing/portal - Create Stripe billing portal session (rate limited)
"""
from fastapi import APIRouter, HTTPException, Request, Response, status
from database import database
from middleware import require_auth
from services.entitlements import get_entitlements, get_upgrade_reason, get_plan_table
from services.stripe_service import (
    stripe_service, UpstreamProviderError, BillingNotConfiguredError, InvalidCustomerIdError,
)
from utils.public_app_url import is_production
from utils.rate_limiter import rate_limiter, get_client_key
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])

PORTAL_RATE_LIMIT = 30

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, max-age=0",
    "Pragma": "no-cache",
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "same-origin",
    "X-Frame-Options": "DENY",
}


async def _load_user(request: Request) -> dict:
    token_user = await require_auth(request)
    db = database.get_db()
    user = await db.users.find_one({"user_id": token_user["user_id"]}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def _check_portal_limit(key: str, headers: dict):
    allowed, retry_after = await rate_limiter.check_rate_limit(key, PORTAL_RATE_LIMIT, 60)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again shortly.",
            headers={**headers, "Retry-After": str(retry_after)},
        )


@router.get("/status")
async def get_billing_status(request: Request, response: Response):
    """Get current subscription and entitlement status."""
    user = await _load_user(request)
    response.headers.update(NO_STORE_HEADERS)

    return {
        "entitlements": get_entitlements(user).to_dict(),
        "upgrade_reason": get_upgrade_reason(user),
        "has_customer": bool(user.get("stripe_customer_id")),
        "has_subscription": bool(user.get("stripe_subscription_id")),
    }


@router.get("/plans")
async def get_available_plans():
    """Get all available subscription plans."""
    return {"plans": get_plan_table()}


@router.post("/checkout")
async def create_checkout(request: Request):
    """Create Stripe checkout session for the Pro subscription."""
    user = await _load_user(request)

    if get_entitlements(user).can_use_pro:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Subscription already active. Use the billing portal to manage it."
        )

    try:
        return await stripe_service.create_checkout_session(user)
    except UpstreamProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except BillingNotConfiguredError as e:
        logger.error(f"Checkout not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Billing is not configured." if is_production() else str(e)
        )


@router.post("/portal")
async def create_billing_portal(request: Request, response: Response):
    """
    Create Stripe billing portal session for subscription management.

    Rate limits apply per client and per user+client before any Stripe call.
    """
    headers = {**NO_STORE_HEADERS, **SECURITY_HEADERS}
    client_key = get_client_key(request, "portal")
    await _check_portal_limit(client_key, headers)

    token_user = await require_auth(request)
    await _check_portal_limit(f"portal:user:{token_user['user_id']}:{client_key}", headers)

    user = await _load_user(request)

    try:
        result = await stripe_service.create_portal_session(user)
    except InvalidCustomerIdError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e), headers=headers)
    except UpstreamProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e), headers=headers)
    except BillingNotConfiguredError as e:
        logger.error(f"Billing portal not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Billing is not configured." if is_production() else str(e),
            headers=headers,
        )

    response.headers.update(headers)
    return result
