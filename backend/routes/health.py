"""Health check - environment, MongoDB and Stripe reachability.

status:
- error: MONGO_URL missing or database unreachable (HTTP 500)
- degraded: Stripe configured but not answering (HTTP 200)
- ok: everything reachable
Each check is bounded so the endpoint answers within a few seconds.
"""
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
import asyncio
import os
import logging
import stripe

from database import database

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

CHECK_TIMEOUT_SECONDS = 1.5


async def check_database() -> bool:
    try:
        return await asyncio.wait_for(database.ping(), timeout=CHECK_TIMEOUT_SECONDS)
    except Exception as e:
        logger.warning(f"Health: database check failed: {e}")
        return False


async def check_stripe() -> bool:
    try:
        await asyncio.wait_for(
            asyncio.to_thread(stripe.Balance.retrieve),
            timeout=CHECK_TIMEOUT_SECONDS,
        )
        return True
    except Exception as e:
        logger.warning(f"Health: stripe check failed: {e}")
        return False


@router.get("/api/health")
async def health_check():
    env_ok = bool((os.getenv("MONGO_URL") or "").strip())
    stripe_configured = bool((os.getenv("STRIPE_SECRET_KEY") or "").strip())

    db_ok = await check_database() if env_ok else False
    stripe_ok = await check_stripe() if stripe_configured else None

    if not env_ok or not db_ok:
        status = "error"
    elif stripe_configured and not stripe_ok:
        status = "degraded"
    else:
        status = "ok"

    body = {
        "status": status,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "checks": {
            "env": env_ok,
            "database": db_ok,
            "stripe": stripe_ok,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(
        status_code=500 if status == "error" else 200,
        content=body,
        headers={"Cache-Control": "no-store"},
    )
