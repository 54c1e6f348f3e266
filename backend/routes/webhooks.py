"""Webhook Routes - Stripe subscription webhooks.

Stripe webhook endpoint with:
- Signature verification
- Idempotency (via webhook_events collection)
- 400 for permanently bad requests, 500 when a redelivery could succeed

POST /api/billing/webhook - Main Stripe webhook endpoint
POST /api/webhook/stripe - Alias (Stripe may be configured with this URL)
"""
from fastapi import APIRouter, Request, Header
from fastapi.responses import JSONResponse
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])

NO_STORE = {"Cache-Control": "no-store, max-age=0"}


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None) -> JSONResponse:
    payload = await request.body()
    try:
        status_code, body = await stripe_webhook_service.process_webhook(
            payload=payload,
            signature=stripe_signature,
        )
    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        status_code, body = 500, {"error": "Webhook handler failed"}

    return JSONResponse(status_code=status_code, content=body, headers=NO_STORE)


@router.post("/api/billing/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/billing/webhook"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
