"""Stripe Webhook Service - Signature-verified subscription sync with idempotency.

Key Principles:
1. Idempotency: each event id is claimed once in webhook_events (unique index). A
   duplicate delivery is acknowledged without side effects.
2. Signature verification: every event must be signed with STRIPE_WEBHOOK_SECRET.
3. Plan derivation: plan comes from the subscription price id only.
4. Retry semantics: permanently bad requests get 400, anything worth redelivering gets
   500 and releases the claim so Stripe's retry can run it again.
   A Stripe 4xx (other than 429) while re-reading a subscription is permanent: the
   event is acknowledged and the claim kept.

Events Handled:
- checkout.session.completed (backfills stripe_customer_id)
- customer.subscription.created
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_failed (re-reads the subscription from Stripe)
"""
import json
import os
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from models import PlanId, SubscriptionStatus, WebhookEvent
from services.stripe_service import get_plan_id_from_price_id, stripe_service

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_failed",
})


class ClaimOutcome(str, Enum):
    NEW = "NEW"
    DUPLICATE = "DUPLICATE"


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _id_of(value: Any) -> Optional[str]:
    """Stripe expandable field -> id string."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None) if value is not None else None


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def normalize_subscription_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Stripe subscription status -> stored status; anything unexpected counts as canceled."""
    if stripe_status in ("active", "trialing", "past_due", "canceled"):
        return SubscriptionStatus(stripe_status)
    return SubscriptionStatus.CANCELED


def _first_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else _id_of(price)


def _is_permanent_stripe_error(error: stripe.StripeError) -> bool:
    """4xx other than 429 will not change on redelivery (missing or foreign object)."""
    status = error.http_status
    return status is not None and 400 <= status < 500 and status != 429


async def claim_event(event_id: str, event_type: str) -> ClaimOutcome:
    """Insert the idempotency record; the unique index decides NEW vs DUPLICATE."""
    db = database.get_db()
    try:
        await db.webhook_events.insert_one(WebhookEvent(event_id=event_id, type=event_type).model_dump())
    except DuplicateKeyError:
        return ClaimOutcome.DUPLICATE
    return ClaimOutcome.NEW


async def release_claim(event_id: str):
    """Drop the idempotency record so a redelivery can process the event."""
    db = database.get_db()
    try:
        await db.webhook_events.delete_one({"event_id": event_id})
    except Exception as e:
        logger.error(f"Failed to release webhook claim event_id={event_id}: {e}")


class StripeWebhookService:
    """Stripe webhook handler with at-most-once side effects per event id."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        """
        Main webhook entry point.

        Returns:
            (http_status, body)
        """
        webhook_secret = _get_webhook_secret()
        if not webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - cannot verify webhooks")
            return 500, {"error": "Webhook not configured"}

        if not signature:
            return 400, {"error": "Missing stripe-signature header"}

        try:
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return 400, {"error": "Invalid signature"}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return 400, {"error": "Invalid payload"}

        # Signature covers the raw body, so it is safe to parse it directly
        event = json.loads(payload)
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s customer_id=%s",
            event_id, event_type, event.get("livemode"), _id_of(obj.get("customer")),
        )

        if event_type not in HANDLED_EVENT_TYPES:
            logger.info("WEBHOOK_IGNORED event_id=%s event_type=%s", event_id, event_type)
            return 200, {"received": True, "ignored": True}

        if not event_id:
            return 400, {"error": "Missing event id"}

        outcome = await claim_event(event_id, event_type)
        if outcome == ClaimOutcome.DUPLICATE:
            logger.info("WEBHOOK_DUPLICATE event_id=%s event_type=%s", event_id, event_type)
            return 200, {"received": True, "duplicate": True}

        try:
            result = await self.handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await release_claim(event_id)
            return 500, {"error": "Webhook handler failed"}

        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s",
            event_id, event_type, result.get("user_id"),
        )
        return 200, {"received": True}

    # =========================================================================
    # Event Router
    # =========================================================================

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return await self._handle_checkout_completed(obj)
        if event_type in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            return await self._handle_subscription_change(obj)
        if event_type == "invoice.payment_failed":
            return await self._handle_payment_failed(obj)
        return {"handled": False}

    async def find_user_for_object(self, obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """metadata.userId / client_reference_id first, then stripe_customer_id."""
        db = database.get_db()

        metadata = obj.get("metadata") or {}
        user_id = metadata.get("userId") or obj.get("client_reference_id")
        if user_id:
            user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
            if user:
                return user

        customer_id = _id_of(obj.get("customer"))
        if customer_id:
            user = await db.users.find_one({"stripe_customer_id": customer_id}, {"_id": 0})
            if user:
                return user

        return None

    async def _handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.find_user_for_object(session)
        if not user:
            logger.info("Checkout completed for unknown user; nothing to update")
            return {"handled": True, "user_id": None}

        customer_id = _id_of(session.get("customer"))
        if not user.get("stripe_customer_id") and customer_id:
            db = database.get_db()
            await db.users.update_one(
                {"user_id": user["user_id"]},
                {"$set": {"stripe_customer_id": customer_id, "updated_at": datetime.now(timezone.utc)}}
            )
            logger.info(f"Backfilled stripe_customer_id for user {user['user_id']}")

        return {"handled": True, "user_id": user["user_id"]}

    async def _handle_subscription_change(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.find_user_for_object(subscription)
        if not user:
            logger.info(
                f"Subscription {subscription.get('id')} has no matching user; nothing to update"
            )
            return {"handled": True, "user_id": None}

        await self.sync_user_subscription(user, subscription)
        return {"handled": True, "user_id": user["user_id"]}

    async def _handle_payment_failed(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        subscription_id = _id_of(invoice.get("subscription"))
        if not subscription_id:
            return {"handled": True, "user_id": None}

        try:
            subscription = _as_dict(stripe_service.retrieve_subscription(subscription_id))
        except stripe.StripeError as e:
            if not _is_permanent_stripe_error(e):
                raise
            # Redelivery would hit the same answer; keep the claim and acknowledge
            logger.warning(
                "WEBHOOK_SUBSCRIPTION_UNAVAILABLE subscription_id=%s http_status=%s error=%s",
                subscription_id, e.http_status, str(e),
            )
            return {"handled": True, "user_id": None}

        db = database.get_db()
        customer_id = _id_of(invoice.get("customer"))
        user = None
        if customer_id:
            user = await db.users.find_one({"stripe_customer_id": customer_id}, {"_id": 0})
        if not user:
            user = await db.users.find_one({"stripe_subscription_id": subscription.get("id")}, {"_id": 0})
        if not user:
            return {"handled": True, "user_id": None}

        await self.sync_user_subscription(user, subscription)
        return {"handled": True, "user_id": user["user_id"]}

    async def sync_user_subscription(self, user: Dict[str, Any], subscription: Dict[str, Any]):
        """Write plan, normalized status and Stripe ids from a subscription onto the user."""
        plan_id = get_plan_id_from_price_id(_first_price_id(subscription))
        status = normalize_subscription_status(subscription.get("status"))
        if plan_id == PlanId.FREE:
            status = SubscriptionStatus.FREE

        update = {
            "subscription_plan_id": plan_id.value,
            "subscription_status": status.value,
            "stripe_subscription_id": subscription.get("id"),
            "updated_at": datetime.now(timezone.utc),
        }
        customer_id = _id_of(subscription.get("customer"))
        if customer_id:
            update["stripe_customer_id"] = customer_id

        db = database.get_db()
        await db.users.update_one({"user_id": user["user_id"]}, {"$set": update})
        logger.info(
            f"Subscription synced for user {user['user_id']}: plan={plan_id.value} status={status.value}"
        )


stripe_webhook_service = StripeWebhookService()
