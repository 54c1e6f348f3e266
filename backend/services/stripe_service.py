"""Stripe Service - Customer provisioning, checkout and billing portal.

This service handles:
- Creating (and re-creating) the Stripe customer for a user on demand
- Creating checkout sessions for the Pro subscription
- Billing portal access, with one recovery attempt for stale customer ids
- Mapping Stripe price ids back to internal plan ids

Key Principles:
- STRIPE_PRICE_PRO_MONTHLY is the only paid price
- Metadata carries userId so webhooks can find the user
- Provider failures surface as UpstreamProviderError (HTTP 502 at the route)
"""
import stripe
import os
import re
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from database import database
from models import PlanId
from utils.public_app_url import get_public_app_url, get_portal_return_url, safe_return_url

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at call time with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()

CUSTOMER_ID_PATTERN = re.compile(r"^cus_[A-Za-z0-9]+$")


class UpstreamProviderError(Exception):
    """Stripe call failed in a way the caller cannot recover from."""


class BillingNotConfiguredError(Exception):
    """Missing or invalid billing configuration (keys, prices, return URLs, customer id)."""


class InvalidCustomerIdError(BillingNotConfiguredError):
    """Stored stripe_customer_id is not a usable Stripe customer id."""


def get_plan_id_from_price_id(price_id: Optional[str]) -> PlanId:
    if not price_id:
        return PlanId.FREE
    pro_price = (os.getenv("STRIPE_PRICE_PRO_MONTHLY") or "").strip()
    if pro_price and price_id == pro_price:
        return PlanId.PRO
    return PlanId.FREE


def is_valid_customer_id(value: Any) -> bool:
    return isinstance(value, str) and bool(CUSTOMER_ID_PATTERN.match(value))


def is_no_such_customer(error: Exception) -> bool:
    return "no such customer" in str(error).lower()


def _user_full_name(user: Dict[str, Any]) -> Optional[str]:
    parts = [(user.get("first_name") or "").strip(), (user.get("last_name") or "").strip()]
    parts = [p for p in parts if p]
    return " ".join(parts) if parts else None


def _ensure_api_key():
    if not (stripe.api_key or "").strip():
        stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    if not stripe.api_key:
        raise BillingNotConfiguredError("STRIPE_SECRET_KEY is not set. Configure env and restart.")


class StripeService:
    """Stripe billing operations service."""

    async def create_customer(self, user: Dict[str, Any]) -> str:
        """Create a Stripe customer for user and persist its id. Returns the customer id."""
        _ensure_api_key()
        db = database.get_db()

        params = {"metadata": {"userId": user["user_id"]}}
        if user.get("email"):
            params["email"] = user["email"]
        name = _user_full_name(user)
        if name:
            params["name"] = name

        customer = stripe.Customer.create(**params)

        await db.users.update_one(
            {"user_id": user["user_id"]},
            {"$set": {
                "stripe_customer_id": customer.id,
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        user["stripe_customer_id"] = customer.id
        logger.info(f"Stripe customer provisioned for user {user['user_id']}: {customer.id}")
        return customer.id

    async def ensure_customer(self, user: Dict[str, Any]) -> str:
        customer_id = user.get("stripe_customer_id")
        if customer_id:
            return customer_id
        try:
            return await self.create_customer(user)
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed for user {user.get('user_id')}: {e}")
            raise UpstreamProviderError("Unable to create billing customer") from e

    async def create_portal_session(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a billing portal session for user.

        A stored customer id that Stripe no longer knows is replaced once and the session
        retried; any second failure is terminal.
        """
        _ensure_api_key()
        customer_id = await self.ensure_customer(user)

        if not is_valid_customer_id(customer_id):
            raise InvalidCustomerIdError("Billing is not configured for this user.")

        return_url = get_portal_return_url()
        if not return_url:
            raise BillingNotConfiguredError("Invalid billing portal return URL configuration.")

        try:
            portal = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            if not is_no_such_customer(e):
                logger.error(f"Stripe portal error for user {user['user_id']}: {e}")
                raise UpstreamProviderError("Unable to open customer portal") from e

            logger.warning(f"Stale Stripe customer for user {user['user_id']}; re-provisioning once")
            try:
                customer_id = await self.create_customer(user)
                portal = stripe.billing_portal.Session.create(
                    customer=customer_id,
                    return_url=return_url,
                )
            except stripe.StripeError as retry_err:
                logger.error(f"Stripe portal retry error for user {user['user_id']}: {retry_err}")
                raise UpstreamProviderError("Unable to open customer portal") from retry_err

        if not getattr(portal, "url", None):
            raise UpstreamProviderError("Unable to create customer portal session")

        logger.info(f"Billing portal session created for user {user['user_id']}")
        return {"url": portal.url}

    async def create_checkout_session(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create Stripe checkout session for the Pro subscription.

        Returns:
            Dict with checkout_url and session_id
        """
        _ensure_api_key()

        price_id = (os.getenv("STRIPE_PRICE_PRO_MONTHLY") or "").strip()
        if not price_id:
            raise BillingNotConfiguredError("STRIPE_PRICE_PRO_MONTHLY is not set.")

        base = get_public_app_url()
        success_url = safe_return_url(base, "/app/billing")
        cancel_url = safe_return_url(base, "/app/billing")
        if not success_url or not cancel_url:
            raise BillingNotConfiguredError("Invalid public app URL configuration.")

        customer_id = await self.ensure_customer(user)

        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=f"{success_url}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{cancel_url}?checkout=cancel",
                client_reference_id=user["user_id"],
                metadata={"userId": user["user_id"]},
                subscription_data={"metadata": {"userId": user["user_id"]}},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for user {user['user_id']}: {e}")
            raise UpstreamProviderError("Failed to create checkout session") from e

        logger.info(f"Checkout session created for user {user['user_id']}: {session.id}")
        return {"checkout_url": session.url, "session_id": session.id}

    def retrieve_subscription(self, subscription_id: str):
        _ensure_api_key()
        return stripe.Subscription.retrieve(subscription_id)


stripe_service = StripeService()
