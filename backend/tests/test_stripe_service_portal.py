"""
Billing portal session creation: customer provisioning, stale-customer recovery and
error mapping. Stripe SDK calls are mocked.
"""
import os
import pytest
import stripe
from unittest.mock import AsyncMock, MagicMock, patch

from services.stripe_service import (
    StripeService,
    UpstreamProviderError,
    InvalidCustomerIdError,
    BillingNotConfiguredError,
    get_plan_id_from_price_id,
    is_valid_customer_id,
)
from models import PlanId

STRIPE_ENV = {
    "STRIPE_SECRET_KEY": "sk_test_123",
    "FRONTEND_PUBLIC_URL": "https://app.example.com",
    "STRIPE_PORTAL_RETURN_URL": "",
    "ENVIRONMENT": "development",
}


def _db():
    db = MagicMock()
    db.users.update_one = AsyncMock()
    return db


def _no_such_customer():
    return stripe.InvalidRequestError("No such customer: 'cus_gone'", "customer")


@pytest.fixture(autouse=True)
def _stripe_key():
    with patch.dict(os.environ, STRIPE_ENV), patch("services.stripe_service.stripe.api_key", "sk_test_123"):
        yield


class TestPortalSession:

    @pytest.mark.asyncio
    async def test_existing_customer_gets_portal_url(self):
        user = {"user_id": "u1", "email": "a@example.com", "stripe_customer_id": "cus_abc"}
        portal = MagicMock(url="https://billing.stripe.com/session/1")
        with patch("services.stripe_service.stripe.billing_portal.Session.create", return_value=portal) as create:
            result = await StripeService().create_portal_session(user)

        assert result == {"url": "https://billing.stripe.com/session/1"}
        kwargs = create.call_args.kwargs
        assert kwargs["customer"] == "cus_abc"
        assert kwargs["return_url"] == "https://app.example.com/app/billing"

    @pytest.mark.asyncio
    async def test_missing_customer_is_provisioned_first(self):
        user = {"user_id": "u1", "email": "a@example.com", "first_name": "Ana", "last_name": "Lee"}
        db = _db()
        with patch("services.stripe_service.database.get_db", return_value=db), \
             patch("services.stripe_service.stripe.Customer.create", return_value=MagicMock(id="cus_new")) as cust, \
             patch("services.stripe_service.stripe.billing_portal.Session.create", return_value=MagicMock(url="https://x")):
            await StripeService().create_portal_session(user)

        assert cust.call_args.kwargs["metadata"] == {"userId": "u1"}
        assert cust.call_args.kwargs["name"] == "Ana Lee"
        assert user["stripe_customer_id"] == "cus_new"
        db.users.update_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_customer_is_replaced_once_and_retried(self):
        user = {"user_id": "u1", "email": "a@example.com", "stripe_customer_id": "cus_gone"}
        db = _db()
        with patch("services.stripe_service.database.get_db", return_value=db), \
             patch("services.stripe_service.stripe.Customer.create", return_value=MagicMock(id="cus_fresh")), \
             patch(
                 "services.stripe_service.stripe.billing_portal.Session.create",
                 side_effect=[_no_such_customer(), MagicMock(url="https://portal")],
             ) as create:
            result = await StripeService().create_portal_session(user)

        assert result == {"url": "https://portal"}
        assert create.call_count == 2
        assert create.call_args.kwargs["customer"] == "cus_fresh"

    @pytest.mark.asyncio
    async def test_second_failure_is_upstream_error(self):
        user = {"user_id": "u1", "email": "a@example.com", "stripe_customer_id": "cus_gone"}
        with patch("services.stripe_service.database.get_db", return_value=_db()), \
             patch("services.stripe_service.stripe.Customer.create", return_value=MagicMock(id="cus_fresh")), \
             patch(
                 "services.stripe_service.stripe.billing_portal.Session.create",
                 side_effect=[_no_such_customer(), _no_such_customer()],
             ) as create:
            with pytest.raises(UpstreamProviderError):
                await StripeService().create_portal_session(user)
        assert create.call_count == 2

    @pytest.mark.asyncio
    async def test_other_stripe_errors_are_not_retried(self):
        user = {"user_id": "u1", "stripe_customer_id": "cus_abc"}
        with patch(
            "services.stripe_service.stripe.billing_portal.Session.create",
            side_effect=stripe.APIConnectionError("network"),
        ) as create:
            with pytest.raises(UpstreamProviderError):
                await StripeService().create_portal_session(user)
        assert create.call_count == 1

    @pytest.mark.asyncio
    async def test_malformed_customer_id_is_rejected(self):
        user = {"user_id": "u1", "stripe_customer_id": "not-a-customer"}
        with patch("services.stripe_service.stripe.billing_portal.Session.create") as create:
            with pytest.raises(InvalidCustomerIdError):
                await StripeService().create_portal_session(user)
        create.assert_not_called()


class TestCheckoutSession:

    @pytest.mark.asyncio
    async def test_missing_price_is_not_configured(self):
        with patch.dict(os.environ, {"STRIPE_PRICE_PRO_MONTHLY": ""}):
            with pytest.raises(BillingNotConfiguredError):
                await StripeService().create_checkout_session({"user_id": "u1", "stripe_customer_id": "cus_abc"})

    @pytest.mark.asyncio
    async def test_checkout_carries_user_reference(self):
        session = MagicMock(id="cs_1", url="https://checkout.stripe.com/cs_1")
        with patch.dict(os.environ, {"STRIPE_PRICE_PRO_MONTHLY": "price_pro"}), \
             patch("services.stripe_service.stripe.checkout.Session.create", return_value=session) as create:
            result = await StripeService().create_checkout_session({"user_id": "u1", "stripe_customer_id": "cus_abc"})

        assert result == {"checkout_url": "https://checkout.stripe.com/cs_1", "session_id": "cs_1"}
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["client_reference_id"] == "u1"
        assert kwargs["metadata"] == {"userId": "u1"}
        assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]


def test_plan_from_price_id():
    with patch.dict(os.environ, {"STRIPE_PRICE_PRO_MONTHLY": "price_pro"}):
        assert get_plan_id_from_price_id("price_pro") == PlanId.PRO
        assert get_plan_id_from_price_id("price_other") == PlanId.FREE
        assert get_plan_id_from_price_id(None) == PlanId.FREE


def test_customer_id_shape():
    assert is_valid_customer_id("cus_ABC123")
    assert not is_valid_customer_id("cus_")
    assert not is_valid_customer_id("sub_123")
    assert not is_valid_customer_id(None)
