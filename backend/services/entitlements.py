"""Entitlements Service - Subscription snapshot to plan, limits and feature flags.

Derives what a user may do from the billing fields that Stripe webhooks sync onto the
user document. Routes gate with require_pro / require_feature; the app turns an
EntitlementError into a 402 response.

Gating rules:
- Plan comes from subscription_plan_id when valid, otherwise "pro" for active/trialing.
- A paid plan is in good standing only while active or trialing. past_due is NOT.
- Limits and features always come from the effective plan (pro only when in good
  standing), while plan_id keeps reporting the stored plan.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Any
import logging

from models import PlanId, SubscriptionStatus

logger = logging.getLogger(__name__)


ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

PLAN_LIMITS = {
    PlanId.FREE: {
        "estates": 1,
        "collaborators_per_estate": 0,
        "storage_mb": 250,
    },
    PlanId.PRO: {
        "estates": 50,
        "collaborators_per_estate": 10,
        "storage_mb": 10_000,
    },
}

PLAN_FEATURES = {
    PlanId.FREE: {
        "exports": False,
        "advanced_reports": False,
        "collaborator_invites": False,
    },
    PlanId.PRO: {
        "exports": True,
        "advanced_reports": True,
        "collaborator_invites": True,
    },
}

FEATURE_NAMES = {
    "exports": "Exports",
    "advanced_reports": "Advanced Reports",
    "collaborator_invites": "Collaborator Invites",
}


class EntitlementError(Exception):
    """Raised when a gated operation needs a plan/feature the user does not have."""

    code = "ENTITLEMENT_REQUIRED"

    def __init__(self, message: str, required_plan: PlanId = PlanId.PRO, feature: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.required_plan = required_plan
        self.feature = feature

    def to_dict(self) -> dict:
        return {
            "error_code": self.code,
            "required_plan": self.required_plan.value,
            "feature": self.feature,
            "message": self.message,
        }


@dataclass(frozen=True)
class EntitlementsUser:
    user_id: Optional[str] = None
    email: Optional[str] = None
    subscription_plan_id: Optional[PlanId] = None
    subscription_status: Optional[SubscriptionStatus] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None


@dataclass(frozen=True)
class Entitlements:
    plan_id: PlanId
    status: Optional[SubscriptionStatus]
    is_active: bool
    can_use_pro: bool
    limits: Dict[str, int] = field(default_factory=dict)
    features: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id.value,
            "status": self.status.value if self.status else None,
            "is_active": self.is_active,
            "can_use_pro": self.can_use_pro,
            "limits": dict(self.limits),
            "features": dict(self.features),
        }


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value)
        except ValueError:
            return None
    return None


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def to_entitlements_user(doc: Optional[dict]) -> EntitlementsUser:
    """Coerce a loose user document; anything outside the closed enums is dropped."""
    doc = doc or {}
    return EntitlementsUser(
        user_id=_str_or_none(doc.get("user_id")),
        email=_str_or_none(doc.get("email")),
        subscription_plan_id=_coerce_enum(PlanId, doc.get("subscription_plan_id")),
        subscription_status=_coerce_enum(SubscriptionStatus, doc.get("subscription_status")),
        stripe_customer_id=_str_or_none(doc.get("stripe_customer_id")),
        stripe_subscription_id=_str_or_none(doc.get("stripe_subscription_id")),
    )


def _as_user(user) -> EntitlementsUser:
    if isinstance(user, EntitlementsUser):
        return user
    return to_entitlements_user(user)


def get_entitlements(user) -> Entitlements:
    """Compute entitlements from a user document or EntitlementsUser (None allowed)."""
    u = _as_user(user)
    status = _coerce_enum(SubscriptionStatus, u.subscription_status)

    if u.subscription_plan_id:
        plan_id = _coerce_enum(PlanId, u.subscription_plan_id) or PlanId.FREE
    elif status in ACTIVE_STATUSES:
        # Older users may not have a plan id yet
        plan_id = PlanId.PRO
    else:
        plan_id = PlanId.FREE

    is_active = plan_id != PlanId.FREE and status in ACTIVE_STATUSES
    can_use_pro = plan_id == PlanId.PRO and is_active

    effective_plan = PlanId.PRO if can_use_pro else PlanId.FREE

    return Entitlements(
        plan_id=plan_id,
        status=status,
        is_active=is_active,
        can_use_pro=can_use_pro,
        limits=dict(PLAN_LIMITS[effective_plan]),
        features=dict(PLAN_FEATURES[effective_plan]),
    )


def can_use_pro(user) -> bool:
    return get_entitlements(user).can_use_pro


def can_export(user) -> bool:
    return get_entitlements(user).features["exports"]


def can_invite_collaborators(user) -> bool:
    return get_entitlements(user).features["collaborator_invites"]


def can_create_another_estate(user, current_estate_count: int) -> bool:
    return current_estate_count < get_entitlements(user).limits["estates"]


def require_pro(user) -> Entitlements:
    ent = get_entitlements(user)
    if not ent.can_use_pro:
        raise EntitlementError("Pro subscription required", PlanId.PRO)
    return ent


def require_feature(user, feature: str, required_plan: PlanId = PlanId.PRO) -> Entitlements:
    ent = get_entitlements(user)
    if not ent.features.get(feature):
        logger.info(f"ENTITLEMENT_DENIED feature={feature} plan={ent.plan_id.value} status={ent.status.value if ent.status else None}")
        raise EntitlementError("Pro subscription required", required_plan, feature)
    return ent


def get_upgrade_reason(user) -> Optional[str]:
    """User-facing reason for an upgrade prompt, or None when already entitled."""
    ent = get_entitlements(user)

    if ent.can_use_pro:
        return None

    if ent.plan_id == PlanId.FREE or ent.status is None or ent.status == SubscriptionStatus.FREE:
        return "Upgrade to Pro to unlock this feature."

    if ent.status == SubscriptionStatus.PAST_DUE:
        return "Your subscription is past due. Update your payment method to continue."
    if ent.status == SubscriptionStatus.CANCELED:
        return "Your subscription is canceled. Resubscribe to continue."

    return "Subscription required to continue."


def get_plan_table() -> list:
    """Static plan catalogue for the billing page."""
    return [
        {
            "plan_id": plan.value,
            "limits": dict(PLAN_LIMITS[plan]),
            "features": dict(PLAN_FEATURES[plan]),
            "feature_names": {k: FEATURE_NAMES[k] for k, enabled in PLAN_FEATURES[plan].items() if enabled},
        }
        for plan in (PlanId.FREE, PlanId.PRO)
    ]
