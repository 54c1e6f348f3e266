"""
Canonical public frontend base URL for redirects out of Stripe (checkout, billing portal).
Use safe_return_url() for every URL handed to Stripe; nothing else should build return links.
"""
import os
import logging
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


def is_production() -> bool:
    env = (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip().lower()
    return env in ("production", "prod")


def get_public_app_url() -> str:
    """
    Return normalized public frontend base URL (no trailing slash).
    Fallback order: FRONTEND_PUBLIC_URL, PUBLIC_APP_URL, FRONTEND_URL, VERCEL_URL (as https).

    Rules:
    - Result is stripped and trailing slash removed.
    - A bare host is given an https scheme.
    - With nothing configured, local dev falls back to http://localhost:3000.
    """
    raw = (
        (os.getenv("FRONTEND_PUBLIC_URL") or "").strip()
        or (os.getenv("PUBLIC_APP_URL") or "").strip()
        or (os.getenv("FRONTEND_URL") or "").strip()
        or ""
    )
    if not raw and os.getenv("VERCEL_URL"):
        raw = os.getenv("VERCEL_URL", "").strip()
    raw = (raw or "").strip().rstrip("/")
    if not raw:
        return "http://localhost:3000"
    if not raw.startswith("http://") and not raw.startswith("https://") and "://" not in raw:
        raw = f"https://{raw}"
    return raw


def safe_return_url(base: str, path: str = "/app/billing") -> Optional[str]:
    """
    Build an own-origin URL for path on base, or None when base is unusable.

    Only http(s) is accepted, https is required in production and a host must be present.
    Any path/query on base is discarded so callers cannot be redirected elsewhere.
    """
    try:
        parts = urlsplit((base or "").strip())
    except ValueError:
        return None
    if parts.scheme not in ("http", "https"):
        return None
    if is_production() and parts.scheme != "https":
        return None
    if not parts.netloc:
        return None
    if not path.startswith("/"):
        path = f"/{path}"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def get_portal_return_url() -> Optional[str]:
    """STRIPE_PORTAL_RETURN_URL override when set, otherwise the public app URL."""
    override = (os.getenv("STRIPE_PORTAL_RETURN_URL") or "").strip()
    if override:
        return safe_return_url(override)
    return safe_return_url(get_public_app_url())
