"""Rate limiting for billing and invite endpoints.

Fixed-window counters held in process memory. Counts reset on restart and are not
shared between workers, so this is abuse mitigation only.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import math
import logging

from fastapi import Request

logger = logging.getLogger(__name__)

CLEANUP_THRESHOLD = 500

class RateLimiter:
    def __init__(self):
        # key -> {"count": int, "reset_at": datetime}
        self.attempts = {}

    def _cleanup(self, now: datetime):
        if len(self.attempts) < CLEANUP_THRESHOLD:
            return
        expired = [k for k, v in self.attempts.items() if v["reset_at"] <= now]
        for k in expired:
            del self.attempts[k]

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_seconds: int = 60
    ) -> tuple[bool, Optional[int]]:
        """
        Check and record one attempt for key.

        Returns:
            (allowed: bool, retry_after_seconds: Optional[int])
        """
        now = datetime.now(timezone.utc)
        self._cleanup(now)

        entry = self.attempts.get(key)
        if not entry or entry["reset_at"] <= now:
            self.attempts[key] = {"count": 1, "reset_at": now + timedelta(seconds=window_seconds)}
            return True, None

        if entry["count"] >= max_attempts:
            wait_seconds = max(1, math.ceil((entry["reset_at"] - now).total_seconds()))
            logger.warning(f"RATE_LIMITED key={key.split(':', 1)[0]} retry_after={wait_seconds}")
            return False, wait_seconds

        entry["count"] += 1
        return True, None

    def reset(self):
        self.attempts.clear()

def get_client_key(request: Request, scope: str) -> str:
    """Coarse client identity: forwarded IP plus truncated user agent."""
    forwarded = request.headers.get("x-forwarded-for") or ""
    ip = (
        forwarded.split(",")[0].strip()
        or (request.headers.get("x-real-ip") or "").strip()
        or "unknown"
    )
    ua = (request.headers.get("user-agent") or "")[:128]
    return f"{scope}:ip:{ip}:ua:{ua}"

rate_limiter = RateLimiter()
