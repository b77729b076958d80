"""Rate limiting for billing operations (checkout session creation)"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self):
        # In-memory, per process; keys are normalized (lowercase, stripped)
        self.attempts: Dict[str, List[datetime]] = {}

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_seconds: int
    ) -> Tuple[bool, Optional[str]]:
        """
        Check if rate limit is exceeded and record the attempt if not.

        Returns:
            (allowed: bool, error_message: Optional[str])
        """
        key = (key or "").strip().lower()
        now = datetime.now(timezone.utc)
        window = timedelta(seconds=window_seconds)

        # Clean old entries
        recent = [ts for ts in self.attempts.get(key, []) if now - ts < window]
        self.attempts[key] = recent

        if len(recent) >= max_attempts:
            wait_seconds = max(int((min(recent) + window - now).total_seconds()), 1)
            logger.warning("RATE_LIMITED key=%s attempts=%s window_seconds=%s", key, len(recent), window_seconds)
            return False, f"Rate limit exceeded. Try again in {wait_seconds} seconds"

        recent.append(now)
        return True, None

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self.attempts.clear()
        else:
            self.attempts.pop(key.strip().lower(), None)
