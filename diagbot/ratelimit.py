from __future__ import annotations

import logging
import time
from typing import Optional

from .persistence import DialogueRepository

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding one-minute admission limit per user."""

    def __init__(self, repository: DialogueRepository, max_per_minute: int = 10) -> None:
        if max_per_minute < 1:
            raise ValueError("max_per_minute must be at least 1")
        self._repository = repository
        self.max_per_minute = max_per_minute

    async def admit(self, user_id: int, now: Optional[int] = None) -> bool:
        """Return ``True`` and record the event when the user is under the limit."""
        if now is None:
            now = int(time.time())
        allowed = await self._repository.check_and_record_rate(
            user_id, self.max_per_minute, now
        )
        if not allowed:
            logger.info(f"Rate limit exceeded for user {user_id}")
        return allowed
