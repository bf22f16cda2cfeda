"""Repository abstraction for dialogue state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from .models import OverlayState, Scenario, Session, Step, User

RATE_WINDOW_SECONDS = 60


def apply_sliding_window(
    timestamps: Sequence[int], now: int, max_per_window: int, window: int = RATE_WINDOW_SECONDS
) -> tuple[bool, list[int]]:
    """Prune ``timestamps`` to the trailing window and try to admit ``now``.

    Returns the admission decision and the list that should be persisted.
    """

    cutoff = now - window
    kept = [ts for ts in timestamps if ts >= cutoff]
    if len(kept) >= max_per_window:
        return False, kept
    kept.append(now)
    return True, kept


class DialogueRepository(Protocol):
    """Protocol for dialogue state persistence backends."""

    # Scenario / step catalog (read-only to the engine)
    async def get_scenario(self, scenario_id: int) -> Scenario | None:
        """Return a scenario by id."""

    async def get_scenario_by_trigger_keyword(self, text: str) -> Scenario | None:
        """Return the first scenario (ascending id) with a keyword found in ``text``."""

    async def list_scenarios(self) -> list[Scenario]:
        """Return all scenarios ordered by id."""

    async def get_step(self, scenario_id: int, step_key: str) -> Step | None:
        """Return one step of a scenario."""

    async def list_steps(self, scenario_id: int) -> list[Step]:
        """Return the steps of a scenario in insertion order."""

    async def replace_scenario(self, scenario: Scenario, steps: Sequence[Step]) -> Scenario:
        """Insert or replace a scenario (matched by name) with its steps."""

    # Sessions
    async def get_session(self, user_id: int) -> Session | None:
        """Return the active session of a user."""

    async def put_session(
        self, user_id: int, scenario_id: int | None, step_key: str | None
    ) -> None:
        """Replace the user's session pointer."""

    async def delete_session(self, user_id: int) -> None:
        """Drop the user's session."""

    # Users / overlay
    async def get_user(self, user_id: int) -> User | None:
        """Return a user record."""

    async def get_or_create_user(self, user_id: int) -> User:
        """Return a user record, creating an idle one if absent."""

    async def increment_message_count(self, user_id: int) -> int:
        """Atomically increment the counter and return the new value."""

    async def reset_message_count(self, user_id: int) -> None:
        """Set the message counter back to zero."""

    async def set_overlay_state(self, user_id: int, state: OverlayState) -> None:
        """Persist the overlay state."""

    async def set_email(self, user_id: int, email: str | None, consent: bool) -> None:
        """Persist email and consent flag."""

    # Rate limiting
    async def check_and_record_rate(
        self, user_id: int, max_per_minute: int, now: int | None = None
    ) -> bool:
        """Sliding-window admission; records ``now`` when admitted."""

    # Message log and statistics
    async def log_message(self, user_id: int, text: str, direction: str) -> None:
        """Record an incoming or outgoing message."""

    async def count_active_users(self, since: datetime) -> int:
        """Count distinct users that exchanged messages since ``since``."""

    async def count_messages(self) -> int:
        """Count all logged messages."""

    async def count_users_by_overlay_state(self) -> dict[str, int]:
        """Count users per overlay state."""
