"""In-memory implementation of the dialogue repository."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Dict, List, Sequence

from .models import MessageRecord, OverlayState, Scenario, Session, Step, User
from .repository import DialogueRepository, apply_sliding_window


class InMemoryDialogueRepository(DialogueRepository):
    """Store dialogue state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method runs without awaiting
    in between its read and its write, so each call is atomic with respect
    to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._scenarios: Dict[int, Scenario] = {}
        self._steps: Dict[int, List[Step]] = {}
        self._sessions: Dict[int, Session] = {}
        self._users: Dict[int, User] = {}
        self._rates: Dict[int, List[int]] = {}
        self._messages: List[MessageRecord] = []
        self._scenario_id = 0
        self._step_id = 0

    # ------------------------------------------------------------------
    async def get_scenario(self, scenario_id: int) -> Scenario | None:
        return self._scenarios.get(scenario_id)

    async def get_scenario_by_trigger_keyword(self, text: str) -> Scenario | None:
        for scenario_id in sorted(self._scenarios):
            scenario = self._scenarios[scenario_id]
            if scenario.matches(text):
                return scenario
        return None

    async def list_scenarios(self) -> list[Scenario]:
        return [self._scenarios[sid] for sid in sorted(self._scenarios)]

    async def get_step(self, scenario_id: int, step_key: str) -> Step | None:
        for step in self._steps.get(scenario_id, []):
            if step.step_key == step_key:
                return step
        return None

    async def list_steps(self, scenario_id: int) -> list[Step]:
        return list(self._steps.get(scenario_id, []))

    async def replace_scenario(self, scenario: Scenario, steps: Sequence[Step]) -> Scenario:
        existing = next(
            (s for s in self._scenarios.values() if s.name == scenario.name), None
        )
        if existing is not None:
            scenario_id = existing.id
        else:
            self._scenario_id += 1
            scenario_id = self._scenario_id
        stored = scenario.model_copy(update={"id": scenario_id})
        self._scenarios[scenario_id] = stored
        stored_steps = []
        for step in steps:
            self._step_id += 1
            stored_steps.append(
                step.model_copy(update={"id": self._step_id, "scenario_id": scenario_id})
            )
        self._steps[scenario_id] = stored_steps
        return stored

    # ------------------------------------------------------------------
    async def get_session(self, user_id: int) -> Session | None:
        return self._sessions.get(user_id)

    async def put_session(
        self, user_id: int, scenario_id: int | None, step_key: str | None
    ) -> None:
        self._sessions[user_id] = Session(
            user_id=user_id, scenario_id=scenario_id, current_step_key=step_key
        )

    async def delete_session(self, user_id: int) -> None:
        self._sessions.pop(user_id, None)

    # ------------------------------------------------------------------
    async def get_user(self, user_id: int) -> User | None:
        return self._users.get(user_id)

    async def get_or_create_user(self, user_id: int) -> User:
        user = self._users.get(user_id)
        if user is None:
            user = User(user_id=user_id)
            self._users[user_id] = user
        return user

    def _touch(self, user_id: int) -> User:
        user = self._users.get(user_id)
        if user is None:
            user = User(user_id=user_id)
            self._users[user_id] = user
        user.updated_at = datetime.utcnow()
        return user

    async def increment_message_count(self, user_id: int) -> int:
        user = self._touch(user_id)
        user.message_count += 1
        return user.message_count

    async def reset_message_count(self, user_id: int) -> None:
        self._touch(user_id).message_count = 0

    async def set_overlay_state(self, user_id: int, state: OverlayState) -> None:
        self._touch(user_id).fsm_state = state

    async def set_email(self, user_id: int, email: str | None, consent: bool) -> None:
        user = self._touch(user_id)
        user.email = email
        user.consent_granted = consent

    # ------------------------------------------------------------------
    async def check_and_record_rate(
        self, user_id: int, max_per_minute: int, now: int | None = None
    ) -> bool:
        now = int(time.time()) if now is None else now
        admitted, kept = apply_sliding_window(
            self._rates.get(user_id, []), now, max_per_minute
        )
        self._rates[user_id] = kept
        return admitted

    # ------------------------------------------------------------------
    async def log_message(self, user_id: int, text: str, direction: str) -> None:
        self._messages.append(
            MessageRecord(
                id=len(self._messages) + 1,
                user_id=user_id,
                text=text,
                direction=direction,
            )
        )

    async def count_active_users(self, since: datetime) -> int:
        return len({m.user_id for m in self._messages if m.created_at >= since})

    async def count_messages(self) -> int:
        return len(self._messages)

    async def count_users_by_overlay_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for user in self._users.values():
            counts[user.fsm_state.value] = counts.get(user.fsm_state.value, 0) + 1
        return counts
