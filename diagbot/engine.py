"""Dialogue engine: turns one incoming event into one reply."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from . import messages
from .callbacks import CallbackKind, decode
from .config import DiagbotConfig, load_config
from .contracts import EngineReply
from .errors import DiagbotError, StorageError
from .locks import UserLocks
from .navigation import Navigator
from .nlu import LLMScenarioClassifier, ScenarioClassifier
from .overlay import LeadCaptureOverlay, OverlayOutcome
from .persistence import (
    DialogueRepository,
    OverlayState,
    Scenario,
    StateType,
    Step,
    get_repository,
)
from .ratelimit import RateLimiter
from .selector import ScenarioSelector

logger = logging.getLogger(__name__)

INCOMING = "incoming"
OUTGOING = "outgoing"


class DialogueEngine:
    """Orchestrates rate limiting, the lead-capture overlay and navigation.

    Events of one user are serialized through :class:`UserLocks`; each event
    either completes or raises :class:`StorageError` for that event only.
    """

    def __init__(
        self,
        repository: DialogueRepository,
        config: Optional[DiagbotConfig] = None,
        classifier: Optional[ScenarioClassifier] = None,
        locks: Optional[UserLocks] = None,
    ) -> None:
        self.config = config or DiagbotConfig()
        self.repository = repository
        self.rate_limiter = RateLimiter(repository, self.config.rate_limit_per_minute)
        self.navigator = Navigator(repository)
        self.selector = ScenarioSelector(
            repository, classifier, timeout=self.config.nlu.timeout
        )
        self.overlay = LeadCaptureOverlay(repository, self.config.overlay)
        self.locks = locks or UserLocks()

    @classmethod
    def from_config(
        cls,
        config: Optional[DiagbotConfig] = None,
        repository: Optional[DialogueRepository] = None,
    ) -> "DialogueEngine":
        """Build an engine with the configured store and classifier."""
        config = config or load_config()
        repository = repository or get_repository(config.database_url)
        classifier = None
        if config.nlu.active:
            classifier = LLMScenarioClassifier.from_config(config.nlu)
        return cls(repository, config, classifier)

    # ------------------------------------------------------------------
    async def handle_start(self, user_id: int) -> EngineReply:
        """``/start``: reset the overlay and session, list the scenarios."""
        return await self._process(user_id, "/start", lambda: self._on_start(user_id))

    async def handle_message(self, user_id: int, text: str) -> EngineReply:
        """Free-text message."""
        return await self._process(user_id, text, lambda: self._on_message(user_id, text))

    async def handle_callback(self, user_id: int, token: str) -> EngineReply:
        """Button press carrying ``token``."""
        return await self._process(user_id, token, lambda: self._on_callback(user_id, token))

    async def _process(
        self, user_id: int, incoming: str, handler: Callable[[], Awaitable[EngineReply]]
    ) -> EngineReply:
        async with self.locks.lock(user_id):
            try:
                if not await self.rate_limiter.admit(user_id):
                    return EngineReply(text=messages.RATE_LIMIT_MESSAGE)
                await self.repository.log_message(user_id, incoming, INCOMING)
                reply = await handler()
                if reply.handled and reply.text:
                    await self.repository.log_message(user_id, reply.text, OUTGOING)
                return reply
            except DiagbotError:
                raise
            except Exception as e:
                logger.exception(f"Storage failure while handling event of user {user_id}")
                raise StorageError(str(e)) from e

    # ------------------------------------------------------------------
    async def _on_start(self, user_id: int) -> EngineReply:
        await self.repository.get_or_create_user(user_id)
        await self.repository.set_overlay_state(user_id, OverlayState.IDLE)
        await self.repository.delete_session(user_id)
        return EngineReply(
            text=messages.START_MESSAGE, buttons=await self.navigator.scenario_buttons()
        )

    async def _on_message(self, user_id: int, text: str) -> EngineReply:
        user = await self.repository.get_or_create_user(user_id)
        if user.fsm_state is not OverlayState.IDLE:
            outcome = await self.overlay.handle_message(user, text)
            return await self._finish_overlay(user_id, outcome)

        offer = await self.overlay.register_message(user_id)
        if offer is not None:
            return offer

        session = await self.repository.get_session(user_id)
        if session is not None and session.active:
            return await self._continue_session(user_id, session.scenario_id, session.current_step_key)

        scenario = await self.selector.select(text)
        if scenario is None:
            return EngineReply.unhandled()
        logger.info(f"User {user_id} starts scenario '{scenario.name}'")
        return await self._start_scenario(user_id, scenario)

    async def _on_callback(self, user_id: int, token: str) -> EngineReply:
        action = decode(token)
        if action is None:
            logger.warning(f"Unknown callback token from user {user_id}: {token!r}")
            return EngineReply.unhandled()

        user = await self.repository.get_or_create_user(user_id)
        if action.is_overlay:
            if user.fsm_state is OverlayState.IDLE:
                logger.warning(f"Overlay token {token!r} from user {user_id} with no active overlay")
                return EngineReply.unhandled()
            outcome = await self.overlay.handle_callback(user, action)
            return await self._finish_overlay(user_id, outcome)

        if user.fsm_state is not OverlayState.IDLE:
            return self.overlay.prompt(user.fsm_state)

        if action.kind is CallbackKind.START_SCENARIO:
            scenario = await self.repository.get_scenario(action.scenario_id)
            if scenario is None:
                logger.warning(f"Callback for unknown scenario {action.scenario_id}")
                return EngineReply.unhandled()
            return await self._start_scenario(user_id, scenario)
        if action.kind is CallbackKind.BACK:
            return await self._back(user_id, action.scenario_id, action.step_key)
        return await self._advance(user_id, action.scenario_id, action.target_key)

    # ------------------------------------------------------------------
    async def _start_scenario(self, user_id: int, scenario: Scenario) -> EngineReply:
        step = await self.navigator.first_step(scenario.id)
        if step is None:
            await self.repository.delete_session(user_id)
            return EngineReply.unhandled()
        await self.repository.put_session(user_id, scenario.id, step.step_key)
        return await self._show(user_id, step, scenario)

    async def _advance(self, user_id: int, scenario_id: int, step_key: str) -> EngineReply:
        step = await self.repository.get_step(scenario_id, step_key)
        if step is None:
            logger.warning(f"User {user_id} requested missing step {scenario_id}/{step_key}")
            await self.repository.delete_session(user_id)
            return EngineReply.unhandled()
        await self.repository.put_session(user_id, scenario_id, step.step_key)
        return await self._show(user_id, step)

    async def _back(self, user_id: int, scenario_id: int, step_key: str) -> EngineReply:
        target = await self.navigator.back_target(scenario_id, step_key)
        if target is None:
            await self.repository.delete_session(user_id)
            return EngineReply(
                text=messages.SCENARIO_SELECTION_MESSAGE,
                buttons=await self.navigator.scenario_buttons(),
            )
        await self.repository.put_session(user_id, scenario_id, target.step_key)
        return await self._show(user_id, target)

    async def _continue_session(self, user_id: int, scenario_id: int, step_key: str) -> EngineReply:
        step = await self.repository.get_step(scenario_id, step_key)
        if step is None:
            logger.warning(f"Session of user {user_id} points to missing step {scenario_id}/{step_key}")
            await self.repository.delete_session(user_id)
            return EngineReply.unhandled()

        following = await self.navigator.next_step(step)
        if following is None:
            await self.repository.delete_session(user_id)
            return EngineReply(text=step.message)
        await self.repository.put_session(user_id, scenario_id, following.step_key)
        return await self._show(user_id, following)

    async def _show(
        self, user_id: int, step: Step, scenario: Optional[Scenario] = None
    ) -> EngineReply:
        buttons = await self.navigator.buttons_for(step, scenario)
        if _is_terminal(step):
            await self.repository.delete_session(user_id)
        return EngineReply(text=step.message, buttons=buttons)

    async def _finish_overlay(self, user_id: int, outcome: OverlayOutcome) -> EngineReply:
        if not outcome.closed:
            return outcome.reply
        session = await self.repository.get_session(user_id)
        if session is None or not session.active:
            return outcome.reply
        step = await self.repository.get_step(session.scenario_id, session.current_step_key)
        if step is None:
            return outcome.reply
        return outcome.reply.followed_by(await self._show(user_id, step))


def _is_terminal(step: Step) -> bool:
    return step.is_final or step.state_type is StateType.FINAL
