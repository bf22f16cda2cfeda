"""Lead-capture overlay: site-link offer, email collection and consent.

The overlay state lives on the user record, separate from the diagnostic
session. While it is anywhere but ``idle`` it owns the conversation; the
engine leaves the session untouched and resumes it once the overlay closes.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from pydantic import BaseModel

from . import messages
from .callbacks import (
    CallbackAction,
    CallbackKind,
    encode_email_confirm,
    fits_transport,
)
from .config import OverlayConfig
from .contracts import Button, EngineReply
from .persistence import DialogueRepository, OverlayState, User

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
_EMAIL_SEARCH = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")

YES_WORDS = frozenset({"да", "yes"})
NO_WORDS = frozenset({"нет", "no"})


def is_valid_email(text: str) -> bool:
    return bool(EMAIL_PATTERN.match(text.strip()))


def extract_email_candidates(text: str) -> List[str]:
    """Email-looking substrings of ``text``, in order of appearance."""
    return [m.rstrip(".") for m in _EMAIL_SEARCH.findall(text)]


def _yes_no(text: str) -> Optional[bool]:
    word = text.strip().lower().rstrip(".!")
    if word in YES_WORDS:
        return True
    if word in NO_WORDS:
        return False
    return None


class OverlayOutcome(BaseModel):
    """Reply of one overlay step; ``closed`` when it returned to idle."""

    reply: EngineReply
    closed: bool = False


class LeadCaptureOverlay:
    def __init__(self, repository: DialogueRepository, config: OverlayConfig) -> None:
        self._repository = repository
        self.config = config

    async def register_message(self, user_id: int) -> EngineReply | None:
        """Count a free-text message and open the offer at the threshold."""
        if not self.config.enabled:
            return None
        count = await self._repository.increment_message_count(user_id)
        if count < self.config.trigger_message_count:
            return None
        await self._repository.reset_message_count(user_id)
        await self._repository.set_overlay_state(user_id, OverlayState.OFFERING_SITE_LINK)
        logger.info(f"Offering site link to user {user_id} after {count} messages")
        return self.prompt(OverlayState.OFFERING_SITE_LINK)

    def prompt(self, state: OverlayState) -> EngineReply:
        """Reply that (re-)presents ``state``."""
        if state is OverlayState.OFFERING_SITE_LINK:
            return EngineReply(
                text=messages.SITE_LINK_OFFER_MESSAGE,
                buttons=[
                    Button(label=messages.YES_LABEL, callback=CallbackKind.SITE_LINK_YES.value),
                    Button(
                        label=messages.SITE_LINK_DIRECT_LABEL,
                        callback=CallbackKind.SITE_LINK_YES_POST.value,
                    ),
                    Button(label=messages.NO_LABEL, callback=CallbackKind.SITE_LINK_NO.value),
                ],
            )
        if state is OverlayState.OFFERING_SITE_POST:
            return EngineReply(
                text=messages.site_post_message(self.config.site_url),
                buttons=[
                    Button(
                        label=messages.YES_LABEL,
                        callback=CallbackKind.SITE_LINK_YES_POST.value,
                    ),
                    Button(
                        label=messages.NO_LABEL,
                        callback=CallbackKind.SITE_LINK_NO_POST.value,
                    ),
                ],
            )
        if state is OverlayState.AWAITING_EMAIL:
            return EngineReply(text=messages.EMAIL_REQUEST_MESSAGE)
        if state is OverlayState.AWAITING_EMAIL_CONSENT:
            return EngineReply(
                text=messages.EMAIL_CONSENT_MESSAGE,
                buttons=[
                    Button(
                        label=messages.EMAIL_CONSENT_YES_LABEL,
                        callback=CallbackKind.EMAIL_CONSENT_YES.value,
                    ),
                    Button(
                        label=messages.EMAIL_CONSENT_NO_LABEL,
                        callback=CallbackKind.EMAIL_CONSENT_NO.value,
                    ),
                ],
            )
        return EngineReply.unhandled()

    # ------------------------------------------------------------------
    async def handle_message(self, user: User, text: str) -> OverlayOutcome:
        """Free text while the overlay is active."""
        state = user.fsm_state
        if state is OverlayState.IDLE:
            return OverlayOutcome(reply=EngineReply.unhandled())
        if state is OverlayState.AWAITING_EMAIL:
            return await self._receive_email(user, text)

        answer = _yes_no(text)
        if answer is None:
            return OverlayOutcome(reply=self.prompt(state))
        kind = {
            OverlayState.OFFERING_SITE_LINK: (
                CallbackKind.SITE_LINK_YES,
                CallbackKind.SITE_LINK_NO,
            ),
            OverlayState.OFFERING_SITE_POST: (
                CallbackKind.SITE_LINK_YES_POST,
                CallbackKind.SITE_LINK_NO_POST,
            ),
            OverlayState.AWAITING_EMAIL_CONSENT: (
                CallbackKind.EMAIL_CONSENT_YES,
                CallbackKind.EMAIL_CONSENT_NO,
            ),
        }[state][0 if answer else 1]
        return await self.handle_callback(user, CallbackAction(kind=kind))

    async def handle_callback(self, user: User, action: CallbackAction) -> OverlayOutcome:
        """Apply an overlay token; tokens the current state does not accept are unhandled."""
        state = user.fsm_state
        user_id = user.user_id
        kind = action.kind

        if state is OverlayState.OFFERING_SITE_LINK:
            if kind is CallbackKind.SITE_LINK_YES:
                await self._repository.set_overlay_state(user_id, OverlayState.AWAITING_EMAIL)
                return OverlayOutcome(reply=self.prompt(OverlayState.AWAITING_EMAIL))
            if kind is CallbackKind.SITE_LINK_YES_POST:
                await self._repository.set_overlay_state(user_id, OverlayState.OFFERING_SITE_POST)
                return OverlayOutcome(reply=self.prompt(OverlayState.OFFERING_SITE_POST))
            if kind is CallbackKind.SITE_LINK_NO:
                return await self._close(user_id, messages.SITE_LINK_DECLINED_MESSAGE)

        elif state is OverlayState.OFFERING_SITE_POST:
            if kind is CallbackKind.SITE_LINK_YES_POST:
                return await self._close(user_id, messages.SITE_POST_THANKS_MESSAGE)
            if kind is CallbackKind.SITE_LINK_NO_POST:
                return await self._close(user_id, messages.SITE_POST_SORRY_MESSAGE)

        elif state is OverlayState.AWAITING_EMAIL:
            if kind is CallbackKind.EMAIL_CONFIRM and action.email:
                return await self._receive_email(user, action.email)

        elif state is OverlayState.AWAITING_EMAIL_CONSENT:
            if kind is CallbackKind.EMAIL_CONSENT_YES:
                await self._repository.set_email(user_id, user.email, True)
                return await self._close(
                    user_id, messages.email_saved_message(self.config.site_url)
                )
            if kind is CallbackKind.EMAIL_CONSENT_NO:
                await self._repository.set_email(user_id, user.email, False)
                return await self._close(
                    user_id, messages.email_declined_message(self.config.site_url)
                )

        logger.warning(f"Overlay token {kind.value} ignored in state {state.value} for user {user_id}")
        return OverlayOutcome(reply=EngineReply.unhandled())

    # ------------------------------------------------------------------
    async def _receive_email(self, user: User, text: str) -> OverlayOutcome:
        email = text.strip()
        if is_valid_email(email):
            await self._repository.set_email(user.user_id, email, False)
            await self._repository.set_overlay_state(
                user.user_id, OverlayState.AWAITING_EMAIL_CONSENT
            )
            return OverlayOutcome(reply=self.prompt(OverlayState.AWAITING_EMAIL_CONSENT))

        reply = EngineReply(text=messages.EMAIL_INVALID_MESSAGE)
        for candidate in extract_email_candidates(text):
            token = encode_email_confirm(candidate)
            if is_valid_email(candidate) and fits_transport(token):
                reply.buttons.append(
                    Button(
                        label=messages.EMAIL_CONFIRM_LABEL.format(email=candidate),
                        callback=token,
                    )
                )
                break
        return OverlayOutcome(reply=reply)

    async def _close(self, user_id: int, text: str) -> OverlayOutcome:
        await self._repository.set_overlay_state(user_id, OverlayState.IDLE)
        return OverlayOutcome(reply=EngineReply(text=text), closed=True)
