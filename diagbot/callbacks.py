"""Encoding and decoding of the compact callback tokens carried by buttons.

A token is ``_``-delimited with the action tag first. Step keys may contain
underscores themselves, so diagnostic tokens are split into at most three
parts (tag, scenario id, remainder). Decoding never raises: anything that
does not parse yields ``None``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel

# Telegram limits callback data to 64 bytes.
MAX_TOKEN_BYTES = 64


class CallbackKind(str, Enum):
    START_SCENARIO = "start_scenario"
    GOTO = "goto"
    OPTION = "option"
    ACTION = "action"
    BACK = "back"
    SITE_LINK_YES = "site_link_yes"
    SITE_LINK_NO = "site_link_no"
    SITE_LINK_YES_POST = "site_link_yes_post"
    SITE_LINK_NO_POST = "site_link_no_post"
    EMAIL_CONFIRM = "email_confirm"
    EMAIL_CONSENT_YES = "email_consent_yes"
    EMAIL_CONSENT_NO = "email_consent_no"


OVERLAY_KINDS = frozenset(
    {
        CallbackKind.SITE_LINK_YES,
        CallbackKind.SITE_LINK_NO,
        CallbackKind.SITE_LINK_YES_POST,
        CallbackKind.SITE_LINK_NO_POST,
        CallbackKind.EMAIL_CONFIRM,
        CallbackKind.EMAIL_CONSENT_YES,
        CallbackKind.EMAIL_CONSENT_NO,
    }
)

_BARE_KINDS = {
    kind.value: kind
    for kind in OVERLAY_KINDS
    if kind is not CallbackKind.EMAIL_CONFIRM
}
_STEP_KINDS = {
    CallbackKind.GOTO.value: CallbackKind.GOTO,
    CallbackKind.OPTION.value: CallbackKind.OPTION,
    CallbackKind.ACTION.value: CallbackKind.ACTION,
    CallbackKind.BACK.value: CallbackKind.BACK,
}


class CallbackAction(BaseModel):
    """Decoded form of a callback token."""

    kind: CallbackKind
    scenario_id: Optional[int] = None
    step_key: Optional[str] = None
    option: Optional[int] = None
    email: Optional[str] = None

    @property
    def is_overlay(self) -> bool:
        return self.kind in OVERLAY_KINDS

    @property
    def target_key(self) -> Optional[str]:
        """Step key the action jumps to, when it names one directly."""
        if self.kind is CallbackKind.OPTION:
            return f"{self.step_key}_{self.option}"
        if self.kind in (CallbackKind.GOTO, CallbackKind.ACTION):
            return self.step_key
        return None


def encode_start_scenario(scenario_id: int) -> str:
    return f"start_scenario_{scenario_id}"


def encode_goto(scenario_id: int, step_key: str) -> str:
    return f"goto_{scenario_id}_{step_key}"


def encode_option(scenario_id: int, step_key: str, option: int) -> str:
    return f"option_{scenario_id}_{step_key}_{option}"


def encode_action(scenario_id: int, action_key: str) -> str:
    return f"action_{scenario_id}_{action_key}"


def encode_back(scenario_id: int, step_key: str) -> str:
    return f"back_{scenario_id}_{step_key}"


def encode_email_confirm(email: str) -> str:
    return f"email_confirm_{email}"


def fits_transport(token: str) -> bool:
    return len(token.encode("utf-8")) <= MAX_TOKEN_BYTES


def _parse_id(raw: str) -> Optional[int]:
    if not (raw.isascii() and raw.isdigit()):
        return None
    return int(raw)


def decode(token: str) -> Optional[CallbackAction]:
    """Decode ``token`` into a :class:`CallbackAction` or ``None``."""

    if not isinstance(token, str) or not token:
        return None

    bare = _BARE_KINDS.get(token)
    if bare is not None:
        return CallbackAction(kind=bare)

    if token.startswith("email_confirm_"):
        email = token[len("email_confirm_"):]
        if not email:
            return None
        return CallbackAction(kind=CallbackKind.EMAIL_CONFIRM, email=email)

    if token.startswith("start_scenario_"):
        scenario_id = _parse_id(token[len("start_scenario_"):])
        if scenario_id is None:
            return None
        return CallbackAction(kind=CallbackKind.START_SCENARIO, scenario_id=scenario_id)

    parts = token.split("_", 2)
    if len(parts) != 3:
        return None
    tag, raw_id, rest = parts
    kind = _STEP_KINDS.get(tag)
    scenario_id = _parse_id(raw_id)
    if kind is None or scenario_id is None or not rest:
        return None

    if kind is CallbackKind.OPTION:
        step_key, sep, raw_option = rest.rpartition("_")
        option = _parse_id(raw_option)
        if not sep or not step_key or option is None:
            return None
        return CallbackAction(
            kind=kind, scenario_id=scenario_id, step_key=step_key, option=option
        )

    return CallbackAction(kind=kind, scenario_id=scenario_id, step_key=rest)
