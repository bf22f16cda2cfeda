"""Data models for persisted dialogue state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

ROOT_STEP_KEY = "root"


class StateType(str, Enum):
    """Governs which buttons a step renders."""

    START = "start"
    INTERMEDIATE = "intermediate"
    FINAL = "final"


class OverlayState(str, Enum):
    """States of the lead-capture overlay."""

    IDLE = "idle"
    OFFERING_SITE_LINK = "offering_site_link"
    OFFERING_SITE_POST = "offering_site_post"
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_EMAIL_CONSENT = "awaiting_email_consent"


class Scenario(BaseModel):
    """One diagnostic decision tree for a tool category."""

    id: int
    name: str
    display_name: str
    trigger_keywords: List[str] = Field(default_factory=list)
    description: str = ""
    problem_keys: List[str] = Field(default_factory=list)

    def matches(self, text: str) -> bool:
        """Case-insensitive substring test against the trigger keywords."""
        lowered = text.lower()
        return any(kw and kw.lower() in lowered for kw in self.trigger_keywords)


class Step(BaseModel):
    """One node of a scenario tree."""

    id: Optional[int] = None
    scenario_id: int
    step_key: str
    message: str
    is_final: bool = False
    next_step_key: Optional[str] = None
    state_type: StateType = StateType.INTERMEDIATE
    label: Optional[str] = None
    parent_step_key: Optional[str] = None


class Session(BaseModel):
    """A user's position inside an active diagnosis."""

    user_id: int
    scenario_id: Optional[int] = None
    current_step_key: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def active(self) -> bool:
        return self.scenario_id is not None and self.current_step_key is not None


class User(BaseModel):
    """Per-user overlay state."""

    user_id: int
    message_count: int = 0
    fsm_state: OverlayState = OverlayState.IDLE
    email: Optional[str] = None
    consent_granted: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class MessageRecord(BaseModel):
    """One logged incoming or outgoing message."""

    id: Optional[int] = None
    user_id: int
    text: str
    direction: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
