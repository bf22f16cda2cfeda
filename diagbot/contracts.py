"""Reply contracts exchanged between the engine and a transport."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class Button(BaseModel):
    """One inline button: a label and the callback token it carries."""

    label: str
    callback: str


class EngineReply(BaseModel):
    """What the transport should show for one handled event.

    ``handled=False`` means nothing matched; the transport decides on a
    generic fallback message.
    """

    text: str = ""
    buttons: List[Button] = Field(default_factory=list)
    handled: bool = True

    @classmethod
    def unhandled(cls) -> "EngineReply":
        return cls(handled=False)

    def followed_by(self, other: "EngineReply") -> "EngineReply":
        """Append ``other``'s text and use its buttons."""
        if not other.handled:
            return self
        text = f"{self.text}\n\n{other.text}" if self.text else other.text
        return EngineReply(text=text, buttons=other.buttons, handled=True)
