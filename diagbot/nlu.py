"""LLM-backed scenario classification."""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, Optional, Protocol, Sequence, Union

from pydantic import BaseModel, Field
from pydantic_ai import Agent
from pydantic_ai.models import Model

from .config import NLUConfig
from .persistence import Scenario

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "Ты классификатор обращений в техподдержку электроинструментов. "
    "Определи, к какому сценарию диагностики относится сообщение пользователя. "
    'Ответь только JSON вида {"scenario": "name"} или {"scenario": null}, '
    "если ни один сценарий не подходит."
)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_OBJECT = re.compile(r"\{.*?\}", re.DOTALL)


class ScenarioDescriptor(BaseModel):
    """What the classifier is told about one scenario."""

    name: str
    keywords: list[str] = Field(default_factory=list)
    description: str = ""

    @classmethod
    def from_scenario(cls, scenario: Scenario) -> "ScenarioDescriptor":
        return cls(
            name=scenario.name,
            keywords=list(scenario.trigger_keywords),
            description=scenario.description,
        )


class ScenarioClassifier(Protocol):
    """Maps free text to a scenario name, or ``None``."""

    async def classify(
        self, text: str, scenarios: Sequence[ScenarioDescriptor]
    ) -> Optional[str]:
        ...


def build_prompt(text: str, scenarios: Iterable[ScenarioDescriptor]) -> str:
    lines = ["Доступные сценарии:"]
    for s in scenarios:
        lines.append(f"- {s.name} ({', '.join(s.keywords)}): {s.description}")
    lines.append("")
    lines.append(f"Сообщение пользователя: {text}")
    return "\n".join(lines)


def parse_classifier_reply(reply: str, known_names: Iterable[str]) -> Optional[str]:
    """Extract a known scenario name from a model reply.

    Accepts bare JSON, JSON inside a code fence or surrounded by prose, and
    a bare scenario name. Unknown names and ``null`` yield ``None``.
    """
    known = set(known_names)
    if not reply:
        return None
    body = reply.strip()
    fenced = _FENCE.search(body)
    if fenced:
        body = fenced.group(1).strip()

    if body in known:
        return body

    for candidate in [body] + _OBJECT.findall(body):
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(data, dict) or "scenario" not in data:
            continue
        name = data["scenario"]
        if isinstance(name, str) and name in known:
            return name
        if name is not None:
            logger.info(f"Classifier returned unknown scenario {name!r}")
        return None
    logger.info(f"Unparseable classifier reply: {reply[:200]!r}")
    return None


def build_model(config: NLUConfig) -> Model:
    """OpenAI-compatible chat model for ``config``."""
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    provider = OpenAIProvider(base_url=config.base_url, api_key=config.api_key)
    return OpenAIChatModel(config.model, provider=provider)


class LLMScenarioClassifier:
    """Classifier that asks a chat model for the matching scenario."""

    def __init__(self, model: Union[str, Model]) -> None:
        self.agent: Agent[None, str] = Agent(
            model, output_type=str, system_prompt=SYSTEM_PROMPT
        )

    @classmethod
    def from_config(cls, config: NLUConfig) -> "LLMScenarioClassifier":
        return cls(build_model(config))

    async def classify(
        self, text: str, scenarios: Sequence[ScenarioDescriptor]
    ) -> Optional[str]:
        if not scenarios:
            return None
        result = await self.agent.run(build_prompt(text, scenarios))
        name = parse_classifier_reply(result.output, (s.name for s in scenarios))
        logger.debug(f"Classifier picked {name!r} for {text[:80]!r}")
        return name
