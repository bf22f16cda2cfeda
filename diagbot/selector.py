from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .nlu import ScenarioClassifier, ScenarioDescriptor
from .persistence import DialogueRepository, Scenario

logger = logging.getLogger(__name__)


class ScenarioSelector:
    """Pick a scenario for free text.

    The classifier, when configured, is asked first; any failure or timeout
    falls through to trigger-keyword matching.
    """

    def __init__(
        self,
        repository: DialogueRepository,
        classifier: Optional[ScenarioClassifier] = None,
        timeout: float = 5.0,
    ) -> None:
        self._repository = repository
        self._classifier = classifier
        self._timeout = timeout

    async def select(self, text: str) -> Scenario | None:
        if not text or not text.strip():
            return None
        if self._classifier is not None:
            scenario = await self._classify(text)
            if scenario is not None:
                return scenario
        return await self._repository.get_scenario_by_trigger_keyword(text)

    async def _classify(self, text: str) -> Scenario | None:
        scenarios = await self._repository.list_scenarios()
        descriptors = [ScenarioDescriptor.from_scenario(s) for s in scenarios]
        try:
            name = await asyncio.wait_for(
                self._classifier.classify(text, descriptors), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Scenario classifier timed out after {self._timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Scenario classifier failed: {e}")
            return None
        if name is None:
            return None
        for scenario in scenarios:
            if scenario.name == name:
                logger.info(f"Classifier selected scenario '{name}'")
                return scenario
        return None
