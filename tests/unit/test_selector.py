import asyncio

import pytest

from diagbot.selector import ScenarioSelector


class StaticClassifier:
    def __init__(self, answer=None, error=None, delay=0.0):
        self.answer = answer
        self.error = error
        self.delay = delay
        self.calls = []

    async def classify(self, text, scenarios):
        self.calls.append((text, [s.name for s in scenarios]))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.mark.asyncio
async def test_keyword_match_is_case_insensitive(repository):
    selector = ScenarioSelector(repository)
    scenario = await selector.select("Моя БОЛГАРКА не включается")
    assert scenario.name == "diagnose_angle_grinder"


@pytest.mark.asyncio
async def test_keyword_match_prefers_lowest_id(repository):
    selector = ScenarioSelector(repository)
    # matches both the angle grinder (id 1) and the jigsaw (id 3)
    scenario = await selector.select("болгарка и лобзик")
    assert scenario.id == 1


@pytest.mark.asyncio
async def test_no_match_returns_none(repository):
    selector = ScenarioSelector(repository)
    assert await selector.select("привет") is None
    assert await selector.select("   ") is None


@pytest.mark.asyncio
async def test_classifier_answer_wins_over_keywords(repository):
    classifier = StaticClassifier(answer="diagnose_jigsaw")
    selector = ScenarioSelector(repository, classifier)
    scenario = await selector.select("болгарка")
    assert scenario.name == "diagnose_jigsaw"
    assert len(classifier.calls[0][1]) == 5


@pytest.mark.asyncio
async def test_classifier_no_opinion_falls_back_to_keywords(repository):
    selector = ScenarioSelector(repository, StaticClassifier(answer=None))
    scenario = await selector.select("газонокосилка не косит")
    assert scenario.name == "diagnose_corded_lawnmower"


@pytest.mark.asyncio
async def test_classifier_unknown_name_falls_back(repository):
    selector = ScenarioSelector(repository, StaticClassifier(answer="diagnose_toaster"))
    scenario = await selector.select("шуруповёрт")
    assert scenario.name == "diagnose_cordless_drill"


@pytest.mark.asyncio
async def test_classifier_error_fails_open(repository):
    selector = ScenarioSelector(repository, StaticClassifier(error=RuntimeError("boom")))
    scenario = await selector.select("торцовка")
    assert scenario.name == "diagnose_miter_saw"


@pytest.mark.asyncio
async def test_classifier_timeout_fails_open(repository):
    classifier = StaticClassifier(answer="diagnose_jigsaw", delay=1.0)
    selector = ScenarioSelector(repository, classifier, timeout=0.05)
    scenario = await selector.select("болгарка")
    assert scenario.name == "diagnose_angle_grinder"
