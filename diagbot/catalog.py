"""Scenario catalog: YAML loading, validation and seeding."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .errors import CatalogValidationError
from .navigation import child_label, children_of, parse_numbered_options, resolve_parent_key
from .persistence import ROOT_STEP_KEY, DialogueRepository, Scenario, StateType, Step

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "scenarios.yaml"


class CatalogStep(BaseModel):
    key: str
    message: str
    final: bool = False
    next: Optional[str] = None
    label: Optional[str] = None
    parent: Optional[str] = None
    state_type: Optional[StateType] = None

    def resolved_state_type(self) -> StateType:
        if self.state_type is not None:
            return self.state_type
        if self.key == ROOT_STEP_KEY:
            return StateType.START
        if self.final:
            return StateType.FINAL
        return StateType.INTERMEDIATE

    def to_step(self, scenario_id: int = 0) -> Step:
        return Step(
            scenario_id=scenario_id,
            step_key=self.key,
            message=self.message,
            is_final=self.final,
            next_step_key=self.next,
            state_type=self.resolved_state_type(),
            label=self.label,
            parent_step_key=self.parent,
        )


class CatalogScenario(BaseModel):
    name: str
    display_name: str
    trigger_keywords: List[str] = Field(default_factory=list)
    description: str = ""
    problems: List[str] = Field(default_factory=list)
    steps: List[CatalogStep] = Field(default_factory=list)

    def to_scenario(self, scenario_id: int = 0) -> Scenario:
        return Scenario(
            id=scenario_id,
            name=self.name,
            display_name=self.display_name,
            trigger_keywords=list(self.trigger_keywords),
            description=self.description,
            problem_keys=list(self.problems),
        )

    def to_steps(self, scenario_id: int = 0) -> List[Step]:
        return [s.to_step(scenario_id) for s in self.steps]


class Catalog(BaseModel):
    scenarios: List[CatalogScenario] = Field(default_factory=list)


class CatalogIssue(BaseModel):
    """One problem found in a scenario tree."""

    scenario: str
    step_key: Optional[str] = None
    message: str

    def __str__(self) -> str:
        where = f"{self.scenario}/{self.step_key}" if self.step_key else self.scenario
        return f"{where}: {self.message}"


def load_catalog(path: Optional[str | Path] = None) -> Catalog:
    """Read a catalog from YAML, defaulting to the bundled scenarios."""
    catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
    with open(catalog_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return Catalog(**data)


def _validate_scenario(scenario: CatalogScenario) -> List[CatalogIssue]:
    issues: List[CatalogIssue] = []

    def issue(message: str, step_key: Optional[str] = None) -> None:
        issues.append(CatalogIssue(scenario=scenario.name, step_key=step_key, message=message))

    keys = [s.key for s in scenario.steps]
    seen: set[str] = set()
    for key in keys:
        if key in seen:
            issue("duplicate step key", key)
        seen.add(key)

    if not scenario.steps:
        issue("scenario has no steps")
        return issues

    steps = scenario.to_steps()
    by_key = {s.step_key: s for s in steps}
    root = by_key.get(ROOT_STEP_KEY)
    if root is None:
        issue(f"missing '{ROOT_STEP_KEY}' step")
    elif root.state_type is not StateType.START:
        issue(f"root step has state_type '{root.state_type.value}', expected 'start'", ROOT_STEP_KEY)
    elif root.is_final:
        issue("root step is final", ROOT_STEP_KEY)

    for key in scenario.problems:
        if key not in by_key:
            issue(f"problem key '{key}' is not a step")

    for step in steps:
        if step.is_final and step.state_type is not StateType.FINAL:
            issue("final step does not have state_type 'final'", step.step_key)
        if step.state_type is StateType.FINAL and not step.is_final:
            issue("state_type 'final' on a step that is not final", step.step_key)
        if step.next_step_key and step.next_step_key not in by_key:
            issue(f"next step '{step.next_step_key}' does not exist", step.step_key)

        parent_key = resolve_parent_key(step, keys)
        if parent_key is None:
            continue
        if parent_key not in by_key:
            issue(f"parent '{parent_key}' does not exist", step.step_key)
            continue
        if step.step_key in scenario.problems and parent_key == ROOT_STEP_KEY:
            if not step.label:
                issue("problem step has no label", step.step_key)
            continue
        if child_label(step, parent_key) is None:
            issue("no button label for this branch", step.step_key)

    if root is not None:
        reachable = _reachable_keys(scenario, steps)
        for step in steps:
            if step.step_key not in reachable:
                issue("step is not reachable from root", step.step_key)
    return issues


def _reachable_keys(scenario: CatalogScenario, steps: List[Step]) -> set[str]:
    """Keys reachable from ``root`` through buttons and ``next`` links.

    Mirrors the buttons ``Navigator.buttons_for`` shows for each step type.
    """
    by_key = {s.step_key: s for s in steps}
    reachable: set[str] = set()
    pending = [ROOT_STEP_KEY]
    while pending:
        key = pending.pop()
        if key in reachable or key not in by_key:
            continue
        reachable.add(key)
        step = by_key[key]
        if step.next_step_key:
            pending.append(step.next_step_key)
        if step.state_type is StateType.FINAL:
            continue
        if step.state_type is StateType.START:
            problems = [k for k in scenario.problems if k in by_key]
            if problems:
                pending.extend(problems)
                continue
            options = parse_numbered_options(step.message)
            if options:
                pending.extend(f"{key}_{n}" for n, _ in options)
                continue
        pending.extend(child.step_key for child in children_of(key, steps))
    return reachable


def validate_catalog(catalog: Catalog) -> List[CatalogIssue]:
    """Return every integrity problem found in ``catalog``."""
    issues: List[CatalogIssue] = []
    names: set[str] = set()
    for scenario in catalog.scenarios:
        if scenario.name in names:
            issues.append(CatalogIssue(scenario=scenario.name, message="duplicate scenario name"))
        names.add(scenario.name)
        issues.extend(_validate_scenario(scenario))
    for item in issues:
        logger.warning(f"Catalog issue: {item}")
    return issues


async def seed_repository(
    repository: DialogueRepository, catalog: Catalog, strict: bool = True
) -> List[Scenario]:
    """Load ``catalog`` into ``repository``, replacing scenarios by name.

    With ``strict`` set, any validation issue aborts seeding.
    """
    issues = validate_catalog(catalog)
    if issues and strict:
        raise CatalogValidationError(issues)
    stored = []
    for scenario in catalog.scenarios:
        saved = await repository.replace_scenario(scenario.to_scenario(), scenario.to_steps())
        logger.info(f"Seeded scenario '{saved.name}' ({len(scenario.steps)} steps)")
        stored.append(saved)
    return stored
