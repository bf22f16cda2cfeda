"""Tree navigation over the step-key hierarchy of a scenario."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence

from . import messages
from .callbacks import encode_back, encode_goto, encode_option, encode_start_scenario
from .contracts import Button
from .persistence import ROOT_STEP_KEY, DialogueRepository, Scenario, StateType, Step

logger = logging.getLogger(__name__)

# Button labels for branch suffixes, checked on whole ``_`` segments so that
# ``not_ok`` never falls through to ``ok``.
SUFFIX_LABELS: dict[str, str] = {
    "not_ok": messages.NO_LABEL,
    "no_reaction": messages.NO_LABEL,
    "not_hot": messages.NO_LABEL,
    "not_level": "На разной высоте",
    "ok": messages.YES_LABEL,
    "lit": messages.YES_LABEL,
    "reacts": messages.YES_LABEL,
    "turns": messages.YES_LABEL,
    "dark": messages.NO_LABEL,
    "no": messages.NO_LABEL,
    "hot": messages.YES_LABEL,
    "stuck": messages.NO_LABEL,
    "broken": "Повреждён",
    "problem": "Есть проблема",
    "triggered": "Сработала",
    "old": "Старый",
    "new": "Новый",
    "clear": "Чистый",
    "blocked": "Заблокирован",
}

_NUMBERED_LINE = re.compile(r"^\s*(\d+)\.\s*(\S.*)$")
_FALLBACK_LABEL_LENGTH = 50


def previous_step_key(step_key: str) -> str:
    """Derive the parent path by dropping the last ``_`` segment.

    Pure string transform; the result may not name an existing step.
    """
    parent, sep, _ = step_key.rpartition("_")
    if not sep or not parent or parent == ROOT_STEP_KEY:
        return ROOT_STEP_KEY
    return parent


def resolve_parent_key(step: Step, known_keys: Iterable[str]) -> Optional[str]:
    """Return the key of ``step``'s parent, or ``None`` for the root.

    An explicit ``parent_step_key`` wins. Otherwise segments are dropped until
    the derived key exists, ending at ``root``.
    """
    if step.step_key == ROOT_STEP_KEY:
        return None
    if step.parent_step_key:
        return step.parent_step_key
    known = set(known_keys)
    key = previous_step_key(step.step_key)
    while key != ROOT_STEP_KEY and key not in known:
        key = previous_step_key(key)
    return key


def branch_suffix(child_key: str, parent_key: str) -> str:
    prefix = parent_key + "_"
    if child_key.startswith(prefix):
        return child_key[len(prefix):]
    return child_key


def label_for_suffix(suffix: str) -> Optional[str]:
    """Look up the fixed label for a branch suffix."""
    for pattern in sorted(SUFFIX_LABELS, key=lambda p: p.count("_"), reverse=True):
        if suffix == pattern or suffix.endswith("_" + pattern):
            return SUFFIX_LABELS[pattern]
    return None


def fallback_label(step: Step) -> str:
    first_line = step.message.strip().splitlines()[0] if step.message.strip() else step.step_key
    return first_line[:_FALLBACK_LABEL_LENGTH]


def child_label(child: Step, parent_key: str) -> Optional[str]:
    return child.label or label_for_suffix(branch_suffix(child.step_key, parent_key))


def parse_numbered_options(message: str) -> List[tuple[int, str]]:
    """Parse a legacy ``1. ...`` / ``2. ...`` option list embedded in a message."""
    options = []
    for line in message.splitlines():
        match = _NUMBERED_LINE.match(line)
        if match:
            options.append((int(match.group(1)), match.group(2).strip()))
    return options


def children_of(step_key: str, steps: Sequence[Step]) -> List[Step]:
    """Direct children of ``step_key`` in storage order."""
    known = [s.step_key for s in steps]
    return [
        s
        for s in steps
        if s.step_key != step_key and resolve_parent_key(s, known) == step_key
    ]


class Navigator:
    """Repository-backed navigation: first step, back target and buttons."""

    def __init__(self, repository: DialogueRepository) -> None:
        self._repository = repository

    async def first_step(self, scenario_id: int) -> Step | None:
        """Return the ``root`` step, else the first stored step."""
        root = await self._repository.get_step(scenario_id, ROOT_STEP_KEY)
        if root is not None:
            return root
        steps = await self._repository.list_steps(scenario_id)
        if not steps:
            logger.error(f"Scenario {scenario_id} has no steps")
            return None
        logger.error(
            f"Scenario {scenario_id} has no '{ROOT_STEP_KEY}' step; "
            f"falling back to '{steps[0].step_key}'"
        )
        return steps[0]

    async def back_target(self, scenario_id: int, step_key: str) -> Step | None:
        """Step to show when Back is pressed on ``step_key``.

        ``None`` means the user should return to scenario selection.
        """
        if step_key == ROOT_STEP_KEY:
            return None
        steps = await self._repository.list_steps(scenario_id)
        known = [s.step_key for s in steps]
        current = next((s for s in steps if s.step_key == step_key), None)
        if current is None:
            current = Step(scenario_id=scenario_id, step_key=step_key, message="")
        parent_key = resolve_parent_key(current, known)
        if parent_key is None:
            return None
        parent = next((s for s in steps if s.step_key == parent_key), None)
        if parent is None:
            logger.warning(
                f"Back from {scenario_id}/{step_key}: parent '{parent_key}' does not exist"
            )
            if parent_key != ROOT_STEP_KEY:
                return await self.back_target(scenario_id, parent_key)
            return None
        return parent

    async def buttons_for(self, step: Step, scenario: Scenario | None = None) -> List[Button]:
        """Build the buttons shown under ``step``."""
        scenario_id = step.scenario_id
        back = Button(label=messages.BACK_LABEL, callback=encode_back(scenario_id, step.step_key))

        if step.state_type is StateType.FINAL:
            return [back]

        if step.state_type is StateType.START:
            if scenario is None:
                scenario = await self._repository.get_scenario(scenario_id)
            buttons = await self._problem_buttons(step, scenario)
            if buttons:
                return buttons + [back]
            options = parse_numbered_options(step.message)
            if options:
                return [
                    Button(label=text, callback=encode_option(scenario_id, step.step_key, n))
                    for n, text in options
                ] + [back]

        return await self._branch_buttons(step) + [back]

    async def _problem_buttons(self, step: Step, scenario: Scenario | None) -> List[Button]:
        if scenario is None or not scenario.problem_keys:
            return []
        buttons = []
        for key in scenario.problem_keys:
            problem = await self._repository.get_step(step.scenario_id, key)
            if problem is None:
                logger.warning(f"Scenario {scenario.name}: problem step '{key}' is missing")
                continue
            buttons.append(
                Button(
                    label=problem.label or fallback_label(problem),
                    callback=encode_goto(step.scenario_id, key),
                )
            )
        return buttons

    async def _branch_buttons(self, step: Step) -> List[Button]:
        steps = await self._repository.list_steps(step.scenario_id)
        buttons = []
        for child in children_of(step.step_key, steps):
            label = child_label(child, step.step_key)
            if label is None:
                logger.warning(
                    f"No label for branch '{child.step_key}' of scenario "
                    f"{step.scenario_id}; using its message"
                )
                label = fallback_label(child)
            buttons.append(
                Button(label=label, callback=encode_goto(step.scenario_id, child.step_key))
            )
        return buttons

    async def next_step(self, step: Step) -> Step | None:
        """Follow ``next_step_key`` for linear steps."""
        if not step.next_step_key:
            return None
        target = await self._repository.get_step(step.scenario_id, step.next_step_key)
        if target is None:
            logger.warning(
                f"Step {step.scenario_id}/{step.step_key} points to missing "
                f"'{step.next_step_key}'"
            )
        return target

    async def scenario_buttons(self) -> List[Button]:
        """One ``start_scenario`` button per stored scenario."""
        return [
            Button(label=s.display_name, callback=encode_start_scenario(s.id))
            for s in await self._repository.list_scenarios()
        ]
