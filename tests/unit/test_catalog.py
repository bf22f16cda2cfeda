"""Tests for catalog loading, validation and seeding."""

import pytest

from diagbot.catalog import (
    Catalog,
    CatalogScenario,
    CatalogStep,
    load_catalog,
    seed_repository,
    validate_catalog,
)
from diagbot.errors import CatalogValidationError
from diagbot.persistence import InMemoryDialogueRepository, SQLiteDialogueRepository, StateType


def _scenario(steps, problems=()):
    return CatalogScenario(
        name="test_tool",
        display_name="Test tool",
        trigger_keywords=["тест"],
        problems=list(problems),
        steps=[CatalogStep(**s) for s in steps],
    )


def _messages(issues):
    return [i.message for i in issues]


def test_bundled_catalog_is_valid():
    catalog = load_catalog()
    assert [s.name for s in catalog.scenarios] == [
        "diagnose_angle_grinder",
        "diagnose_miter_saw",
        "diagnose_jigsaw",
        "diagnose_cordless_drill",
        "diagnose_corded_lawnmower",
    ]
    assert validate_catalog(catalog) == []


def test_state_types_are_derived():
    grinder = load_catalog().scenarios[0]
    steps = {s.step_key: s for s in grinder.to_steps()}
    assert steps["root"].state_type is StateType.START
    assert steps["no_power"].state_type is StateType.INTERMEDIATE
    assert steps["no_power_indicator_dark"].state_type is StateType.FINAL
    assert steps["stops_immediately"].parent_step_key == "stops_during_work"


def test_missing_root_is_reported():
    catalog = Catalog(scenarios=[_scenario([{"key": "start", "message": "x"}])])
    assert "missing 'root' step" in _messages(validate_catalog(catalog))


def test_duplicate_keys_and_unknown_problems_are_reported():
    catalog = Catalog(
        scenarios=[
            _scenario(
                [
                    {"key": "root", "message": "r"},
                    {"key": "hum", "label": "Гудит", "message": "h"},
                    {"key": "hum", "label": "Гудит", "message": "h"},
                ],
                problems=["hum", "smoke"],
            )
        ]
    )
    messages = _messages(validate_catalog(catalog))
    assert "duplicate step key" in messages
    assert "problem key 'smoke' is not a step" in messages


def test_unresolved_parent_and_next_are_reported():
    catalog = Catalog(
        scenarios=[
            _scenario(
                [
                    {"key": "root", "message": "r"},
                    {"key": "orphan", "parent": "ghost", "label": "?", "message": "o"},
                    {"key": "linear", "label": "L", "next": "nowhere", "message": "l"},
                ]
            )
        ]
    )
    messages = _messages(validate_catalog(catalog))
    assert "parent 'ghost' does not exist" in messages
    assert "next step 'nowhere' does not exist" in messages


def test_unlabeled_branch_is_reported():
    catalog = Catalog(
        scenarios=[
            _scenario(
                [
                    {"key": "root", "message": "r"},
                    {"key": "hum", "label": "Гудит", "message": "h"},
                    {"key": "hum_cracked", "final": True, "message": "c"},
                    {"key": "hum_ok", "final": True, "message": "ok"},
                ],
                problems=["hum"],
            )
        ]
    )
    issues = validate_catalog(catalog)
    assert [(i.step_key, i.message) for i in issues] == [
        ("hum_cracked", "no button label for this branch")
    ]


def test_final_root_is_reported():
    catalog = Catalog(scenarios=[_scenario([{"key": "root", "final": True, "message": "r"}])])
    assert "root step is final" in _messages(validate_catalog(catalog))


@pytest.mark.asyncio
async def test_strict_seed_rejects_invalid_catalog():
    catalog = Catalog(scenarios=[_scenario([{"key": "start", "message": "x"}])])
    with pytest.raises(CatalogValidationError) as exc:
        await seed_repository(InMemoryDialogueRepository(), catalog)
    assert exc.value.issues
    assert "missing 'root' step" in str(exc.value)


@pytest.mark.asyncio
async def test_lenient_seed_loads_invalid_catalog():
    catalog = Catalog(scenarios=[_scenario([{"key": "start", "message": "x"}])])
    repo = InMemoryDialogueRepository()
    stored = await seed_repository(repo, catalog, strict=False)
    assert stored[0].name == "test_tool"


@pytest.mark.asyncio
async def test_seed_is_idempotent(tmp_path):
    repo = SQLiteDialogueRepository(tmp_path / "bot.db")
    catalog = load_catalog()
    first = await seed_repository(repo, catalog)
    second = await seed_repository(repo, catalog)

    assert [s.id for s in first] == [s.id for s in second]
    assert len(await repo.list_scenarios()) == 5
    steps = await repo.list_steps(first[0].id)
    assert len(steps) == len(catalog.scenarios[0].steps)
    repo.close()


def test_load_catalog_from_custom_path(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(
        """
scenarios:
  - name: custom
    display_name: Своё
    steps:
      - key: root
        message: Привет
""",
        encoding="utf-8",
    )
    catalog = load_catalog(path)
    assert catalog.scenarios[0].display_name == "Своё"
    assert validate_catalog(catalog) == []


def test_misspelled_branch_is_reported_as_unreachable():
    catalog = Catalog(
        scenarios=[
            _scenario(
                [
                    {"key": "root", "message": "r"},
                    {"key": "no_power", "label": "Не включается", "message": "p"},
                    {"key": "no_powr_indicator_dark", "final": True, "message": "d"},
                ],
                problems=["no_power"],
            )
        ]
    )
    issues = validate_catalog(catalog)
    assert [(i.step_key, i.message) for i in issues] == [
        ("no_powr_indicator_dark", "step is not reachable from root")
    ]


def test_linear_and_numbered_steps_are_reachable():
    catalog = Catalog(
        scenarios=[
            _scenario(
                [
                    {"key": "root", "message": "Выберите:\n1. Гудит\n2. Искрит"},
                    {"key": "root_1", "label": "Гудит", "next": "check_brushes", "message": "h"},
                    {"key": "root_2", "label": "Искрит", "final": True, "message": "s"},
                    {"key": "check_brushes", "parent": "root_1", "label": "Щётки", "final": True, "message": "b"},
                ]
            )
        ]
    )
    assert validate_catalog(catalog) == []
