from datetime import datetime, timedelta

import pytest

from diagbot.persistence import (
    InMemoryDialogueRepository,
    OverlayState,
    Scenario,
    SQLiteDialogueRepository,
    StateType,
    Step,
)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryDialogueRepository()
    else:
        repo = SQLiteDialogueRepository(tmp_path / "bot.db")
        yield repo
        repo.close()


def _grinder(scenario_id=0):
    scenario = Scenario(
        id=scenario_id,
        name="diagnose_angle_grinder",
        display_name="Угловая шлифовальная машина",
        trigger_keywords=["болгарка", "УШМ"],
        description="Диагностика УШМ",
        problem_keys=["no_power"],
    )
    steps = [
        Step(scenario_id=scenario_id, step_key="root", message="Выберите проблему:", state_type=StateType.START),
        Step(scenario_id=scenario_id, step_key="no_power", message="Не включается", label="Не включается"),
        Step(
            scenario_id=scenario_id,
            step_key="no_power_indicator_dark",
            message="Зарядите аккумулятор",
            is_final=True,
            state_type=StateType.FINAL,
        ),
    ]
    return scenario, steps


@pytest.mark.asyncio
async def test_catalog_queries(repo):
    scenario, steps = _grinder()
    stored = await repo.replace_scenario(scenario, steps)
    jigsaw = await repo.replace_scenario(
        Scenario(id=0, name="diagnose_jigsaw", display_name="Электролобзик", trigger_keywords=["лобзик"]),
        [Step(scenario_id=0, step_key="root", message="Лобзик", state_type=StateType.START)],
    )

    assert stored.id != jigsaw.id
    assert (await repo.get_scenario(stored.id)).problem_keys == ["no_power"]
    assert [s.name for s in await repo.list_scenarios()] == ["diagnose_angle_grinder", "diagnose_jigsaw"]

    match = await repo.get_scenario_by_trigger_keyword("Моя Болгарка и лобзик")
    assert match.id == stored.id
    assert (await repo.get_scenario_by_trigger_keyword("ушм не крутит")).id == stored.id
    assert await repo.get_scenario_by_trigger_keyword("дрель") is None

    step = await repo.get_step(stored.id, "no_power_indicator_dark")
    assert step.is_final
    assert step.state_type is StateType.FINAL
    assert await repo.get_step(stored.id, "missing") is None
    assert [s.step_key for s in await repo.list_steps(stored.id)] == [
        "root",
        "no_power",
        "no_power_indicator_dark",
    ]
    assert (await repo.get_step(stored.id, "no_power")).label == "Не включается"


@pytest.mark.asyncio
async def test_replace_scenario_keeps_id_and_replaces_steps(repo):
    scenario, steps = _grinder()
    first = await repo.replace_scenario(scenario, steps)
    second = await repo.replace_scenario(scenario, steps[:1])
    assert first.id == second.id
    assert len(await repo.list_steps(first.id)) == 1


@pytest.mark.asyncio
async def test_session_lifecycle(repo):
    assert await repo.get_session(1) is None
    await repo.put_session(1, 3, "root")
    session = await repo.get_session(1)
    assert session.active
    assert (session.scenario_id, session.current_step_key) == (3, "root")

    await repo.put_session(1, 3, "no_power")
    assert (await repo.get_session(1)).current_step_key == "no_power"

    await repo.delete_session(1)
    assert await repo.get_session(1) is None
    await repo.delete_session(1)


@pytest.mark.asyncio
async def test_user_overlay_fields(repo):
    assert await repo.get_user(5) is None
    user = await repo.get_or_create_user(5)
    assert user.fsm_state is OverlayState.IDLE
    assert user.message_count == 0

    assert await repo.increment_message_count(5) == 1
    assert await repo.increment_message_count(5) == 2
    await repo.reset_message_count(5)
    assert (await repo.get_user(5)).message_count == 0

    await repo.set_overlay_state(5, OverlayState.AWAITING_EMAIL)
    await repo.set_email(5, "ivan@mail.ru", False)
    user = await repo.get_user(5)
    assert user.fsm_state is OverlayState.AWAITING_EMAIL
    assert user.email == "ivan@mail.ru"
    assert user.consent_granted is False

    await repo.set_email(5, "ivan@mail.ru", True)
    assert (await repo.get_user(5)).consent_granted is True


@pytest.mark.asyncio
async def test_increment_creates_missing_user(repo):
    assert await repo.increment_message_count(9) == 1
    assert (await repo.get_user(9)).message_count == 1


@pytest.mark.asyncio
async def test_rate_window(repo):
    assert await repo.check_and_record_rate(1, 2, now=1000)
    assert await repo.check_and_record_rate(1, 2, now=1010)
    assert not await repo.check_and_record_rate(1, 2, now=1020)
    assert await repo.check_and_record_rate(1, 2, now=1071)


@pytest.mark.asyncio
async def test_message_log_and_stats(repo):
    await repo.get_or_create_user(1)
    await repo.get_or_create_user(2)
    await repo.set_overlay_state(2, OverlayState.AWAITING_EMAIL)
    await repo.log_message(1, "болгарка", "incoming")
    await repo.log_message(1, "Выберите проблему:", "outgoing")
    await repo.log_message(2, "привет", "incoming")

    assert await repo.count_messages() == 3
    since = datetime.utcnow() - timedelta(hours=24)
    assert await repo.count_active_users(since) == 2
    assert await repo.count_active_users(datetime.utcnow() + timedelta(hours=1)) == 0
    assert await repo.count_users_by_overlay_state() == {"idle": 1, "awaiting_email": 1}
