import pytest
import pytest_asyncio

import diagbot.persistence as persistence
from diagbot.catalog import load_catalog, seed_repository
from diagbot.config import DiagbotConfig, OverlayConfig
from diagbot.engine import DialogueEngine
from diagbot.persistence import InMemoryDialogueRepository


@pytest.fixture(autouse=True)
def _reset_repository_singleton(monkeypatch):
    for name in ("DIAGBOT_CONFIG", "DIAGBOT_DATABASE_URL", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest_asyncio.fixture
async def repository():
    repo = InMemoryDialogueRepository()
    await seed_repository(repo, load_catalog())
    return repo


@pytest.fixture
def config():
    return DiagbotConfig(
        rate_limit_per_minute=1000,
        overlay=OverlayConfig(trigger_message_count=4, site_url="https://tools.example"),
    )


@pytest.fixture
def engine(repository, config):
    return DialogueEngine(repository, config)
