from pathlib import Path
from typing import Dict, Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from parley.config import AppSettings
from parley.engine import Engine
from parley.main import create_app
from tests.fakes import FakeProvider


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        ollama_base_url="http://ollama.test",
        default_model=None,
        max_history_pairs=10,
        registry_ttl_s=0.0,
        token_rate_interval_s=0.01,
        session_db_path=str(tmp_path / "sessions.db"),
        host="127.0.0.1",
        port=8400,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def engine_factory(tmp_path: Path):
    def _factory(
        *,
        provider: Optional[FakeProvider] = None,
        providers: Optional[Dict[str, FakeProvider]] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake = provider or FakeProvider()
        engine = Engine(settings, providers=providers or {fake.id: fake})
        return engine, fake

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        provider: Optional[FakeProvider] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake = provider or FakeProvider()
        engine = Engine(settings, providers={fake.id: fake})
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, engine=engine, config_path=cfg_path)
        return app, cfg_path, fake

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, provider = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_provider = provider  # type: ignore[attr-defined]
            yield http_client
