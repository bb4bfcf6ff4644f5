from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from autoresearch.main import create_app
from tests.fakes import FakeBackend, FakeWebTools, make_settings


@pytest.fixture
def app_factory():
    def _factory(
        *,
        fast: Optional[FakeBackend] = None,
        quality: Optional[FakeBackend] = None,
        tools: Optional[FakeWebTools] = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        fast_backend = fast or FakeBackend("fast")
        quality_backend = quality or FakeBackend("quality", enabled=False)
        web_tools = tools or FakeWebTools()
        app = create_app(
            settings,
            fast_backend=fast_backend,
            quality_backend=quality_backend,
            web_tools=web_tools,
        )
        return app, fast_backend, quality_backend, web_tools

    return _factory


@pytest.fixture
async def client(app_factory):
    app, fast_backend, quality_backend, web_tools = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_fast = fast_backend  # type: ignore[attr-defined]
            http_client.fake_tools = web_tools  # type: ignore[attr-defined]
            yield http_client
