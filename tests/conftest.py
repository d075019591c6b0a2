import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from odata_grid.main import app
from odata_grid.core.client import ServiceClient
from odata_grid.core.config import Settings
from odata_grid.core.service import build_engine, get_engine
from tests.fake_service import (
    API_PATH,
    SERVICE_URL,
    FakeService,
    build_scenario,
    make_http_client,
)


@pytest.fixture
def fake_service() -> FakeService:
    return build_scenario()


# Service client talking to the fake service
@pytest_asyncio.fixture(scope="function")
async def service_client(fake_service: FakeService):
    http_client = make_http_client(fake_service)
    yield ServiceClient(SERVICE_URL, API_PATH, http_client=http_client)
    await http_client.aclose()


# Engine wired to the fake service
@pytest_asyncio.fixture(scope="function")
async def engine(fake_service: FakeService):
    http_client = make_http_client(fake_service)
    test_settings = Settings(_env_file=None, SERVICE_URL=SERVICE_URL, API_PATH=API_PATH)
    yield build_engine(test_settings, http_client=http_client)
    await http_client.aclose()


# API client
@pytest_asyncio.fixture(scope="function")
async def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
