import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.repository.token_index import TokenIndex
from app.services.storage_service import StorageService
from config import StorageConfig
from main import create_app


@pytest.fixture
def storage_config(tmp_path):
    """Isolated storage root, staging area and SQLite index per test."""
    return StorageConfig(
        storage_root=tmp_path / "uploads",
        temp_dir=tmp_path / "temp",
        database_url=f"sqlite:///{tmp_path / 'tokens.db'}",
        public_base_url="http://testserver",
    )


@pytest.fixture
def token_index(storage_config):
    index = TokenIndex.from_url(storage_config.database_url)
    index.create_table()
    yield index
    index.dispose()


@pytest_asyncio.fixture
async def service(storage_config, token_index):
    storage_service = StorageService(storage_config, token_index)
    await storage_service.initialize()
    return storage_service


@pytest.fixture
def client(storage_config):
    with TestClient(create_app(storage_config)) as test_client:
        yield test_client
