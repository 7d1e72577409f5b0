"""Shared test fixtures and configuration for relay tests."""
import pytest
from fastapi.testclient import TestClient

from homeserve.auth.service import TokenService
from homeserve.chat.store import ConversationStore
from homeserve.database import Database
from homeserve.main import create_app
from homeserve.users.schemas import UserType
from homeserve.users.service import UserDirectory
from tests.utils import TEST_SECRET, make_config


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    """TestClient with the lifespan running, so ``app.state.relay`` exists.

    Used as a context manager so every WebSocket session shares one event
    loop (and therefore one registry).
    """
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def relay(client, app):
    return app.state.relay


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def users(db):
    return UserDirectory(db)


@pytest.fixture
def store(db, users):
    return ConversationStore(db, users)


@pytest.fixture
def tokens():
    return TokenService(secret_key=TEST_SECRET)


@pytest.fixture
def alice(users):
    return users.create_user(
        "Alice", "Homeowner", "alice@example.com", UserType.HOMEOWNER, user_id="alice"
    )


@pytest.fixture
def bob(users):
    return users.create_user(
        "Bob", "Housekeeper", "bob@example.com", UserType.HOUSEKEEPER, user_id="bob"
    )


@pytest.fixture
def carol(users):
    return users.create_user(
        "Carol", "Admin", "carol@example.com", UserType.ADMIN, user_id="carol"
    )
