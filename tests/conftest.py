import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine
from main import create_application
from core.config import get_settings
from dependencies import create_access_token
from services.chat import ChatService


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch(self, notification):
        self.sent.append(notification)


@pytest.fixture(scope="session")
def settings():
    return get_settings()

@pytest.fixture(scope="session")
def test_db_engine(settings):
    url = settings.TEST_DATABASE_URL
    if url.startswith("sqlite"):
        # One shared in-memory connection, usable from the TestClient thread
        engine = create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        engine = create_engine(url)
    yield engine
    engine.dispose()

@pytest.fixture(autouse=True)
def db_tables(test_db_engine):
    SQLModel.metadata.create_all(test_db_engine)
    yield
    SQLModel.metadata.drop_all(test_db_engine)

@pytest.fixture(scope="session")
def dispatcher():
    return RecordingDispatcher()

@pytest.fixture(autouse=True)
def clear_dispatcher(dispatcher):
    dispatcher.sent.clear()

@pytest.fixture(scope="session")
def chat_service(test_db_engine, dispatcher, settings):
    return ChatService(test_db_engine, dispatcher=dispatcher, settings=settings)

@pytest.fixture(scope="session")
def app(test_db_engine, chat_service):
    return create_application(engine=test_db_engine, chat_service=chat_service, use_redis=False)

@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client

@pytest.fixture
def auth_header():
    def make(user_id: int) -> dict:
        token = create_access_token({"sub": str(user_id)})
        return {"Authorization": f"Bearer {token}"}
    return make

@pytest.fixture
def lunch_crew(chat_service):
    """Group created by user 1 with members 2 and 3."""
    return chat_service.create_group(1, [2, 3], "Lunch Crew")
