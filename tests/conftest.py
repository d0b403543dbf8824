import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.db import Base, get_db, get_session_factory
from core import config as core_config
from services import order_store
from services.broadcaster import Broadcaster, get_broadcaster
from helpers import RecordingChannel, make_items


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    # Speed up for tests
    core_config.settings.ORDER_POLL_INTERVAL_SECONDS = 0.05
    core_config.settings.ORDER_POLL_TIMEOUT_SECONDS = 1
    core_config.settings.RECONNECT_BASE_DELAY_SECONDS = 0
    core_config.settings.RECONNECT_MAX_DELAY_SECONDS = 0
    core_config.settings.TESTING = True
    yield


def _install_overrides(TestingSessionLocal):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal


@pytest.fixture()
def db_session_override():
    """Fresh session per request; the yielded session is only for seeding."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    _install_overrides(TestingSessionLocal)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        app.dependency_overrides.clear()


@pytest.fixture()
def file_sessions(tmp_path):
    """Session factory over a file database with a real, single-connection pool."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'orders.sqlite3'}",
        connect_args={"check_same_thread": False},
        pool_size=1,
        max_overflow=0,
        pool_timeout=1,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def pooled_client(file_sessions, broadcaster):
    _install_overrides(file_sessions)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_session_factory, None)


@pytest.fixture()
def broadcaster():
    """A fresh broadcaster per test so subscriptions never leak between tests."""
    bc = Broadcaster()
    app.dependency_overrides[get_broadcaster] = lambda: bc
    yield bc
    app.dependency_overrides.pop(get_broadcaster, None)


@pytest.fixture()
def client(db_session_override, broadcaster):
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    db_session = TestingSessionLocal()
    yield db_session
    db_session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_order(db):
    """Create an order in the initial status."""
    return order_store.create_order(db, user_id=7, items=make_items(), delivery_address={"line1": "12 Main St"})


@pytest.fixture
def api_order(db_session_override):
    """Create an order visible through the API client."""
    return order_store.create_order(
        db_session_override, user_id=7, items=make_items(), delivery_address={"line1": "12 Main St"}
    )


@pytest.fixture
def recording_channel():
    return RecordingChannel()
