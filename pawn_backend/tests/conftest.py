import sys
from pathlib import Path

# Ensure project root is on sys.path so `import pawn_backend` works when running the tests directly
ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from pawn_backend.app import SESSION_COOKIE_NAME, app, get_auth_strategy, get_session
from pawn_backend.auth import AuthStrategy, SessionTokenStrategy, create_user
from pawn_backend.config import Settings, get_settings
from pawn_backend.models import UserRole

TEST_SECRET = "test-signing-secret"
EXPORT_PASSWORD = "test-export-pass"
DEFAULT_PASSWORD = "correct-horse"


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "auth_secret": TEST_SECRET,
        "export_password": EXPORT_PASSWORD,
    }
    values.update(overrides)
    return Settings(**values)


def build_client(engine, settings: Settings, strategy: AuthStrategy = None, raise_server_exceptions: bool = True):
    def override_session():
        with Session(engine) as session:
            yield session

    strategy = strategy or SessionTokenStrategy(settings.require_auth_secret())
    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_auth_strategy] = lambda: strategy
    client = TestClient(app, raise_server_exceptions=raise_server_exceptions)
    client._engine = engine  # type: ignore[attr-defined]
    return client


def add_user(engine, username: str, role: UserRole = UserRole.EDITOR, password: str = DEFAULT_PASSWORD) -> str:
    with Session(engine) as session:
        user = create_user(session, username=username, password=password, role=role)
        return user.id


def login(client: TestClient, username: str, password: str = DEFAULT_PASSWORD):
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    assert SESSION_COOKIE_NAME in response.cookies
    return response


def loan_payload(**overrides):
    payload = {
        "customerName": "Nguyễn Văn An",
        "cccd": "079123456789",
        "totalAmountVnd": 5_000_000,
        "datePawn": "2024-05-01",
        "recordNote": "Khách quen",
        "items": [
            {"qty": 1, "itemName": "Nhẫn vàng 18K", "weightChi": "2.5", "note": "có đá"},
            {"qty": 2, "itemName": "Bông tai", "weightChi": "1"},
        ],
    }
    payload.update(overrides)
    return payload


def create_loan(client: TestClient, **overrides) -> dict:
    response = client.post("/loans", json=loan_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()["loan"]


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def engine():
    return make_engine()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def client(engine, settings):
    return build_client(engine, settings)


@pytest.fixture
def editor_client(client, engine):
    add_user(engine, "editor", UserRole.EDITOR)
    login(client, "editor")
    return client


@pytest.fixture
def admin_client(client, engine):
    add_user(engine, "admin", UserRole.ADMIN)
    login(client, "admin")
    return client


@pytest.fixture
def viewer_client(client, engine):
    add_user(engine, "viewer", UserRole.VIEWER)
    login(client, "viewer")
    return client
