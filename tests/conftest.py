import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("ADMIN_TOKEN", "admin-secret")

from datetime import datetime, timezone  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base  # noqa: E402
from app.models import Association  # noqa: E402
from app.services.directory_service import WordPressDirectoryClient  # noqa: E402
from app.services.result import Result  # noqa: E402
from app.services.tenant_service import tenant_resolver  # noqa: E402

WEBHOOK_SECRET = "test-secret"
DIRECTORY_URL = "https://sativar.example.org"


def _make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT (begin_nested) to work
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def engine():
    engine = _make_engine()
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _reset_tenant_cache():
    tenant_resolver.invalidate()
    yield
    tenant_resolver.invalidate()


@pytest.fixture
def association(db):
    now = datetime.now(timezone.utc)
    association = Association(
        subdomain="sativar",
        name="Associação Sativar",
        public_display_name="Sativar",
        is_active=True,
        wordpress_url=DIRECTORY_URL,
        wordpress_auth={"username": "api", "password": "secret"},
        whatsapp_session="sativar-session",
        welcome_message="Bem-vindo!",
        created_at=now,
        updated_at=now,
    )
    db.add(association)
    db.commit()
    return association


class DirectoryStub:
    """Scripted directory endpoint: phone variant -> list of records, counts requests."""

    def __init__(self, records_by_phone=None, status_code=200, error=None):
        self.records_by_phone = records_by_phone or {}
        self.status_code = status_code
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"message": "error"})
        phone = request.url.params.get("acf_filters[telefone]")
        return httpx.Response(200, json=self.records_by_phone.get(phone, []))

    def client(self) -> WordPressDirectoryClient:
        return WordPressDirectoryClient(timeout=1.0, transport=httpx.MockTransport(self))


@pytest.fixture
def directory_stub():
    return DirectoryStub()


@pytest.fixture
def gateway():
    gateway = AsyncMock()
    gateway.send_text.return_value = Result.success({"id": "wamid-1"})
    return gateway


def waha_message(phone="5511999999999@c.us", body="Olá", session="sativar-session", **payload):
    return {
        "event": "message",
        "session": session,
        "payload": {
            "id": payload.pop("id", "msg-1"),
            "from": phone,
            "fromMe": payload.pop("fromMe", False),
            "body": body,
            "type": "chat",
            "notifyName": payload.pop("notifyName", "Maria"),
            **payload,
        },
    }


@pytest.fixture
def make_waha_message():
    return waha_message


@pytest.fixture
def api_client(db, directory_stub, gateway, monkeypatch):
    from fastapi.testclient import TestClient

    from app.config import settings
    from app.database import get_db
    from app.main import app
    from app.services.directory_service import get_directory_client
    from app.services.notification_service import NotificationBus
    from app.services.whatsapp_service import get_gateway_client

    def _get_db():
        yield db

    monkeypatch.setattr(settings, "webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "admin_token", "admin-secret")
    monkeypatch.setattr(app.state, "notification_bus", NotificationBus())
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_directory_client] = directory_stub.client
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
