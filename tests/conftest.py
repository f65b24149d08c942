import os
import sqlite3
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_ALGORITHM", "HS256")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))

# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is None:
                return None
            if isinstance(value, uuid.UUID):
                return str(value)
            return str(uuid.UUID(str(value)))
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is None or isinstance(value, uuid.UUID):
                return value
            return uuid.UUID(str(value))
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

import chatdesk.models  # noqa: E402,F401
from chatdesk.config import settings  # noqa: E402
from chatdesk.db import Base, get_db  # noqa: E402
from chatdesk.middleware.widget_rate_limit import widget_rate_limiter  # noqa: E402
from chatdesk.models import (  # noqa: E402
    Department,
    Organization,
    User,
    UserRole,
    WidgetSettings,
)

PRECHAT_FORM = [
    {"id": "topic", "type": "select", "label": "Topic", "required": False, "options": ["Billing", "Tech"], "order": 3},
    {"id": "email", "type": "email", "label": "Email address", "required": True, "order": 1},
    {"id": "name", "type": "text", "label": "Your name", "required": True, "order": 2},
]


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_connection(engine):
    connection = engine.connect()
    transaction = connection.begin()
    try:
        yield connection
    finally:
        transaction.rollback()
        connection.close()


@pytest.fixture()
def session_factory(db_connection):
    """Sessions whose commits become savepoints of the per-test transaction."""
    return sessionmaker(
        bind=db_connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    widget_rate_limiter._redis_available = False
    widget_rate_limiter.reset()
    yield
    widget_rate_limiter.reset()


@pytest.fixture()
def app(session_factory, monkeypatch):
    """Application wired to the per-test transaction."""
    from chatdesk.main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    monkeypatch.setattr("chatdesk.websocket.widget_auth.SessionLocal", session_factory)
    monkeypatch.setattr("chatdesk.websocket.widget_router.SessionLocal", session_factory)
    try:
        yield app
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def client(app):
    return TestClient(app)


# ============================================================================
# Organization fixtures
# ============================================================================


@pytest.fixture()
def organization(db_session):
    org = Organization(name="Acme Support")
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


@pytest.fixture()
def department(db_session, organization):
    dept = Department(
        organization_id=organization.id,
        name="Sales",
        description="Pre-sales questions",
        is_active=True,
        pre_chat_form=list(PRECHAT_FORM),
    )
    db_session.add(dept)
    db_session.commit()
    db_session.refresh(dept)
    return dept


@pytest.fixture()
def open_department(db_session, organization):
    """Department without a pre-chat form."""
    dept = Department(organization_id=organization.id, name="General", is_active=True, pre_chat_form=[])
    db_session.add(dept)
    db_session.commit()
    db_session.refresh(dept)
    return dept


@pytest.fixture()
def widget_config(db_session, organization):
    config = WidgetSettings(
        organization_id=organization.id,
        widget_key=f"wk_{uuid.uuid4().hex[:12]}",
        enabled=True,
        allowed_domains=["example.com", "*.shop.example.com"],
        widget_title="Talk to Acme",
        greeting_message="Hi! How can we help?",
        play_notification_sound=True,
        rate_limit_sessions_per_ip=20,
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


def _user(db_session, organization, role: UserRole, name: str) -> User:
    user = User(
        organization_id=organization.id,
        email=f"{uuid.uuid4().hex[:10]}@acme.test",
        full_name=name,
        role=role,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def agent(db_session, organization):
    return _user(db_session, organization, UserRole.agent, "Alice Agent")


@pytest.fixture()
def second_agent(db_session, organization):
    return _user(db_session, organization, UserRole.agent, "Bob Agent")


def make_token(user_id) -> str:
    return jwt.encode({"sub": str(user_id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture()
def bearer_headers():
    def _headers(user_id) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _headers


@pytest.fixture()
def agent_headers(agent):
    return {"Authorization": f"Bearer {make_token(agent.id)}"}


# ============================================================================
# Session / conversation fixtures
# ============================================================================


@pytest.fixture()
def widget_session(db_session, widget_config):
    from chatdesk.services.sessions import widget_sessions

    resolution = widget_sessions.resolve(
        db_session,
        widget_config.widget_key,
        "visitor_fixture",
        origin="https://example.com",
        ip_address="198.51.100.7",
    )
    return resolution.session


@pytest.fixture()
def conversation(db_session, widget_session, open_department):
    from chatdesk.schemas.widget import ConversationCreate
    from chatdesk.services.conversations import conversations

    result = conversations.open_for_session(
        db_session,
        widget_session,
        ConversationCreate(department_id=open_department.id),
    )
    return result.conversation
