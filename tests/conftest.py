import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  registers tables on Base.metadata
from app.database import Base, get_db
from app.services.transport import Transport


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def file_session_factory(tmp_path):
    """SQLite file with its own connection per session, for interleaving two sessions."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'leadflow.db'}",
        connect_args={"check_same_thread": False, "timeout": 1},
        future=True,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class RecordingTransport(Transport):
    """Transport double that records sends and returns sequential ids."""

    channel = "whatsapp"

    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str]] = []
        self.error = error

    def send_text(self, to: str, text: str) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append((to, text))
        return f"wamid.out.{len(self.sent)}"


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_thread(db):
    """Contact, active lead and conversation for one sender."""
    from app.services.contact_service import ContactInput, upsert_contact
    from app.services.conversation_service import upsert_conversation
    from app.services.lead_service import resolve_active_lead

    def _make(phone="971501234567", channel="whatsapp"):
        contact = upsert_contact(db, ContactInput(phone=phone, source=channel))
        lead = resolve_active_lead(db, contact, channel)
        conversation = upsert_conversation(db, contact.id, channel, lead.id)
        db.commit()
        return contact, lead, conversation

    return _make
