import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import copy
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import chatdesk.models  # noqa: F401  registers tables on Base.metadata
from chatdesk.config import Settings
from chatdesk.database import Base
from chatdesk.models import ChannelSettings
from chatdesk.services import conversation_service
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.events import EventBus
from chatdesk.services.llm.base import LLMProvider, LLMResponse
from chatdesk.services.orchestrator import AIOrchestrator
from chatdesk.services.tools import build_default_registry
from chatdesk.services.whatsapp_client import WhatsAppAPIError, WhatsAppClient

FIXED_NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
CONTACT = "393331234567"


class FakeLLM(LLMProvider):
    """Replays canned responses; the last one repeats. Exceptions in the list are raised."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def generate(self, messages, model=None, temperature=0.7, max_tokens=1000, tools=None, timeout_seconds=None):
        self.calls.append(
            {
                "messages": copy.deepcopy(messages),
                "model": model,
                "tools": tools,
                "timeout_seconds": timeout_seconds,
            }
        )
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeWhatsApp(WhatsAppClient):
    def __init__(self):
        super().__init__("test-token", "1234567890")
        self.sent = []
        self.error = None

    def send(self, to, *, text=None, media_type=None, media_ref=None, caption=None):
        if self.error is not None:
            raise self.error
        payload = self.build_payload(to, text=text, media_type=media_type, media_ref=media_ref, caption=caption)
        self.sent.append({"to": to, "text": text, "media_type": media_type, "payload": payload})
        return f"wamid.out.{len(self.sent)}"

    def fail_with(self, status_code=400, body='{"error":{"message":"Invalid recipient"}}'):
        self.error = WhatsAppAPIError(f"WhatsApp API error {status_code}", status_code=status_code, body=body)


class Clock:
    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def text_response(content):
    return LLMResponse(content=content, model="test-model")


def whatsapp_payload(*messages, contacts=None):
    """Cloud API webhook delivery wrapping the given raw messages."""
    if contacts is None:
        contacts = [{"wa_id": CONTACT, "profile": {"name": "Mario Rossi"}}]
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "1234567890"},
                            "contacts": contacts,
                            "messages": list(messages),
                        },
                    }
                ],
            }
        ],
    }


def text_message(message_id="wamid.A", body="Ciao", timestamp="1792400400", sender=CONTACT):
    return {"from": sender, "id": message_id, "timestamp": timestamp, "type": "text", "text": {"body": body}}


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'chatdesk.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fake_whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def dispatcher(fake_whatsapp, events):
    return ReplyDispatcher(fake_whatsapp, events)


@pytest.fixture
def registry(dispatcher):
    return build_default_registry(dispatcher)


@pytest.fixture
def make_llm():
    def _make(*responses):
        return FakeLLM(responses)

    return _make


@pytest.fixture
def make_orchestrator(registry, dispatcher):
    def _make(llm):
        return AIOrchestrator(llm, registry, dispatcher)

    return _make


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        whatsapp_access_token="test-token",
        whatsapp_phone_number_id="1234567890",
        whatsapp_verify_token="verify-me",
        queue_poll_interval_seconds=0.05,
    )


@pytest.fixture
def channel_settings(db):
    """AI on, auto-reply on, business hours off."""
    row = ChannelSettings(
        channel="whatsapp",
        ai_enabled=True,
        auto_reply=True,
        business_hours_enabled=False,
        max_context_messages=5,
        max_tool_iterations=5,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def inbound(db):
    """Store an inbound message the way the gateway does and return (conversation, message)."""

    def _inbound(text, external_id="wamid.in.1", contact=CONTACT, name="Mario Rossi", timestamp=FIXED_NOW):
        conversation = conversation_service.get_or_create_conversation(db, contact, name)
        message, _ = conversation_service.insert_inbound_message(
            db,
            conversation_id=conversation.id,
            external_message_id=external_id,
            content=text,
            timestamp=timestamp,
        )
        conversation_service.register_inbound(db, conversation.id, text, timestamp)
        db.commit()
        return conversation, message

    return _inbound


@pytest.fixture
def services(test_settings, session_factory, fake_whatsapp, make_llm):
    from chatdesk.services.container import build_services

    return build_services(
        test_settings,
        session_factory,
        llm=make_llm(text_response("Buongiorno, come posso aiutarla?")),
        whatsapp=fake_whatsapp,
    )


@pytest.fixture
def admin_token(monkeypatch):
    from chatdesk.config import settings

    monkeypatch.setattr(settings, "admin_token", "admin-secret")
    return {"X-Admin-Token": "admin-secret"}


@pytest.fixture
def client(services, session_factory):
    """TestClient without lifespan: services are injected, no workers run."""
    from fastapi.testclient import TestClient

    from chatdesk.database import get_db
    from chatdesk.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.services = None
