import os
# Override DATABASE_URL before any app imports to avoid PostgreSQL driver requirement
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
# The provider is always faked in tests; a key must be present for chat to be admitted.
os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
os.environ["CLAUDE_MODEL"] = "claude-3-5-haiku-latest"
os.environ["SIGNUP_CREDITS"] = "100"
os.environ["REFUND_ON_UPSTREAM_FAILURE"] = "true"

import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from meterchat.platform.database import Base
from meterchat.main import app
from meterchat.platform import side_channel
from meterchat.platform.middleware import _rate_limit_store
from meterchat.components.chat.relay import CompletionRelay
from meterchat.components.integrations.claude.service import ClaudeService
from meterchat.domains.chat.chat_routes import get_relay_factory
from meterchat.models.user import User
from meterchat.models.organization import Organization

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Enable foreign key support for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    side_channel.reset()
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def client(db):
    Base.metadata.create_all(bind=engine)
    # Clear in-memory rate limit state between tests to prevent 429 bleed-through
    _rate_limit_store.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    _rate_limit_store.clear()
    Base.metadata.drop_all(bind=engine)


# ---------------------------------------------------------------------------
# Fake Anthropic streaming client
# ---------------------------------------------------------------------------

class FakeStreamContext:
    """Stands in for ``AsyncMessageStream``: async context manager + async iterator of events."""

    def __init__(self, events=None, error_after=None, enter_error=None):
        self._events = list(events or [])
        self._error_after = error_after
        self._enter_error = enter_error
        self.closed = False

    async def __aenter__(self):
        if self._enter_error is not None:
            raise self._enter_error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            if self._error_after is not None:
                raise self._error_after
            raise StopAsyncIteration


class FakeMessages:
    def __init__(self):
        self.calls = []
        self._scripts = []

    def script(self, stream_ctx: FakeStreamContext) -> FakeStreamContext:
        self._scripts.append(stream_ctx)
        return stream_ctx

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        if not self._scripts:
            raise AssertionError("No scripted stream left for messages.stream()")
        return self._scripts.pop(0)


class FakeAnthropicClient:
    def __init__(self):
        self.messages = FakeMessages()

    @property
    def calls(self):
        return self.messages.calls

    def reply(self, *chunks, citations_by_block=None, error_after=None, enter_error=None):
        """Script the next completion; returns the fake stream context."""
        events = completion_events(*chunks, citations_by_block=citations_by_block)
        return self.messages.script(
            FakeStreamContext(events, error_after=error_after, enter_error=enter_error)
        )


def completion_events(*chunks, citations_by_block=None, input_tokens=12, output_tokens=7):
    """Raw Messages API stream events for one text block per chunk.

    ``citations_by_block`` maps a chunk index to ``[(title, url), ...]`` emitted
    as citations_delta events at the start of that block.
    """
    citations_by_block = citations_by_block or {}
    events = [
        SimpleNamespace(
            type="message_start",
            message=SimpleNamespace(usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=1)),
        )
    ]
    for index, chunk in enumerate(chunks):
        events.append(
            SimpleNamespace(type="content_block_start", index=index, content_block=SimpleNamespace(type="text", text=""))
        )
        for title, url in citations_by_block.get(index, []):
            events.append(
                SimpleNamespace(
                    type="content_block_delta",
                    index=index,
                    delta=SimpleNamespace(
                        type="citations_delta",
                        citation=SimpleNamespace(type="web_search_result_location", url=url, title=title),
                    ),
                )
            )
        events.append(
            SimpleNamespace(
                type="content_block_delta",
                index=index,
                delta=SimpleNamespace(type="text_delta", text=chunk),
            )
        )
        # High-level helper event the SDK also yields; must not be double counted
        events.append(SimpleNamespace(type="text", text=chunk, snapshot=chunk))
        events.append(SimpleNamespace(type="content_block_stop", index=index))
    events.append(
        SimpleNamespace(
            type="message_delta",
            delta=SimpleNamespace(stop_reason="end_turn"),
            usage=SimpleNamespace(output_tokens=output_tokens),
        )
    )
    events.append(SimpleNamespace(type="message_stop"))
    return events


@pytest.fixture
def fake_llm(client):
    """Route /api/v1/chat to a scripted fake Anthropic client."""
    fake = FakeAnthropicClient()

    def _factory():
        return CompletionRelay(ClaudeService(api_key="test-anthropic-key", client=fake))

    app.dependency_overrides[get_relay_factory] = lambda: _factory
    return fake


# ---------------------------------------------------------------------------
# Helper: verify a user's email directly in DB
# ---------------------------------------------------------------------------

def verify_user(email: str) -> None:
    """Mark a user as email-verified in the test DB (call after register)."""
    db = TestingSessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if user:
            user.is_verified = True
            db.commit()
    finally:
        db.close()


def set_org_balance(organization_id: int, balance: int) -> None:
    db = TestingSessionLocal()
    try:
        db.query(Organization).filter(Organization.id == organization_id).update(
            {Organization.credits_balance: balance}
        )
        db.commit()
    finally:
        db.close()


def org_balance(organization_id: int) -> int:
    db = TestingSessionLocal()
    try:
        return db.query(Organization).filter(Organization.id == organization_id).one().credits_balance
    finally:
        db.close()


def org_id_for(email: str) -> int | None:
    db = TestingSessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        return user.organization_id if user else None
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Factory helpers: register, log in and seed test entities
# ---------------------------------------------------------------------------

_counter = 0

def _unique_id() -> str:
    global _counter
    _counter += 1
    return f"{_counter}-{uuid.uuid4().hex[:8]}"


def register_user(client, email=None, password="TestPass123!", full_name="Test User", organization_name=None):
    """Register a user via the API. Returns the response."""
    email = email or f"user-{_unique_id()}@test.com"
    payload = {
        "email": email,
        "password": password,
        "full_name": full_name,
    }
    if organization_name is not None:
        payload["organization_name"] = organization_name
    resp = client.post("/api/v1/auth/register", json=payload)
    return resp


def login_user(client, email, password="TestPass123!"):
    """Log in a user via the API (FastAPI-Users JWT). Returns the response."""
    return client.post(
        "/api/v1/auth/jwt/login",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )


def auth_headers(client, email=None, password="TestPass123!", full_name="Test User", organization_name=None):
    """Register, verify, login a user and return Authorization headers + email.

    Every call creates its own organization unless ``organization_name`` is given.
    Returns (headers_dict, email) tuple.
    """
    email = email or f"user-{_unique_id()}@test.com"
    if organization_name is None:
        organization_name = f"Org {_unique_id()}"
    reg = register_user(client, email=email, password=password, full_name=full_name, organization_name=organization_name)
    assert reg.status_code == 201, f"Registration failed: {reg.text}"
    verify_user(email)
    login_resp = login_user(client, email, password)
    assert login_resp.status_code == 200, f"Login failed: {login_resp.text}"
    token = login_resp.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}, email


def auth_headers_without_org(client, email=None, password="TestPass123!"):
    email = email or f"user-{_unique_id()}@test.com"
    reg = register_user(client, email=email, password=password)
    assert reg.status_code == 201, f"Registration failed: {reg.text}"
    login_resp = login_user(client, email, password)
    assert login_resp.status_code == 200, f"Login failed: {login_resp.text}"
    return {"Authorization": f"Bearer {login_resp.json()['access_token']}"}, email


def send_chat(client, headers, message="Hello", **extra):
    payload = {"message": message}
    payload.update(extra)
    return client.post("/api/v1/chat", json=payload, headers=headers)
