"""Integration tests for the metered chat endpoint (/api/v1/chat)."""

import pytest

from tests.conftest import (
    TestingSessionLocal,
    auth_headers,
    auth_headers_without_org,
    org_balance,
    org_id_for,
    send_chat,
    set_org_balance,
)
from meterchat.models.billing_credit_ledger import BillingCreditLedger
from meterchat.models.history_session import HistorySession, SessionType
from meterchat.models.interaction import Interaction, InteractionType
from meterchat.platform.config import settings


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def _interactions(session_id: str) -> list[Interaction]:
    db = TestingSessionLocal()
    try:
        return (
            db.query(Interaction)
            .filter(Interaction.session_id == session_id)
            .order_by(Interaction.sequence)
            .all()
        )
    finally:
        db.close()


def _interaction_count() -> int:
    db = TestingSessionLocal()
    try:
        return db.query(Interaction).count()
    finally:
        db.close()


def _session(session_id: str) -> HistorySession | None:
    db = TestingSessionLocal()
    try:
        return db.query(HistorySession).filter(HistorySession.id == session_id).first()
    finally:
        db.close()


def _ledger(organization_id: int) -> list[BillingCreditLedger]:
    db = TestingSessionLocal()
    try:
        return (
            db.query(BillingCreditLedger)
            .filter(BillingCreditLedger.organization_id == organization_id)
            .order_by(BillingCreditLedger.id)
            .all()
        )
    finally:
        db.close()


# ===== Happy path =====


def test_chat_streams_answer_and_logs_both_turns(client, fake_llm):
    headers, email = auth_headers(client)
    org_id = org_id_for(email)
    fake_llm.reply("Hi ", "there!")

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 200
    assert resp.text == "Hi there!"
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    session_id = resp.headers["x-session-id"]
    assert session_id

    session = _session(session_id)
    assert session.type == SessionType.CHAT
    assert session.organization_id == org_id
    assert session.title == "Hello"
    assert session.session_metadata == {"webSearch": False}

    turns = _interactions(session_id)
    assert [t.sequence for t in turns] == [1, 2]
    assert [t.type for t in turns] == [InteractionType.USER_MESSAGE, InteractionType.ASSISTANT_MESSAGE]
    assert turns[0].content == "Hello"
    assert turns[0].cost_credits == 0
    assert turns[1].content == "Hi there!"
    assert turns[1].cost_credits == settings.CREDIT_COST_CHAT_BASIC
    assert "partial" not in turns[1].interaction_metadata
    assert turns[1].interaction_metadata["usage"] == {"input_tokens": 12, "output_tokens": 7}

    assert org_balance(org_id) == 100 - settings.CREDIT_COST_CHAT_BASIC


def test_chat_sends_system_prompt_history_and_model(client, fake_llm):
    headers, _ = auth_headers(client)
    fake_llm.reply("ok")

    resp = send_chat(
        client,
        headers,
        "And in French?",
        history=[
            {"role": "system", "content": "ignored"},
            {"role": "user", "content": "Say hello"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "And in French?"},
        ],
    )

    assert resp.status_code == 200
    call = fake_llm.calls[0]
    assert call["model"] == settings.resolved_claude_model
    assert call["system"] == settings.CHAT_SYSTEM_PROMPT
    assert call["max_tokens"] == settings.MAX_TOKENS_PER_RESPONSE
    assert call["messages"] == [
        {"role": "user", "content": "Say hello"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "And in French?"},
    ]
    assert "tools" not in call


def test_chat_reuses_existing_session(client, fake_llm):
    headers, _ = auth_headers(client)
    fake_llm.reply("first answer")
    fake_llm.reply("second answer")

    first = send_chat(client, headers, "First question")
    session_id = first.headers["x-session-id"]
    second = send_chat(client, headers, "Second question", sessionId=session_id)

    assert second.status_code == 200
    assert second.headers["x-session-id"] == session_id
    turns = _interactions(session_id)
    assert [t.sequence for t in turns] == [1, 2, 3, 4]
    assert [t.content for t in turns] == ["First question", "first answer", "Second question", "second answer"]
    # Title is seeded once and kept
    assert _session(session_id).title == "First question"


def test_chat_with_foreign_session_id_starts_new_session(client, fake_llm):
    headers_a, _ = auth_headers(client)
    headers_b, _ = auth_headers(client)
    fake_llm.reply("a")
    fake_llm.reply("b")

    session_a = send_chat(client, headers_a, "Org A question").headers["x-session-id"]
    resp_b = send_chat(client, headers_b, "Org B question", sessionId=session_a)

    assert resp_b.status_code == 200
    assert resp_b.headers["x-session-id"] != session_a
    assert len(_interactions(session_a)) == 2


def test_chat_long_message_seeds_truncated_title(client, fake_llm):
    headers, _ = auth_headers(client)
    fake_llm.reply("ok")
    message = "x" * 80

    resp = send_chat(client, headers, message)

    assert _session(resp.headers["x-session-id"]).title == "x" * 50 + "..."


# ===== Web search and citations =====


def test_chat_with_web_search_appends_sources_footer(client, fake_llm):
    headers, email = auth_headers(client)
    org_id = org_id_for(email)
    fake_llm.reply(
        "Fact one.",
        " Fact two.",
        citations_by_block={0: [("A", "https://a.example")], 1: [("B", "https://b.example")]},
    )

    resp = send_chat(client, headers, "Find facts", useWebSearch=True)

    assert resp.status_code == 200
    expected_footer = "\n\n---\nSources:\n[1] A: https://a.example\n[2] B: https://b.example\n"
    assert resp.text == "Fact one. Fact two." + expected_footer

    call = fake_llm.calls[0]
    assert call["tools"] == [
        {"type": "web_search_20250305", "name": "web_search", "max_uses": settings.CHAT_WEB_SEARCH_MAX_USES}
    ]

    assistant = _interactions(resp.headers["x-session-id"])[1]
    assert assistant.content == resp.text
    assert assistant.cost_credits == settings.CREDIT_COST_CHAT_WEB_SEARCH
    assert assistant.interaction_metadata["web_search"] is True
    assert assistant.interaction_metadata["citations"] == [
        {"url": "https://a.example", "title": "A", "start_index": 0, "end_index": 9},
        {"url": "https://b.example", "title": "B", "start_index": 9, "end_index": 19},
    ]
    assert org_balance(org_id) == 100 - settings.CREDIT_COST_CHAT_WEB_SEARCH

    reservation = _ledger(org_id)[-1]
    assert reservation.delta == -settings.CREDIT_COST_CHAT_WEB_SEARCH
    assert reservation.feature_id == "chat_with_search"
    assert reservation.reason == "Chat: With web search: Find facts"


def test_chat_code_generation_costs_most(client, fake_llm):
    headers, email = auth_headers(client)
    fake_llm.reply("def f(): pass")

    resp = send_chat(client, headers, "Write f", useWebSearch=True, useCodeGeneration=True)

    assert resp.status_code == 200
    assert org_balance(org_id_for(email)) == 100 - settings.CREDIT_COST_CHAT_CODE_GEN


# ===== Rejections before streaming =====


def test_chat_insufficient_credits_402_without_side_effects(client, fake_llm):
    headers, email = auth_headers(client)
    org_id = org_id_for(email)
    set_org_balance(org_id, 0)
    ledger_before = len(_ledger(org_id))

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 402
    assert resp.json() == {
        "error": "Insufficient credits. Please add more credits to continue using this feature."
    }
    assert org_balance(org_id) == 0
    assert _interaction_count() == 0
    assert len(_ledger(org_id)) == ledger_before
    assert fake_llm.calls == []


def test_chat_requires_authentication(client, fake_llm):
    resp = client.post("/api/v1/chat", json={"message": "Hello"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_chat_rejects_invalid_token(client, fake_llm):
    resp = client.post(
        "/api/v1/chat",
        json={"message": "Hello"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert resp.status_code == 401


@pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}])
def test_chat_requires_message(client, fake_llm, payload):
    headers, _ = auth_headers(client)
    resp = client.post("/api/v1/chat", json=payload, headers=headers)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Message is required"}


def test_chat_user_without_organization_400(client, fake_llm):
    headers, _ = auth_headers_without_org(client)
    resp = send_chat(client, headers, "Hello")
    assert resp.status_code == 400
    assert resp.json()["error"] == "No organizations found. Please create or join an organization."


def test_chat_without_provider_key_500(client, fake_llm, monkeypatch):
    headers, email = auth_headers(client)
    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", "")

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 500
    assert "error" in resp.json()
    assert org_balance(org_id_for(email)) == 100
    assert fake_llm.calls == []


def test_chat_malformed_body_400(client, fake_llm):
    headers, _ = auth_headers(client)
    resp = client.post("/api/v1/chat", json={"message": "Hi", "history": "nope"}, headers=headers)
    assert resp.status_code == 400
    assert "error" in resp.json()


# ===== Upstream failures =====


def test_chat_upstream_failure_before_first_byte_refunds(client, fake_llm):
    headers, email = auth_headers(client)
    org_id = org_id_for(email)
    fake_llm.reply(enter_error=RuntimeError("provider unavailable"))

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to generate response from AI service"}
    assert org_balance(org_id) == 100

    ledger = _ledger(org_id)
    assert [entry.delta for entry in ledger] == [100, -1, 1]
    assert ledger[-1].external_ref == f"refund:{ledger[-2].id}"

    # Only the user turn was logged
    db = TestingSessionLocal()
    try:
        turns = db.query(Interaction).all()
        assert [t.type for t in turns] == [InteractionType.USER_MESSAGE]
    finally:
        db.close()


def test_chat_upstream_failure_without_refund_keeps_charge(client, fake_llm, monkeypatch):
    headers, email = auth_headers(client)
    monkeypatch.setattr(settings, "REFUND_ON_UPSTREAM_FAILURE", False)
    fake_llm.reply(enter_error=RuntimeError("provider unavailable"))

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 500
    assert org_balance(org_id_for(email)) == 100 - settings.CREDIT_COST_CHAT_BASIC


def test_chat_upstream_failure_mid_stream_persists_partial_turn(client, fake_llm):
    headers, email = auth_headers(client)
    fake_llm.reply("chunk-1 ", "chunk-2", error_after=ConnectionError("socket closed"))

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 200
    assert resp.text == "chunk-1 chunk-2"
    turns = _interactions(resp.headers["x-session-id"])
    assert [t.sequence for t in turns] == [1, 2]
    assistant = turns[1]
    assert assistant.content == "chunk-1 chunk-2"
    assert assistant.interaction_metadata["partial"] is True
    assert assistant.interaction_metadata["error"] == "ConnectionError"
    # The charge stands for a partial answer
    assert assistant.cost_credits == settings.CREDIT_COST_CHAT_BASIC
    assert org_balance(org_id_for(email)) == 100 - settings.CREDIT_COST_CHAT_BASIC


def test_chat_falls_back_to_snapshot_model_when_alias_missing(client, fake_llm):
    headers, _ = auth_headers(client)
    fake_llm.reply(
        enter_error=Exception(
            "Error code: 404 - {'type':'error','error':{'type':'not_found_error','message':'model: claude-3-5-haiku-latest'}}"
        )
    )
    fake_llm.reply("from snapshot")

    resp = send_chat(client, headers, "Hello")

    assert resp.status_code == 200
    assert resp.text == "from snapshot"
    assert [call["model"] for call in fake_llm.calls] == [
        "claude-3-5-haiku-latest",
        "claude-3-5-haiku-20241022",
    ]
