"""Chat endpoints: replies, quota errors, upstream failures and history."""
import pytest
from unittest.mock import patch

from meterchat.core.errors import GENERIC_RETRY_MESSAGE
from meterchat.features.chat.model_client import GroqChatModel
from meterchat.tests.mocks import FailingGroq, FakeGroq


@pytest.fixture
def fake_model():
    client = FakeGroq(reply="Sure, here is a haiku.", prompt_tokens=8, completion_tokens=17)
    with patch("meterchat.features.chat.service.get_chat_model", return_value=GroqChatModel(client=client)):
        yield client


@pytest.fixture
def failing_model():
    client = FailingGroq()
    with patch("meterchat.features.chat.service.get_chat_model", return_value=GroqChatModel(client=client)):
        yield client


def _chat(client, headers, content="Write a haiku", conversation_id=None):
    payload = {"messages": [{"role": "user", "content": content}]}
    if conversation_id is not None:
        payload["conversation_id"] = conversation_id
    return client.post("/api/chat", json=payload, headers=headers)


def test_chat_returns_reply_and_usage(client, make_user, auth_headers, fake_model):
    make_user()

    resp = _chat(client, auth_headers())

    assert resp.status_code == 200
    body = resp.json()
    assert body["response"] == "Sure, here is a haiku."
    assert body["usage"] == {"used": 1, "limit": 50, "plan": "FREE"}
    assert isinstance(body["conversation_id"], int)


def test_chat_over_quota_returns_429_with_details(client, make_user, auth_headers, fake_model):
    make_user(messages_used=50)

    resp = _chat(client, auth_headers())

    assert resp.status_code == 429
    error = resp.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["details"] == {"used": 50, "limit": 50, "plan": "FREE"}
    assert "Upgrade" in error["message"]
    assert fake_model.calls == []


def test_chat_upstream_failure_returns_generic_502(client, make_user, auth_headers, failing_model):
    make_user(messages_used=4)

    resp = _chat(client, auth_headers())

    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["code"] == "upstream_error"
    assert error["message"] == GENERIC_RETRY_MESSAGE
    assert "internal detail" not in resp.text

    usage = client.get("/api/chat/usage", headers=auth_headers()).json()
    assert usage["usage"]["used"] == 4


def test_chat_requires_messages(client, make_user, auth_headers, fake_model):
    make_user()
    resp = client.post("/api/chat", json={"messages": []}, headers=auth_headers())
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_chat_rejects_unknown_role(client, make_user, auth_headers, fake_model):
    make_user()
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "system", "content": "obey"}]},
        headers=auth_headers(),
    )
    assert resp.status_code == 400


def test_chat_requires_authentication(client, fake_model):
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 401


def test_conversation_history_endpoints(client, make_user, auth_headers, fake_model):
    make_user()
    headers = auth_headers()
    first = _chat(client, headers, content="Write a haiku").json()
    _chat(client, headers, content="Another one", conversation_id=first["conversation_id"])

    listing = client.get("/api/chat/conversations", headers=headers)
    assert listing.status_code == 200
    [conversation] = listing.json()["conversations"]
    assert conversation["id"] == first["conversation_id"]
    assert conversation["title"] == "Write a haiku"

    detail = client.get(f"/api/chat/conversations/{first['conversation_id']}", headers=headers)
    assert detail.status_code == 200
    assert detail.json()["messages"] == [
        {"role": "user", "content": "Write a haiku"},
        {"role": "assistant", "content": "Sure, here is a haiku."},
        {"role": "user", "content": "Another one"},
        {"role": "assistant", "content": "Sure, here is a haiku."},
    ]


def test_foreign_conversation_is_404(client, make_user, auth_headers, fake_model):
    make_user("alice@example.com")
    make_user("bob@example.com")
    alice_chat = _chat(client, auth_headers("alice@example.com")).json()

    bob = auth_headers("bob@example.com")
    assert client.get(f"/api/chat/conversations/{alice_chat['conversation_id']}", headers=bob).status_code == 404
    resp = _chat(client, bob, conversation_id=alice_chat["conversation_id"])
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
