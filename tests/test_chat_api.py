import csv
import io
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from llm.chat_completion import ChatCompletion, ChatCompletionError
from services import chat_service, rate_limiter
from services.rate_limiter import RateLimitResult

CHAT_URL = "/api/v1/chat/"


@pytest.fixture()
def fake_llm(monkeypatch):
    prompts = []

    def _complete(messages, **_kwargs):
        prompts.append(messages)
        return ChatCompletion(text=f"echo: {messages[-1]['content']}", tokens=42, model="test-model")

    monkeypatch.setattr(chat_service, "complete_chat", _complete)
    return prompts


def _expired_user(make_user):
    start = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=30)
    return make_user(trial_start=start, trial_end=start + timedelta(hours=24))


def test_expired_trial_gets_payment_required(api_client, make_user, auth_headers, fake_llm) -> None:
    user = _expired_user(make_user)

    response = api_client.post(CHAT_URL, json={"message": "hello"}, headers=auth_headers(user))

    assert response.status_code == 402
    trial_end = (user.trial_end).isoformat()
    assert response.json() == {
        "success": False,
        "error": "Trial expired. Please subscribe to continue.",
        "code": "TRIAL_EXPIRED",
        "trialEnd": trial_end,
    }
    assert fake_llm == []


def test_every_chat_route_is_gated(api_client, make_user, auth_headers) -> None:
    user = _expired_user(make_user)
    headers = auth_headers(user)

    assert api_client.get("/api/v1/chat/history", headers=headers).status_code == 402
    assert api_client.get("/api/v1/chat/export", headers=headers).status_code == 402
    assert api_client.delete(CHAT_URL, headers=headers).status_code == 402


def test_subscriber_with_lapsed_trial_can_chat(api_client, make_user, auth_headers, fake_llm) -> None:
    start = datetime.now(timezone.utc) - timedelta(days=5)
    user = make_user(trial_start=start, trial_end=start + timedelta(hours=24), subscription_status="active")

    response = api_client.post(CHAT_URL, json={"message": "hi there"}, headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "echo: hi there"
    assert body["message"]["tokens"] == 42


def test_chat_requires_authentication(api_client) -> None:
    assert api_client.post(CHAT_URL, json={"message": "hi"}).status_code == 401


def test_invalid_token_is_rejected_by_middleware(api_client) -> None:
    response = api_client.post(CHAT_URL, json={"message": "hi"}, headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.token_invalid"


def test_banned_account_is_refused(api_client, make_user, auth_headers) -> None:
    user = make_user(is_banned=True)
    response = api_client.post(CHAT_URL, json={"message": "hi"}, headers=auth_headers(user))
    assert response.status_code == 403


def test_history_includes_prior_context(api_client, make_user, auth_headers, fake_llm) -> None:
    user = make_user()
    headers = auth_headers(user)

    api_client.post(CHAT_URL, json={"message": "first"}, headers=headers)
    api_client.post(CHAT_URL, json={"message": "second"}, headers=headers)

    second_prompt = fake_llm[1]
    assert second_prompt[0]["role"] == "system"
    assert [m["content"] for m in second_prompt[1:]] == ["first", "echo: first", "second"]

    history = api_client.get("/api/v1/chat/history", headers=headers).json()
    assert history["total"] == 2
    assert [m["content"] for m in history["messages"]] == ["first", "second"]


def test_llm_failure_maps_to_bad_gateway(api_client, make_user, auth_headers, monkeypatch) -> None:
    user = make_user()

    def _fail(_messages, **_kwargs):
        raise ChatCompletionError("Failed to generate AI response")

    monkeypatch.setattr(chat_service, "complete_chat", _fail)

    response = api_client.post(CHAT_URL, json={"message": "hi"}, headers=auth_headers(user))

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "chat.llm_failed"


def test_rate_limited_chat(api_client, make_user, auth_headers, fake_llm, monkeypatch) -> None:
    user = make_user()
    reset_at = datetime.now(timezone.utc) + timedelta(minutes=10)
    monkeypatch.setattr(
        rate_limiter,
        "check_limit",
        lambda *_, **__: RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, limit=20),
    )

    response = api_client.post(CHAT_URL, json={"message": "hi"}, headers=auth_headers(user))

    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "chat.rate_limited"
    assert response.headers["X-RateLimit-Limit"] == "20"
    assert int(response.headers["Retry-After"]) > 0
    assert fake_llm == []


def test_export_csv_and_txt(api_client, make_user, auth_headers, fake_llm) -> None:
    user = make_user()
    headers = auth_headers(user)
    api_client.post(CHAT_URL, json={"message": 'say "hi"'}, headers=headers)

    csv_response = api_client.get("/api/v1/chat/export", params={"format": "csv"}, headers=headers)
    rows = list(csv.reader(io.StringIO(csv_response.text)))
    assert csv_response.headers["content-disposition"] == "attachment; filename=chat-export.csv"
    assert rows[0] == ["Date", "User Message", "AI Response"]
    assert rows[1][1:] == ['say "hi"', 'echo: say "hi"']

    txt_response = api_client.get("/api/v1/chat/export", params={"format": "txt"}, headers=headers)
    assert txt_response.text.startswith("ZYNX AI Chat Export")
    assert "User: say \"hi\"" in txt_response.text

    json_response = api_client.get("/api/v1/chat/export", headers=headers)
    assert json_response.json()["messageCount"] == 1


def test_export_rejects_unknown_format(api_client, make_user, auth_headers) -> None:
    user = make_user()
    response = api_client.get("/api/v1/chat/export", params={"format": "pdf"}, headers=auth_headers(user))
    assert response.status_code == 422


def test_delete_and_clear(api_client, make_user, auth_headers, fake_llm) -> None:
    user = make_user()
    headers = auth_headers(user)
    sent = api_client.post(CHAT_URL, json={"message": "one"}, headers=headers).json()
    api_client.post(CHAT_URL, json={"message": "two"}, headers=headers)

    deleted = api_client.delete(f"/api/v1/chat/{sent['message']['id']}", headers=headers)
    missing = api_client.delete(f"/api/v1/chat/{sent['message']['id']}", headers=headers)
    cleared = api_client.delete(CHAT_URL, headers=headers)

    assert deleted.status_code == 200
    assert missing.status_code == 404
    assert cleared.json()["deleted"] == 1


def test_send_message_rejects_blank_text(db_session, make_user, fake_llm) -> None:
    user = make_user()
    with pytest.raises(chat_service.ChatServiceError) as excinfo:
        chat_service.send_message(db_session, user.id, "   ")
    assert excinfo.value.status_code == 400


def test_gated_route_reads_account_once(api_client, db_session, engine, make_user, auth_headers) -> None:
    user = make_user()
    headers = auth_headers(user)
    db_session.expunge_all()
    statements = []

    def _record(_conn, _cursor, statement, *_args):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", _record)
    try:
        response = api_client.get("/api/v1/chat/history", headers=headers)
    finally:
        event.remove(engine, "before_cursor_execute", _record)

    assert response.status_code == 200
    assert sum("FROM users" in statement for statement in statements) == 1
    assert not any("FROM subscriptions" in statement for statement in statements)
