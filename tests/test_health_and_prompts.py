from types import SimpleNamespace

import pytest

from core.env import require_env_vars
from database import session_scope
from llm import chat_completion
from llm.chat_completion import ChatCompletionError
from llm.prompts import chat_assistant
from services.payments.webhook_utils import resolve_reference, subscription_period


def test_healthz_reports_database(api_client) -> None:
    response = api_client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["database"]["ok"] is True


def test_metrics_endpoint_exposes_billing_counters(api_client) -> None:
    response = api_client.get("/metrics")
    assert response.status_code == 200
    assert "billing_webhook_events" in response.text


def test_prompt_orders_history_before_new_message() -> None:
    messages = chat_assistant.get_prompt(
        [{"content": "hello", "response": "hi!"}, {"content": "unanswered", "response": None}],
        "next",
    )
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user", "user"]
    assert messages[-1] == {"role": "user", "content": "next"}


def test_complete_chat_reads_litellm_response(monkeypatch) -> None:
    fake_response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="answer"))],
        usage=SimpleNamespace(total_tokens=17),
    )
    monkeypatch.setattr(chat_completion.litellm, "completion", lambda **_: fake_response)

    result = chat_completion.complete_chat([{"role": "user", "content": "q"}], model="test-model")

    assert result.text == "answer"
    assert result.tokens == 17
    assert result.model == "test-model"


def test_complete_chat_handles_empty_choice(monkeypatch) -> None:
    monkeypatch.setattr(chat_completion.litellm, "completion", lambda **_: {"choices": [], "usage": None})
    assert chat_completion.complete_chat([]).text == "No response generated"


def test_complete_chat_wraps_provider_errors(monkeypatch) -> None:
    def _raise(**_kwargs):
        raise ValueError("provider exploded")

    monkeypatch.setattr(chat_completion.litellm, "completion", _raise)
    with pytest.raises(ChatCompletionError):
        chat_completion.complete_chat([{"role": "user", "content": "q"}])


def test_webhook_reference_and_period_helpers() -> None:
    assert resolve_reference({"id": "sub_1", "object": "subscription"}) == "sub_1"
    assert resolve_reference("  ") is None
    start, end = subscription_period({"current_period_start": 0, "current_period_end": None})
    assert start is not None and start.year == 1970
    assert end is None


def test_require_env_vars_names_missing_keys(monkeypatch) -> None:
    monkeypatch.setenv("PRESENT_KEY", "1")
    monkeypatch.delenv("MISSING_KEY", raising=False)
    require_env_vars(["PRESENT_KEY"])
    with pytest.raises(RuntimeError, match="MISSING_KEY"):
        require_env_vars(["PRESENT_KEY", "MISSING_KEY"], context="api")


def test_session_scope_propagates_errors() -> None:
    with pytest.raises(ValueError):
        with session_scope() as session:
            assert session.is_active
            raise ValueError("boom")
