import json
from pathlib import Path

from services.payments import webhook_store as store
from services.payments.webhook_store import ProcessedEventStore, ProcessedWebhookEvent


def _load_raw_events(path: Path) -> list[dict]:
    if not path.exists():
        return []
    payload = json.loads(path.read_text(encoding="utf-8"))
    return payload.get("events", [])


def test_record_and_detect_processed_event(_isolate_webhook_store: Path) -> None:
    assert store.has_processed_event("evt_1") is False

    store.record_processed_event(event_id="evt_1", event_type="invoice.payment_failed", result="applied")

    assert store.has_processed_event("evt_1") is True
    events = _load_raw_events(_isolate_webhook_store)
    assert len(events) == 1
    assert events[0]["event_id"] == "evt_1"
    assert events[0]["result"] == "applied"


def test_record_replaces_existing_entry(_isolate_webhook_store: Path) -> None:
    store.record_processed_event(event_id="evt_1", event_type="a", result="ignored")
    store.record_processed_event(event_id="evt_1", event_type="a", result="applied")

    events = _load_raw_events(_isolate_webhook_store)
    assert [event["result"] for event in events] == ["applied"]


def test_blank_event_id_is_never_recorded(_isolate_webhook_store: Path) -> None:
    store.record_processed_event(event_id=None, event_type="a", result="applied")
    assert store.has_processed_event(None) is False
    assert not _isolate_webhook_store.exists()


def test_state_survives_reload(_isolate_webhook_store: Path) -> None:
    store.record_processed_event(event_id="evt_9", event_type="a", result="applied")
    store.reset_state_for_tests(path=_isolate_webhook_store)
    assert store.has_processed_event("evt_9") is True


def test_store_keeps_most_recent_events(tmp_path: Path) -> None:
    bounded = ProcessedEventStore(tmp_path / "bounded.json", max_events=3)
    bounded.store(
        [ProcessedWebhookEvent(event_id=f"evt_{i}", event_type=None, result=None, processed_at="t") for i in range(5)]
    )
    assert [event.event_id for event in bounded.load(reload=True)] == ["evt_2", "evt_3", "evt_4"]


def test_corrupt_state_file_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert ProcessedEventStore(path).load() == []
