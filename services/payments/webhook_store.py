"""Disk-backed record of billing webhook events that were already reconciled."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.env import env_int, env_str
from services.time_utils import utcnow

logger = logging.getLogger(__name__)

_DEFAULT_STATE_PATH = Path("uploads") / "billing" / "webhook_events.json"
_MAX_RECORDED_EVENTS = env_int("BILLING_WEBHOOK_STATE_MAX_EVENTS", 500, minimum=10)


@dataclass(slots=True)
class ProcessedWebhookEvent:
    event_id: str
    event_type: Optional[str]
    result: Optional[str]
    processed_at: str


class ProcessedEventStore:
    """Bounded JSON file of processed event ids, cached in memory."""

    def __init__(self, path: Path, *, max_events: int = _MAX_RECORDED_EVENTS) -> None:
        self._path = Path(path)
        self._max_events = max_events
        self._cache: Optional[List[ProcessedWebhookEvent]] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, reload: bool = False) -> List[ProcessedWebhookEvent]:
        if reload or self._cache is None:
            self._cache = self._read()
        return list(self._cache)

    def _read(self) -> List[ProcessedWebhookEvent]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load webhook state from %s: %s", self._path, exc)
            return []

        items = payload.get("events") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return []

        events: List[ProcessedWebhookEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event_id = _normalize_optional(item.get("event_id"))
            processed_at = _normalize_optional(item.get("processed_at"))
            if not event_id or not processed_at:
                continue
            events.append(
                ProcessedWebhookEvent(
                    event_id=event_id,
                    event_type=_normalize_optional(item.get("event_type")),
                    result=_normalize_optional(item.get("result")),
                    processed_at=processed_at,
                )
            )
        return events

    def store(self, events: List[ProcessedWebhookEvent]) -> None:
        trimmed = events[-self._max_events :]
        payload: Dict[str, Any] = {"events": [asdict(event) for event in trimmed]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        self._cache = list(trimmed)

    def reset(self, *, path: Optional[Path] = None) -> None:
        if path is not None:
            self._path = Path(path)
        self._cache = None


def _normalize_optional(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


_EVENT_STORE = ProcessedEventStore(Path(env_str("BILLING_WEBHOOK_STATE_PATH") or _DEFAULT_STATE_PATH))


def has_processed_event(event_id: Optional[str]) -> bool:
    """Return True if the event id was recorded by a previous delivery."""
    if not event_id:
        return False
    return any(event.event_id == event_id for event in _EVENT_STORE.load())


def record_processed_event(*, event_id: Optional[str], event_type: Optional[str], result: Optional[str]) -> None:
    if not event_id:
        return
    events = [event for event in _EVENT_STORE.load() if event.event_id != event_id]
    events.append(
        ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            result=result,
            processed_at=utcnow().isoformat(),
        )
    )
    _EVENT_STORE.store(events)


def reset_state_for_tests(*, path: Optional[Path] = None) -> None:  # pragma: no cover - testing helper
    _EVENT_STORE.reset(path=path)


__all__ = [
    "ProcessedEventStore",
    "ProcessedWebhookEvent",
    "has_processed_event",
    "record_processed_event",
    "reset_state_for_tests",
]
