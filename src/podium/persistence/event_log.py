"""Append-only audit log of round lifecycle actions.

Every lifecycle action the service performs (start, end, finalize,
publish, failed submissions) is appended here as an immutable record.
The log is the operator's audit trail: it answers who moved a round,
when, and with what result.

Records are hashed over their canonical JSON. A JSONL file, when
configured, is verified line by line on load; a tampered record or a
replayed event id refuses to load.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of audit events."""
    ROUND_CREATED = "round_created"
    ROUND_STARTED = "round_started"
    ROUND_ENDED = "round_ended"
    ROUND_END_SUBMITTED = "round_end_submitted"
    ROUND_FINALIZED = "round_finalized"
    RESULTS_PUBLISHED = "results_published"
    SUBMISSION_FAILED = "submission_failed"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable audit event. Payload values must be JSON-safe."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        event_id: Optional[str] = None,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        event_id = event_id or f"evt-{uuid.uuid4().hex}"
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL persistence.

    Events can only be appended, never modified or deleted.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event. Raises ValueError on a duplicate event_id."""
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            self._events.append(event)
            self._event_ids.add(event.event_id)
            if self._storage_path:
                with self._storage_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def record(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any],
    ) -> EventRecord:
        """Create and append an event in one step."""
        event = EventRecord.create(kind, actor_id, payload)
        self.append(event)
        return event

    def events(
        self, kind: Optional[EventKind] = None, round_id: Optional[str] = None,
    ) -> list[EventRecord]:
        """Return events, optionally filtered by kind and round."""
        with self._lock:
            result = list(self._events)
        if kind is not None:
            result = [e for e in result if e.event_kind == kind]
        if round_id is not None:
            result = [e for e in result if e.payload.get("round_id") == round_id]
        return result

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load_from_file(self, path: Path) -> None:
        """Load events with integrity verification. Fails closed."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                self._events.append(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
