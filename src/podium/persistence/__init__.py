"""Persistence — entry ledgers and the audit event log."""

from podium.persistence.event_log import EventKind, EventLog, EventRecord
from podium.persistence.ledger import EntryLedger, InMemoryEntryLedger

__all__ = [
    "EntryLedger",
    "EventKind",
    "EventLog",
    "EventRecord",
    "InMemoryEntryLedger",
]
