"""Ranking calculator — deterministic total order over paid entries.

Sort key, used everywhere ranks are computed:
    1. score, descending
    2. joined_at, ascending (earliest joiner wins a tie)
    3. entry_id, ascending (only separates identical join instants)

Unpaid entries are never ranked. Ranks are 1-based, contiguous and
unique: for N eligible entries the ranks are exactly {1..N}.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from podium.models.round import Entry


# Entries without a join time sort after every timed entry with the same score.
_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def ranking_key(entry: Entry) -> tuple:
    """Sort key for a single entry. Smaller sorts first."""
    joined = entry.joined_at or _NEVER
    if joined.tzinfo is None:
        joined = joined.replace(tzinfo=timezone.utc)
    return (-entry.score, joined, entry.entry_id)


def rank_entries(entries: Iterable[Entry]) -> list[tuple[int, Entry]]:
    """Return (rank, entry) pairs for every payment-eligible entry.

    Input order is irrelevant; the same set always yields the same ranks.
    """
    eligible = [e for e in entries if e.is_eligible]
    ordered = sorted(eligible, key=ranking_key)
    return [(position, entry) for position, entry in enumerate(ordered, start=1)]
