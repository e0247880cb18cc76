"""SQL entry ledger — the EntryLedger contract on a relational database.

Uses SQLAlchemy 2.0 with synchronous sessions. Works with SQLite (tests,
single-host deployments) and PostgreSQL.

Finalization claim:
    UPDATE rounds SET finalized_at = :now
     WHERE round_id = :id AND phase = 'ended' AND finalized_at IS NULL

rowcount 0 means another caller already holds the claim. Otherwise the
rank and prize writes go into the same transaction and are committed
together; any exception rolls the claim back with them.

Money is stored as text so Decimal values round-trip exactly on every
backend. Timestamps are stored as naive UTC and returned timezone-aware.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import (
    Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    create_engine, select, update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from podium.errors import InvalidPhaseTransition, NotFound, ValidationError
from podium.models.round import Entry, Round, RoundPhase, RoundSnapshot
from podium.persistence.ledger import (
    MUTABLE_ENTRY_PHASES,
    EntryLedger,
    FinalizeComputation,
    validate_new_entry,
    validate_new_round,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class DecimalText(TypeDecorator):
    """Decimal stored as its exact string form."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


class DecimalList(TypeDecorator):
    """Tuple of Decimals stored as comma-separated text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ",".join(str(v) for v in value)

    def process_result_value(self, value, dialect):
        if not value:
            return ()
        return tuple(Decimal(part) for part in value.split(","))


class UTCDateTime(TypeDecorator):
    """Aware datetimes in, aware UTC datetimes out."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class RoundRow(Base):
    __tablename__ = "rounds"

    round_id = Column(String(64), primary_key=True)
    onchain_id = Column(String(66), nullable=False)
    onchain_key = Column(String(66), nullable=False, unique=True)
    phase = Column(String(16), nullable=False, default=RoundPhase.OPEN.value)
    prize_pool = Column(DecimalText, nullable=False)
    payout_table = Column(DecimalList, nullable=False)
    question_count = Column(Integer, nullable=False, default=0)
    ticket_tiers = Column(DecimalList, nullable=True)
    token_decimals = Column(Integer, nullable=False, default=6)
    opens_at = Column(UTCDateTime, nullable=True)
    closes_at = Column(UTCDateTime, nullable=True)
    finalized_at = Column(UTCDateTime, nullable=True)
    settled_at = Column(UTCDateTime, nullable=True)
    commitment_root = Column(String(66), nullable=True)
    settlement_tx = Column(String(66), nullable=True)


class EntryRow(Base):
    __tablename__ = "entries"

    entry_id = Column(String(64), primary_key=True)
    round_id = Column(
        String(64),
        ForeignKey("rounds.round_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    recipient = Column(String(42), nullable=False)
    recipient_key = Column(String(42), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    joined_at = Column(UTCDateTime, nullable=False)
    paid_at = Column(UTCDateTime, nullable=True)
    paid_amount = Column(DecimalText, nullable=True)
    rank = Column(Integer, nullable=True)
    prize = Column(DecimalText, nullable=True)

    __table_args__ = (
        UniqueConstraint("round_id", "recipient_key", name="uq_entry_round_recipient"),
    )


class SqlEntryLedger(EntryLedger):
    """EntryLedger backed by SQLAlchemy.

    Usage:
        ledger = SqlEntryLedger("sqlite:///podium.db")
        ledger = SqlEntryLedger("postgresql+psycopg://user@host/podium")
    """

    def __init__(self, url_or_engine: Union[str, Engine], create_schema: bool = True) -> None:
        if isinstance(url_or_engine, Engine):
            self._engine = url_or_engine
        else:
            self._engine = _make_engine(url_or_engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def create_round(self, round_: Round) -> Round:
        validate_new_round(round_)
        row = RoundRow(
            round_id=round_.round_id,
            onchain_id=round_.onchain_id,
            onchain_key=round_.onchain_id.lower(),
            phase=round_.phase.value,
            prize_pool=round_.prize_pool,
            payout_table=tuple(round_.payout_table),
            question_count=round_.question_count,
            ticket_tiers=tuple(round_.ticket_tiers),
            token_decimals=round_.token_decimals,
            opens_at=round_.opens_at,
            closes_at=round_.closes_at,
        )
        try:
            with self._sessions.begin() as session:
                if session.get(RoundRow, round_.round_id) is not None:
                    raise ValidationError(f"Round already exists: {round_.round_id}")
                taken = session.scalar(
                    select(RoundRow.round_id).where(RoundRow.onchain_key == row.onchain_key)
                )
                if taken is not None:
                    raise ValidationError(
                        f"onchain_id already in use: {round_.onchain_id} (round {taken})"
                    )
                session.add(row)
        except IntegrityError as exc:
            # Lost a race with a concurrent insert of the same id or onchain id.
            raise ValidationError(
                f"Round {round_.round_id} or onchain_id {round_.onchain_id} already exists"
            ) from exc
        return self.get_round(round_.round_id)

    def get_round(self, round_id: str) -> Round:
        with self._sessions() as session:
            return _to_round(self._load_round(session, round_id))

    def list_rounds(self) -> list[Round]:
        with self._sessions() as session:
            rows = session.scalars(select(RoundRow).order_by(RoundRow.round_id)).all()
            return [_to_round(row) for row in rows]

    def transition_phase(
        self, round_id: str, expected: RoundPhase, target: RoundPhase,
    ) -> Round:
        if target == RoundPhase.SETTLED:
            raise InvalidPhaseTransition("SETTLED is only set by record_settlement")
        with self._sessions.begin() as session:
            result = session.execute(
                update(RoundRow)
                .where(RoundRow.round_id == round_id, RoundRow.phase == expected.value)
                .values(phase=target.value)
            )
            if result.rowcount == 0:
                row = self._load_round(session, round_id)
                raise InvalidPhaseTransition(
                    f"Round {round_id} is {row.phase}, expected {expected.value}"
                )
        return self.get_round(round_id)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def add_entry(self, entry: Entry) -> Entry:
        validate_new_entry(entry)
        try:
            with self._sessions.begin() as session:
                _require_mutable(self._load_round(session, entry.round_id))
                if session.get(EntryRow, entry.entry_id) is not None:
                    raise ValidationError(f"Entry already exists: {entry.entry_id}")
                session.add(EntryRow(
                    entry_id=entry.entry_id,
                    round_id=entry.round_id,
                    recipient=entry.recipient,
                    recipient_key=entry.recipient.lower(),
                    score=entry.score,
                    joined_at=entry.joined_at or datetime.now(timezone.utc),
                    paid_at=entry.paid_at,
                    paid_amount=entry.paid_amount,
                ))
        except IntegrityError as exc:
            raise ValidationError(
                f"Recipient {entry.recipient} already has an entry in {entry.round_id}"
            ) from exc
        return self._get_entry(entry.entry_id)

    def record_payment(
        self, entry_id: str, paid_amount: Decimal, paid_at: Optional[datetime] = None,
    ) -> Entry:
        with self._sessions.begin() as session:
            row = self._load_entry(session, entry_id)
            _require_mutable(self._load_round(session, row.round_id))
            row.paid_amount = paid_amount
            row.paid_at = paid_at or datetime.now(timezone.utc)
        return self._get_entry(entry_id)

    def record_score(self, entry_id: str, score: int) -> Entry:
        with self._sessions.begin() as session:
            row = self._load_entry(session, entry_id)
            _require_mutable(self._load_round(session, row.round_id))
            row.score = score
        return self._get_entry(entry_id)

    def snapshot(self, round_id: str) -> RoundSnapshot:
        with self._sessions.begin() as session:
            return self._snapshot(session, round_id)

    # ------------------------------------------------------------------
    # Finalization and settlement
    # ------------------------------------------------------------------

    def apply_finalization(
        self, round_id: str, finalized_at: datetime, compute: FinalizeComputation,
    ) -> bool:
        with self._sessions.begin() as session:
            claimed = session.execute(
                update(RoundRow)
                .where(
                    RoundRow.round_id == round_id,
                    RoundRow.phase == RoundPhase.ENDED.value,
                    RoundRow.finalized_at.is_(None),
                )
                .values(finalized_at=finalized_at)
            )
            if claimed.rowcount == 0:
                row = self._load_round(session, round_id)
                if row.finalized_at is not None:
                    logger.info("Round %s already finalized; claim lost", round_id)
                    return False
                raise InvalidPhaseTransition(
                    f"Round {round_id} is {row.phase}; finalization requires ended"
                )

            snapshot = self._snapshot(session, round_id)
            outcomes = compute(snapshot)

            by_id = {o.entry_id: o for o in outcomes}
            rows = {
                row.entry_id: row
                for row in session.scalars(
                    select(EntryRow).where(EntryRow.round_id == round_id)
                )
            }
            unknown = set(by_id) - set(rows)
            if unknown:
                raise ValidationError(f"Outcomes reference unknown entries: {sorted(unknown)}")
            for entry_id, row in rows.items():
                outcome = by_id.get(entry_id)
                row.rank = outcome.rank if outcome else None
                row.prize = outcome.prize if outcome else None
            return True

    def record_settlement(
        self, round_id: str, commitment_root: str, tx_hash: Optional[str], settled_at: datetime,
    ) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                update(RoundRow)
                .where(
                    RoundRow.round_id == round_id,
                    RoundRow.phase == RoundPhase.ENDED.value,
                    RoundRow.finalized_at.is_not(None),
                    RoundRow.settled_at.is_(None),
                )
                .values(
                    commitment_root=commitment_root,
                    settlement_tx=tx_hash,
                    settled_at=settled_at,
                    phase=RoundPhase.SETTLED.value,
                )
            )
            if result.rowcount == 1:
                return True
            row = self._load_round(session, round_id)
            if row.settled_at is not None:
                return False
            raise InvalidPhaseTransition(
                f"Round {round_id} must be ended and finalized before settlement"
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _load_round(self, session: Session, round_id: str) -> RoundRow:
        row = session.get(RoundRow, round_id)
        if row is None:
            raise NotFound(f"Round not found: {round_id}")
        return row

    def _load_entry(self, session: Session, entry_id: str) -> EntryRow:
        row = session.get(EntryRow, entry_id)
        if row is None:
            raise NotFound(f"Entry not found: {entry_id}")
        return row

    def _get_entry(self, entry_id: str) -> Entry:
        with self._sessions() as session:
            return _to_entry(self._load_entry(session, entry_id))

    def _snapshot(self, session: Session, round_id: str) -> RoundSnapshot:
        round_row = self._load_round(session, round_id)
        rows = session.scalars(
            select(EntryRow)
            .where(EntryRow.round_id == round_id)
            .order_by(EntryRow.entry_id)
        ).all()
        return RoundSnapshot(
            round=_to_round(round_row),
            entries=[_to_entry(row) for row in rows],
        )


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def _require_mutable(row: RoundRow) -> None:
    if RoundPhase(row.phase) not in MUTABLE_ENTRY_PHASES:
        raise InvalidPhaseTransition(
            f"Round {row.round_id} is {row.phase}; entries are frozen"
        )


def _to_round(row: RoundRow) -> Round:
    return Round(
        round_id=row.round_id,
        onchain_id=row.onchain_id,
        prize_pool=row.prize_pool,
        payout_table=tuple(row.payout_table),
        phase=RoundPhase(row.phase),
        question_count=row.question_count,
        ticket_tiers=tuple(row.ticket_tiers or ()),
        token_decimals=row.token_decimals,
        opens_at=row.opens_at,
        closes_at=row.closes_at,
        finalized_at=row.finalized_at,
        settled_at=row.settled_at,
        commitment_root=row.commitment_root,
        settlement_tx=row.settlement_tx,
    )


def _to_entry(row: EntryRow) -> Entry:
    return Entry(
        entry_id=row.entry_id,
        round_id=row.round_id,
        recipient=row.recipient,
        score=row.score,
        joined_at=row.joined_at,
        paid_at=row.paid_at,
        paid_amount=row.paid_amount,
        rank=row.rank,
        prize=row.prize,
    )
