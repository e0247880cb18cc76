"""Prize calculator — tiered percentage split of the prize pool.

    net_pool = prize_pool - platform_fee
    prize(rank) = net_pool × payout_table[rank - 1]   for rank ≤ len(table)
    prize(rank) = 0                                    otherwise

Rounding truncates to the payment token's precision (ROUND_DOWN), never
up, so the sum of prizes can only fall short of the allocation, never
exceed it.

If fewer eligible entries exist than payout slots, only the filled slots
are paid. The allocation for unfilled slots is NOT redistributed.

Invariant: sum(prizes) ≤ net_pool × sum(payout_table), with equality
(up to truncation) when entries ≥ len(payout_table).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Iterable, Sequence

from podium.errors import ValidationError
from podium.models.round import Entry, EntryOutcome


# Basis points denominator (10_000 bps = 100%).
BPS = Decimal("10000")


def parse_payout_table(raw: str) -> tuple[Decimal, ...]:
    """Parse a comma-separated payout table such as "0.60,0.30,0.10"."""
    try:
        table = tuple(Decimal(part.strip()) for part in raw.split(",") if part.strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Malformed payout table: {raw!r}") from exc
    validate_payout_table(table)
    return table


def validate_payout_table(table: Sequence[Decimal]) -> None:
    """Reject empty tables, out-of-range shares, and tables paying over 100%."""
    if not table:
        raise ValidationError("Payout table must have at least one slot")
    for position, share in enumerate(table, start=1):
        if not share.is_finite() or share <= 0 or share > 1:
            raise ValidationError(
                f"Payout share for rank {position} must be in (0, 1], got {share}"
            )
    total = sum(table, Decimal("0"))
    if total > 1:
        raise ValidationError(f"Payout table sums to {total}, exceeding 100% of the pool")


def validate_prize_pool(prize_pool: Decimal) -> None:
    if not prize_pool.is_finite() or prize_pool <= 0:
        raise ValidationError(f"Prize pool must be positive, got {prize_pool}")


def validate_ticket_tiers(entries: Iterable[Entry], tiers: Sequence[Decimal]) -> None:
    """Every paid entry's amount must be one of the round's ticket tiers.

    An empty tier list only requires a positive amount when one is recorded.
    """
    allowed = set(tiers)
    for entry in entries:
        if not entry.is_eligible:
            continue
        amount = entry.paid_amount
        if amount is not None and amount <= 0:
            raise ValidationError(
                f"Entry {entry.entry_id} has non-positive payment {amount}"
            )
        if allowed and amount not in allowed:
            raise ValidationError(
                f"Entry {entry.entry_id} paid {amount}, outside allowed tiers "
                f"{sorted(allowed)}"
            )


@dataclass(frozen=True)
class PrizeDistribution:
    """Full breakdown of one allocation, published in logs."""
    gross_pool: Decimal
    platform_fee: Decimal
    net_pool: Decimal
    outcomes: list[EntryOutcome]

    @property
    def total_distributed(self) -> Decimal:
        return sum((o.prize for o in self.outcomes), Decimal("0"))

    @property
    def winners(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if o.prize > 0]


class PrizeCalculator:
    """Allocates a prize pool over ranked entries.

    Usage:
        calculator = PrizeCalculator(token_decimals=6)
        distribution = calculator.allocate(
            ranked, prize_pool=Decimal("100"),
            payout_table=(Decimal("0.60"), Decimal("0.30"), Decimal("0.10")),
        )
    """

    def __init__(self, token_decimals: int = 6, platform_fee_bps: int = 0) -> None:
        if token_decimals < 0:
            raise ValidationError("token_decimals must be non-negative")
        if not 0 <= platform_fee_bps < 10_000:
            raise ValidationError(
                f"Platform fee must be in [0, 10000) bps, got {platform_fee_bps}"
            )
        self._token_decimals = token_decimals
        self._quantum = Decimal(1).scaleb(-token_decimals)
        self._fee_bps = Decimal(platform_fee_bps)

    @property
    def token_decimals(self) -> int:
        return self._token_decimals

    def for_decimals(self, token_decimals: int) -> PrizeCalculator:
        """The same fee policy at another token precision."""
        if token_decimals == self._token_decimals:
            return self
        return PrizeCalculator(token_decimals, int(self._fee_bps))

    def allocate(
        self,
        ranked: Sequence[tuple[int, Entry]],
        prize_pool: Decimal,
        payout_table: Sequence[Decimal],
    ) -> PrizeDistribution:
        """Compute every ranked entry's prize. Pure; no side effects."""
        validate_prize_pool(prize_pool)
        validate_payout_table(payout_table)

        platform_fee = self._truncate(prize_pool * self._fee_bps / BPS)
        net_pool = prize_pool - platform_fee

        outcomes: list[EntryOutcome] = []
        for rank, entry in ranked:
            if rank <= len(payout_table):
                prize = self._truncate(net_pool * payout_table[rank - 1])
            else:
                prize = Decimal("0")
            outcomes.append(EntryOutcome(
                entry_id=entry.entry_id,
                recipient=entry.recipient,
                rank=rank,
                prize=prize,
            ))

        return PrizeDistribution(
            gross_pool=prize_pool,
            platform_fee=platform_fee,
            net_pool=net_pool,
            outcomes=outcomes,
        )

    def to_base_units(self, prize: Decimal) -> int:
        """Convert a token amount to integer base units, truncating."""
        return to_base_units(prize, self._token_decimals)

    def _truncate(self, amount: Decimal) -> Decimal:
        return amount.quantize(self._quantum, rounding=ROUND_DOWN)


def to_base_units(amount: Decimal, token_decimals: int) -> int:
    """Integer base units of a token amount at the given precision, truncating."""
    quantum = Decimal(1).scaleb(-token_decimals)
    return int(amount.quantize(quantum, rounding=ROUND_DOWN).scaleb(token_decimals))


def describe_distribution(distribution: PrizeDistribution) -> str:
    """Render a distribution for the finalization log."""
    lines = [
        "=== Prize Distribution ===",
        f"Gross Pool: {distribution.gross_pool}",
        f"Platform Fee: {distribution.platform_fee}",
        f"Net Pool: {distribution.net_pool}",
        f"Distributed: {distribution.total_distributed}",
        "Rank | Prize      | Recipient",
    ]
    for outcome in distribution.winners:
        lines.append(f"#{outcome.rank:<3} | {str(outcome.prize):>10} | {outcome.recipient}")
    return "\n".join(lines)
