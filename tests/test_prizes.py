"""Tests for the prize calculator and payout validation."""

from datetime import timedelta
from decimal import Decimal

import pytest

from podium.errors import ValidationError
from podium.payout.prizes import (
    PrizeCalculator,
    describe_distribution,
    parse_payout_table,
    validate_payout_table,
    validate_prize_pool,
    validate_ticket_tiers,
)
from podium.payout.ranking import rank_entries

from conftest import STANDARD_TABLE, T0, addr, make_entry


def _ranked(count: int):
    entries = [
        make_entry(f"e{i}", addr(i + 1), score=100 - i, joined_at=T0 + timedelta(seconds=i))
        for i in range(count)
    ]
    return rank_entries(entries)


class TestAllocate:
    def test_three_winners_split_the_pool(self) -> None:
        calc = PrizeCalculator()
        dist = calc.allocate(_ranked(3), Decimal("100"), STANDARD_TABLE)
        assert [o.prize for o in dist.outcomes] == [
            Decimal("60.000000"), Decimal("30.000000"), Decimal("10.000000"),
        ]
        assert dist.total_distributed == Decimal("100")

    def test_unfilled_slots_are_not_redistributed(self) -> None:
        calc = PrizeCalculator()
        dist = calc.allocate(_ranked(2), Decimal("100"), STANDARD_TABLE)
        assert [o.prize for o in dist.outcomes] == [Decimal("60"), Decimal("30")]
        assert dist.total_distributed == Decimal("90")

    def test_ranks_beyond_table_get_zero(self) -> None:
        calc = PrizeCalculator()
        dist = calc.allocate(_ranked(5), Decimal("100"), STANDARD_TABLE)
        assert [o.prize for o in dist.outcomes[3:]] == [Decimal("0"), Decimal("0")]
        assert len(dist.winners) == 3

    def test_prizes_truncate_to_token_precision(self) -> None:
        calc = PrizeCalculator(token_decimals=6)
        dist = calc.allocate(_ranked(1), Decimal("1"), (Decimal("0.3333333"),))
        assert dist.outcomes[0].prize == Decimal("0.333333")

    def test_total_never_exceeds_pool(self) -> None:
        calc = PrizeCalculator(token_decimals=2)
        table = (Decimal("0.3333"), Decimal("0.3333"), Decimal("0.3333"))
        dist = calc.allocate(_ranked(3), Decimal("10.01"), table)
        assert dist.total_distributed <= Decimal("10.01") * sum(table)

    def test_platform_fee_is_taken_first(self) -> None:
        calc = PrizeCalculator(platform_fee_bps=500)
        dist = calc.allocate(_ranked(1), Decimal("100"), STANDARD_TABLE)
        assert dist.platform_fee == Decimal("5")
        assert dist.net_pool == Decimal("95")
        assert dist.outcomes[0].prize == Decimal("57")

    def test_non_positive_pool_rejected(self) -> None:
        calc = PrizeCalculator()
        with pytest.raises(ValidationError):
            calc.allocate(_ranked(1), Decimal("0"), STANDARD_TABLE)

    def test_no_entries_no_outcomes(self) -> None:
        dist = PrizeCalculator().allocate([], Decimal("100"), STANDARD_TABLE)
        assert dist.outcomes == []
        assert dist.total_distributed == Decimal("0")


class TestBaseUnits:
    def test_usdc_base_units(self) -> None:
        assert PrizeCalculator(token_decimals=6).to_base_units(Decimal("60")) == 60_000_000

    def test_sub_unit_remainder_truncated(self) -> None:
        assert PrizeCalculator(token_decimals=6).to_base_units(Decimal("0.0000019")) == 1

    def test_invalid_fee_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PrizeCalculator(platform_fee_bps=10_000)


class TestValidation:
    @pytest.mark.parametrize("table", [
        (),
        (Decimal("0"),),
        (Decimal("1.5"),),
        (Decimal("0.7"), Decimal("0.4")),
        (Decimal("NaN"),),
    ])
    def test_bad_tables_rejected(self, table) -> None:
        with pytest.raises(ValidationError):
            validate_payout_table(table)

    def test_table_paying_full_pool_accepted(self) -> None:
        validate_payout_table((Decimal("0.5"), Decimal("0.5")))

    def test_parse_payout_table(self) -> None:
        assert parse_payout_table("0.60, 0.30,0.10") == STANDARD_TABLE

    def test_parse_malformed_table(self) -> None:
        with pytest.raises(ValidationError):
            parse_payout_table("0.6,abc")

    @pytest.mark.parametrize("pool", [Decimal("0"), Decimal("-1"), Decimal("Infinity")])
    def test_bad_pools_rejected(self, pool) -> None:
        with pytest.raises(ValidationError):
            validate_prize_pool(pool)

    def test_payment_outside_tiers_rejected(self) -> None:
        entry = make_entry("e1", addr(1), joined_at=T0)  # paid 5
        with pytest.raises(ValidationError):
            validate_ticket_tiers([entry], (Decimal("2"), Decimal("10")))

    def test_payment_inside_tiers_accepted(self) -> None:
        entry = make_entry("e1", addr(1), joined_at=T0)
        validate_ticket_tiers([entry], (Decimal("5"), Decimal("10")))

    def test_unpaid_entries_ignore_tiers(self) -> None:
        entry = make_entry("e1", addr(1), joined_at=T0, paid=False)
        validate_ticket_tiers([entry], (Decimal("10"),))


def test_describe_distribution_lists_winners() -> None:
    dist = PrizeCalculator().allocate(_ranked(2), Decimal("100"), STANDARD_TABLE)
    text = describe_distribution(dist)
    assert "Net Pool: 100" in text
    assert addr(1) in text
    assert addr(2) in text
