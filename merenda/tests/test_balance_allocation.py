from decimal import Decimal

import pytest

from merenda.services.balance_allocation import (
    BalanceSnapshot,
    allocate_with_balances,
    cap_and_redistribute,
)
from merenda.services.errors import InternalAllocationError


def _snap(modality_id, repasse, available, initial=None):
    return BalanceSnapshot(
        balance_id=100 + modality_id,
        modality_id=modality_id,
        name=f"M{modality_id}",
        financial_code=None,
        repasse=Decimal(repasse),
        initial_quantity=available if initial is None else initial,
        available_quantity=available,
    )


def test_split_follows_repasse_when_balances_are_enough():
    result = allocate_with_balances(10, Decimal("2.50"), [_snap(1, "600", 100), _snap(2, "400", 100)])

    assert not result.excluded
    assert [(s.modality_id, s.quantity) for s in result.splits] == [(1, 6), (2, 4)]
    assert [s.value for s in result.splits] == [Decimal("15.00"), Decimal("10.00")]
    assert [s.balance_id for s in result.splits] == [101, 102]


def test_share_is_capped_and_excess_moves_to_other_modality():
    result = allocate_with_balances(10, Decimal("1"), [_snap(1, "600", 3), _snap(2, "400", 100)])

    assert [(s.modality_id, s.quantity) for s in result.splits] == [(1, 3), (2, 7)]
    for s in result.splits:
        assert s.quantity <= s.available_quantity


def test_modalities_without_balance_are_skipped_and_percentages_renormalized():
    result = allocate_with_balances(
        10,
        Decimal("1"),
        [_snap(1, "500", 0, initial=50), _snap(2, "300", 100), _snap(3, "200", 100), _snap(4, "900", 0, initial=0)],
    )

    assert [s.modality_id for s in result.splits] == [2, 3]
    assert [s.quantity for s in result.splits] == [6, 4]
    assert sum(s.percentual for s in result.splits) == Decimal("100")


def test_item_is_excluded_when_total_balance_is_short():
    """
    GIVEN 10 demandés, 4 + 3 disponibles
    THEN item exclu, l'alerte nomme le manque (3)
    """
    result = allocate_with_balances(10, Decimal("1"), [_snap(1, "1", 4), _snap(2, "1", 3)], label="Arroz")

    assert result.excluded
    assert result.splits == []
    assert "Arroz" in result.alert
    assert "required 10" in result.alert
    assert "available 7" in result.alert
    assert "shortfall 3" in result.alert


def test_item_is_excluded_when_no_modality_has_balance():
    result = allocate_with_balances(5, Decimal("1"), [_snap(1, "1", 0), _snap(2, "1", 0)], label="Feijão")

    assert result.excluded
    assert "Feijão" in result.alert
    assert "no modality" in result.alert


def test_item_is_excluded_when_every_eligible_repasse_is_zero():
    """
    GIVEN la seule modalidade avec saldo a un repasse nul
    THEN l'item est exclu avec une alerte, sans exception
    """
    result = allocate_with_balances(10, Decimal("1"), [_snap(1, "0", 100), _snap(2, "400", 0)])

    assert result.excluded
    assert result.splits == []
    assert "positive repasse" in result.alert


def test_zero_repasse_modality_next_to_a_weighted_one_gets_nothing():
    result = allocate_with_balances(10, Decimal("1"), [_snap(1, "0", 100), _snap(2, "400", 100)])

    assert [(s.modality_id, s.quantity) for s in result.splits] == [(1, 0), (2, 10)]


def test_exact_total_balance_is_fully_used():
    result = allocate_with_balances(7, Decimal("1"), [_snap(1, "500", 2), _snap(2, "500", 5)])

    assert [(s.modality_id, s.quantity) for s in result.splits] == [(1, 2), (2, 5)]


def test_cap_and_redistribute_fills_largest_spare_first():
    final = cap_and_redistribute([("A", 8), ("B", 1), ("C", 1)], {"A": 2, "B": 3, "C": 10})

    assert final == [("A", 2), ("B", 1), ("C", 7)]


def test_cap_and_redistribute_keeps_shares_within_capacity():
    final = cap_and_redistribute([("A", 5), ("B", 5)], {"A": 5, "B": 5})

    assert final == [("A", 5), ("B", 5)]


def test_cap_and_redistribute_raises_when_excess_cannot_be_placed():
    with pytest.raises(InternalAllocationError):
        cap_and_redistribute([("A", 8), ("B", 2)], {"A": 3, "B": 3})
