"""
Matching market orders against the pool and resting limit orders.
"""

import pytest

from marketcore.fills import (
    amount_for_shares_with_orders, compute_fills, sorted_opposing_orders,
)
from marketcore.models import Bet, Pool
from marketcore.pricing import probability


NOW = 1_700_000_000_000


def order(bet_id, outcome, limit_prob, order_amount, user_id="maker",
          created_time=NOW - 1000, amount=0.0):
    return Bet(id=bet_id, contract_id="c1", user_id=user_id, outcome=outcome,
               amount=amount, shares=0.0, prob_before=limit_prob,
               prob_after=limit_prob, created_time=created_time,
               limit_prob=limit_prob, order_amount=order_amount,
               is_filled=False)


# ---------------------------------------------------------------------------
# Pool only
# ---------------------------------------------------------------------------

def test_no_orders_fills_from_pool():
    result = compute_fills(Pool(100, 100), "YES", 10, None, [], {}, NOW)
    assert len(result.takers) == 1
    assert result.takers[0].matched_bet_id is None
    assert result.amount == pytest.approx(10)
    assert result.makers == []
    assert probability(result.pool) > 0.5


def test_taker_limit_stops_the_pool():
    result = compute_fills(Pool(100, 100), "YES", 100, 0.55, [], {}, NOW)
    assert probability(result.pool) == pytest.approx(0.55)
    assert result.amount < 100


def test_taker_limit_already_passed_fills_nothing():
    result = compute_fills(Pool(100, 100), "YES", 100, 0.4, [], {}, NOW)
    assert result.takers == []
    assert result.pool == Pool(100, 100)


# ---------------------------------------------------------------------------
# Resting orders
# ---------------------------------------------------------------------------

def test_pool_then_order_then_pool():
    maker = order("o1", "NO", 0.6, 40)
    result = compute_fills(Pool(100, 100), "YES", 100, None, [maker],
                           {"maker": 100.0}, NOW)

    assert len(result.takers) == 3
    first, matched, last = result.takers

    # Pool walks up to the order's price.
    assert first.matched_bet_id is None
    assert first.amount == pytest.approx(22.474487, abs=1e-5)

    # Order fills whole at its limit: 100 shares, taker 60, maker 40.
    assert matched.matched_bet_id == "o1"
    assert matched.shares == pytest.approx(100)
    assert matched.amount == pytest.approx(60)
    assert len(result.makers) == 1
    assert result.makers[0].amount == pytest.approx(40)
    assert result.makers[0].shares == pytest.approx(100)

    assert last.matched_bet_id is None
    assert result.amount == pytest.approx(100)
    assert probability(result.pool) > 0.6
    assert result.balance_by_user_id["maker"] == pytest.approx(60)


def test_unaffordable_maker_is_cancelled_and_skipped():
    maker = order("o1", "NO", 0.6, 40)
    result = compute_fills(Pool(100, 100), "YES", 100, None, [maker],
                           {"maker": 10.0}, NOW)
    assert result.orders_to_cancel == [maker]
    assert result.makers == []
    assert all(t.matched_bet_id is None for t in result.takers)
    assert result.amount == pytest.approx(100)
    assert result.balance_by_user_id["maker"] == 10.0


def test_taker_limit_below_order_never_reaches_it():
    maker = order("o1", "NO", 0.6, 40)
    result = compute_fills(Pool(100, 100), "YES", 100, 0.55, [maker],
                           {"maker": 100.0}, NOW)
    assert result.makers == []
    assert probability(result.pool) == pytest.approx(0.55)


def test_same_side_orders_are_ignored():
    same_side = order("o1", "YES", 0.6, 40)
    result = compute_fills(Pool(100, 100), "YES", 30, None, [same_side],
                           {"maker": 100.0}, NOW)
    assert result.makers == []


def test_no_taker_matches_yes_orders():
    maker = order("o1", "YES", 0.45, 45)
    result = compute_fills(Pool(100, 100), "NO", 100, None, [maker],
                           {"maker": 100.0}, NOW)
    assert [m.bet.id for m in result.makers] == ["o1"]
    # NO taker pays 1 - 0.45 per share.
    matched = [t for t in result.takers if t.matched_bet_id == "o1"][0]
    assert matched.amount == pytest.approx(matched.shares * 0.55)


def test_partially_filled_order_only_offers_the_rest():
    maker = order("o1", "NO", 0.5, 40, amount=30)
    result = compute_fills(Pool(100, 100), "YES", 100, None, [maker],
                           {"maker": 100.0}, NOW)
    assert result.makers[0].amount == pytest.approx(10)
    assert result.makers[0].shares == pytest.approx(20)


def test_balances_chain_across_calls():
    a = order("a", "NO", 0.5, 40)
    b = order("b", "NO", 0.5, 40)
    first = compute_fills(Pool(100, 100), "YES", 20, None, [a],
                          {"maker": 50.0}, NOW)
    assert first.balance_by_user_id["maker"] == pytest.approx(30)
    second = compute_fills(Pool(100, 100), "YES", 80, None, [b],
                           first.balance_by_user_id, NOW)
    assert second.orders_to_cancel == [b]


def test_orders_sorted_best_price_then_oldest():
    orders = [
        order("late", "NO", 0.6, 10, created_time=NOW - 10),
        order("early", "NO", 0.6, 10, created_time=NOW - 20),
        order("cheap", "NO", 0.55, 10, created_time=NOW),
        order("same", "YES", 0.4, 10),
    ]
    assert [o.id for o in sorted_opposing_orders(orders, "YES")] == \
        ["cheap", "early", "late"]
    assert [o.id for o in sorted_opposing_orders(orders, "NO")] == ["same"]


def test_fills_are_stamped_with_now():
    result = compute_fills(Pool(100, 100), "NO", 5, None, [], {}, NOW)
    assert result.takers[0].timestamp == NOW


# ---------------------------------------------------------------------------
# Inverse walk
# ---------------------------------------------------------------------------

def test_amount_for_shares_with_orders_matches_compute_fills():
    maker = order("o1", "NO", 0.6, 40)
    result = compute_fills(Pool(100, 100), "YES", 100, None, [maker],
                           {"maker": 100.0}, NOW)
    amount = amount_for_shares_with_orders(Pool(100, 100), result.shares,
                                           "YES", [maker], {"maker": 100.0})
    assert amount == pytest.approx(100)


def test_amount_for_shares_with_orders_within_first_segment():
    maker = order("o1", "NO", 0.6, 40)
    result = compute_fills(Pool(100, 100), "YES", 5, None, [maker],
                           {"maker": 100.0}, NOW)
    amount = amount_for_shares_with_orders(Pool(100, 100), result.shares,
                                           "YES", [maker], {"maker": 100.0})
    assert amount == pytest.approx(5)


def test_amount_for_zero_shares():
    assert amount_for_shares_with_orders(Pool(100, 100), 0, "YES", [], {}) == 0
