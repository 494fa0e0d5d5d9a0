"""
Redeeming matched YES/NO pairs.
"""

import pytest

from marketcore.errors import InvariantViolation, NotFound
from marketcore.models import (
    ADD_ANSWERS_DISABLED, CPMM_BINARY, Bet, bets_collection, contract_path,
    user_path,
)
from marketcore.redemption import (
    compute_redemption, proportional_loan_payment, redeem_shares,
    redemption_bets,
)


NOW = 1_700_000_000_000


def holding(outcome, shares, loan=0.0):
    return Bet(id=f"{outcome}{shares}", contract_id="c1", user_id="bob",
               outcome=outcome, amount=shares / 2, shares=shares,
               prob_before=0.5, prob_after=0.5, created_time=NOW,
               loan_amount=loan)


@pytest.fixture
def binary(seed):
    seed.user("bob", balance=100.0)
    seed.contract("c1", mechanism=CPMM_BINARY, pool_yes=100, pool_no=100,
                  prob=0.5, add_answers_mode=ADD_ANSWERS_DISABLED)
    return seed


async def redeem(store, user_id="bob", contract_id="c1"):
    async def fn(tx):
        contract = await tx.get(contract_path(contract_id))
        return await redeem_shares(tx, user_id, contract, NOW)
    return await store.run_transaction(fn)


# ---------------------------------------------------------------------------
# Pure pieces
# ---------------------------------------------------------------------------

def test_compute_redemption_takes_the_smaller_side():
    r = compute_redemption([holding("YES", 10), holding("NO", 4)])
    assert r.shares == 4
    assert r.loan_payment == 0
    assert r.net_amount == 4


def test_compute_redemption_with_one_side_only():
    assert compute_redemption([holding("YES", 10)]).shares == 0


def test_proportional_loan_payment():
    assert proportional_loan_payment(6, 5, 10, 5) == pytest.approx(3)
    assert proportional_loan_payment(6, 0, 0, 0) == 0
    r = compute_redemption([holding("YES", 10, loan=3), holding("NO", 10, loan=1)])
    assert r.loan_payment == pytest.approx(4)
    assert r.net_amount == pytest.approx(6)


def test_custom_loan_policy():
    r = compute_redemption([holding("YES", 10, loan=4), holding("NO", 10)],
                           loan_policy=lambda loan, *_: 0.0)
    assert r.net_amount == 10


def test_redemption_bets_sell_both_sides_at_prob():
    yes, no = redemption_bets(10, 2, 0.3, "a1")
    assert (yes.outcome, yes.shares, yes.amount) == ("YES", -10, pytest.approx(-3))
    assert (no.outcome, no.shares, no.amount) == ("NO", -10, pytest.approx(-7))
    assert yes.loan_amount + no.loan_amount == pytest.approx(-2)
    assert yes.is_redemption and no.is_redemption
    assert yes.answer_id == no.answer_id == "a1"


# ---------------------------------------------------------------------------
# In a transaction
# ---------------------------------------------------------------------------

async def test_redeem_pair_credits_balance(binary, store):
    binary.bet("c1", "y", "bob", "YES", 10)
    binary.bet("c1", "n", "bob", "NO", 10, created_time=NOW - 100, prob_after=0.4)

    total = await redeem(store)

    assert total == pytest.approx(10)
    assert store.read(user_path("bob")).balance == pytest.approx(110)
    sales = [b for b in store.select(bets_collection("c1")) if b.is_redemption]
    assert len(sales) == 2
    # Priced at the latest bet's probability.
    by_outcome = {b.outcome: b for b in sales}
    assert by_outcome["YES"].amount == pytest.approx(-4)
    assert by_outcome["NO"].amount == pytest.approx(-6)


async def test_redeem_repays_loan(binary, store):
    binary.bet("c1", "y", "bob", "YES", 10, loan_amount=2.0)
    binary.bet("c1", "n", "bob", "NO", 10, loan_amount=2.0)
    assert await redeem(store) == pytest.approx(6)
    assert store.read(user_path("bob")).balance == pytest.approx(106)


async def test_redeem_twice_is_a_no_op(binary, store):
    binary.bet("c1", "y", "bob", "YES", 10)
    binary.bet("c1", "n", "bob", "NO", 7)
    assert await redeem(store) == pytest.approx(7)
    commits = store.commits

    assert await redeem(store) == 0
    assert store.read(user_path("bob")).balance == pytest.approx(107)
    assert store.commits == commits


async def test_redeem_per_answer(seed, store):
    seed.user("bob", balance=0.0)
    seed.contract("c1", should_answers_sum_to_one=False)
    seed.bet("c1", "a1y", "bob", "YES", 10, answer_id="a1")
    seed.bet("c1", "a1n", "bob", "NO", 10, answer_id="a1")
    seed.bet("c1", "a2y", "bob", "YES", 5, answer_id="a2")

    assert await redeem(store) == pytest.approx(10)
    sales = [b for b in store.select(bets_collection("c1")) if b.is_redemption]
    assert {b.answer_id for b in sales} == {"a1"}


async def test_non_finite_redemption_is_an_invariant_violation(binary, store):
    binary.bet("c1", "y", "bob", "YES", 10, loan_amount=float("nan"))
    binary.bet("c1", "n", "bob", "NO", 10)
    with pytest.raises(InvariantViolation):
        await redeem(store)
    assert store.read(user_path("bob")).balance == 100


async def test_redeem_unknown_user(binary, store):
    with pytest.raises(NotFound):
        await redeem(store, user_id="ghost")


async def test_engine_redeem(engine, binary):
    binary.bet("c1", "y", "bob", "YES", 3)
    binary.bet("c1", "n", "bob", "NO", 3)
    result = engine.finish(await engine.redeem("bob", "c1"))
    assert result == {"status": "success", "redeemed": pytest.approx(3)}


async def test_engine_redeem_unknown_contract(engine, binary):
    with pytest.raises(NotFound):
        await engine.redeem("bob", "nope")
