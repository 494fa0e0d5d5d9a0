"""
Bets, limit orders, cancels, liquidity and topics, through the
settlement engine.
"""

import pytest

from marketcore import config
from marketcore.errors import BadRequest, Forbidden, InsufficientBalance, NotFound
from marketcore.models import (
    ADD_ANSWERS_DISABLED, CPMM_BINARY, answer_path, answers_collection,
    bet_path, contract_path, user_path,
)
from marketcore.pricing import probability


@pytest.fixture
def binary(seed):
    seed.user("bob")
    seed.user("carol")
    seed.contract("c1", mechanism=CPMM_BINARY, pool_yes=100, pool_no=100,
                  prob=0.5, add_answers_mode=ADD_ANSWERS_DISABLED,
                  total_liquidity=100)
    return seed


@pytest.fixture
def multi(seed):
    seed.user("bob")
    seed.contract("c1")
    seed.answer("c1", "a0", 50, 50, index=0)
    seed.answer("c1", "a1", 70, 30, index=1)
    seed.answer("c1", "a2", 80, 20, index=2)
    return seed


def balance(store, user_id):
    return store.read(user_path(user_id)).balance


# ---------------------------------------------------------------------------
# Binary
# ---------------------------------------------------------------------------

async def test_binary_market_order(engine, binary, store):
    placed = engine.finish(await engine.place_bet("c1", "bob", 10, "YES"))

    assert placed.bet.amount == pytest.approx(10)
    assert placed.bet.shares > 10
    assert placed.bet.is_filled
    contract = store.read(contract_path("c1"))
    assert contract.prob > 0.5
    assert contract.prob == pytest.approx(placed.bet.prob_after)
    assert balance(store, "bob") == pytest.approx(990)
    assert store.read(bet_path("c1", placed.bet.id)) is not None


async def test_bet_rejects_bad_input(engine, binary):
    with pytest.raises(BadRequest):
        await engine.place_bet("c1", "bob", 10, "MAYBE")
    with pytest.raises(BadRequest):
        await engine.place_bet("c1", "bob", 0, "YES")
    with pytest.raises(BadRequest):
        await engine.place_bet("c1", "bob", 10, "YES", limit_prob=1.5)
    with pytest.raises(BadRequest):
        await engine.place_bet("c1", "bob", 10, "YES", answer_id="a0")


async def test_bet_needs_balance(engine, binary):
    binary.user("bob", balance=5.0)
    with pytest.raises(InsufficientBalance):
        await engine.place_bet("c1", "bob", 10, "YES")


async def test_bet_on_closed_market(engine, binary):
    binary.contract("c1", mechanism=CPMM_BINARY, pool_yes=100, pool_no=100,
                    close_time=1)
    with pytest.raises(Forbidden):
        await engine.place_bet("c1", "bob", 10, "YES")


async def test_bet_on_missing_market(engine, binary):
    with pytest.raises(NotFound):
        await engine.place_bet("nope", "bob", 10, "YES")


# ---------------------------------------------------------------------------
# Limit orders
# ---------------------------------------------------------------------------

async def test_limit_order_rests_then_fills(engine, binary, store):
    order = (await engine.place_bet("c1", "bob", 40, "NO", limit_prob=0.6)).result.bet
    assert order.amount == 0
    assert not order.is_filled
    assert order.order_amount == 40
    assert balance(store, "bob") == 1000

    taker = (await engine.place_bet("c1", "carol", 100, "YES")).result.bet

    assert taker.amount == pytest.approx(100)
    assert [f.matched_bet_id for f in taker.fills].count(order.id) == 1
    filled = store.read(bet_path("c1", order.id))
    assert filled.is_filled
    assert filled.amount == pytest.approx(40)
    assert filled.shares == pytest.approx(100)
    assert filled.fills[0].matched_bet_id == taker.id
    assert balance(store, "bob") == pytest.approx(960)
    assert balance(store, "carol") == pytest.approx(900)


async def test_limit_order_partial_fill(engine, binary, store):
    bet = (await engine.place_bet("c1", "bob", 100, "YES",
                                  limit_prob=0.55)).result.bet
    assert 0 < bet.amount < 100
    assert not bet.is_filled
    assert bet.prob_after == pytest.approx(0.55)
    assert balance(store, "bob") == pytest.approx(1000 - bet.amount)


async def test_unaffordable_order_is_cancelled_by_taker(engine, binary, store):
    await engine.place_bet("c1", "bob", 40, "NO", limit_prob=0.6)
    order_id = next(b.id for b in store.select("contracts/c1/bets"))
    binary.user("bob", balance=1.0)

    placed = (await engine.place_bet("c1", "carol", 100, "YES")).result
    assert placed.cancelled_bet_ids == [order_id]
    assert store.read(bet_path("c1", order_id)).is_cancelled


async def test_cancel_order(engine, binary, store):
    order = (await engine.place_bet("c1", "bob", 40, "NO", limit_prob=0.6)).result.bet

    with pytest.raises(Forbidden):
        await engine.cancel_bet(order.id, "carol")

    cancelled = engine.finish(await engine.cancel_bet(order.id, "bob"))
    assert cancelled.is_cancelled
    assert store.read(bet_path("c1", order.id)).is_cancelled

    with pytest.raises(BadRequest):
        await engine.cancel_bet(order.id, "bob")
    with pytest.raises(NotFound):
        await engine.cancel_bet("nope", "bob")


async def test_cancel_market_order_is_refused(engine, binary):
    bet = (await engine.place_bet("c1", "bob", 10, "YES")).result.bet
    with pytest.raises(BadRequest):
        await engine.cancel_bet(bet.id, "bob")


# ---------------------------------------------------------------------------
# Multi-answer
# ---------------------------------------------------------------------------

async def test_independent_answer_bet_moves_one_pool(engine, seed, store):
    seed.user("bob")
    seed.contract("c1", should_answers_sum_to_one=False)
    seed.answer("c1", "a0", 100, 100, index=0)
    seed.answer("c1", "a1", 100, 100, index=1)

    placed = (await engine.place_bet("c1", "bob", 10, "YES",
                                     answer_id="a0")).result
    assert placed.extra_bets == []
    assert store.read(answer_path("c1", "a0")).prob > 0.5
    assert store.read(answer_path("c1", "a1")).prob == 0.5


async def test_multi_bet_needs_answer(engine, multi):
    with pytest.raises(BadRequest):
        await engine.place_bet("c1", "bob", 10, "YES")
    with pytest.raises(NotFound):
        await engine.place_bet("c1", "bob", 10, "YES", answer_id="zz")


@pytest.mark.parametrize("outcome", ["YES", "NO"])
async def test_sum_to_one_bet_keeps_sum(engine, multi, store, outcome):
    placed = engine.finish(await engine.place_bet("c1", "bob", 10, outcome,
                                                  answer_id="a0"))
    await engine.drain()

    answers = store.select(answers_collection("c1"))
    assert sum(a.prob for a in answers) == pytest.approx(1, abs=1e-6)
    for a in answers:
        assert a.prob == pytest.approx(probability(a.pool))
    assert placed.bet.answer_id == "a0"
    assert placed.bet.outcome == outcome
    assert len(placed.extra_bets) == 2
    assert balance(store, "bob") == pytest.approx(990, abs=1e-6)


async def test_sum_to_one_limit_order_rests_the_remainder(engine, multi, store):
    multi.user("carol")
    placed = (await engine.place_bet("c1", "bob", 500, "YES", answer_id="a0",
                                     limit_prob=0.6)).result
    order = placed.bet
    spent = order.amount + sum(b.amount for b in placed.extra_bets)

    assert 0 < spent < 500
    assert not order.is_filled
    assert order.limit_prob == 0.6
    assert order.order_amount == pytest.approx(order.amount + 500 - spent)
    assert store.read(answer_path("c1", "a0")).prob == pytest.approx(0.6, abs=1e-6)
    answers = store.select(answers_collection("c1"))
    assert sum(a.prob for a in answers) == pytest.approx(1, abs=1e-6)
    assert balance(store, "bob") == pytest.approx(1000 - spent, abs=1e-6)

    taker = (await engine.place_bet("c1", "carol", 20, "NO",
                                    answer_id="a0")).result.bet
    assert order.id in [f.matched_bet_id for f in taker.fills]
    assert store.read(bet_path("c1", order.id)).amount > order.amount


async def test_sum_to_one_limit_already_passed_only_rests(engine, multi, store):
    order = (await engine.place_bet("c1", "bob", 50, "YES", answer_id="a1",
                                    limit_prob=0.2)).result.bet
    assert order.amount == 0
    assert order.order_amount == pytest.approx(50)
    assert store.read(answer_path("c1", "a1")).prob == pytest.approx(0.3)
    assert balance(store, "bob") == 1000


async def test_sum_to_one_bet_spends_through_an_order_on_another_answer(
        engine, seed, store):
    seed.user("bob")
    seed.user("maker")
    seed.contract("c2")
    seed.answer("c2", "a0", 50, 50, index=0)
    seed.answer("c2", "a1", 50, 50, index=1)
    seed.limit_order("c2", "o1", "maker", "YES", 0.45, 20, answer_id="a1")

    placed = engine.finish(await engine.place_bet("c2", "bob", 30, "YES",
                                                  answer_id="a0"))
    await engine.drain()

    assert placed.bet.is_filled
    assert balance(store, "bob") == pytest.approx(970, abs=1e-6)
    assert "maker" in placed.maker_user_ids
    order = store.read(bet_path("c2", "o1"))
    assert 0 < order.amount < 20
    assert not order.is_filled
    assert store.read(answer_path("c2", "a0")).prob == pytest.approx(0.55, abs=1e-6)
    assert store.read(answer_path("c2", "a1")).prob == pytest.approx(0.45, abs=1e-6)


async def test_bet_follows_contract(engine, multi, store, notifier):
    engine.finish(await engine.place_bet("c1", "bob", 10, "YES",
                                         answer_id="a1"))
    await engine.drain()
    assert "bob" in store.read(contract_path("c1")).follower_ids
    assert [m["kind"] for m in notifier.sent] == ["revalidate"]


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

async def test_add_liquidity_binary(engine, binary, store):
    provision = engine.finish(await engine.add_liquidity("c1", "bob", 50))
    contract = store.read(contract_path("c1"))
    assert contract.prob == pytest.approx(0.5)
    assert contract.total_liquidity == pytest.approx(150)
    assert provision.liquidity == pytest.approx(50)
    assert balance(store, "bob") == pytest.approx(950)


async def test_add_liquidity_sum_to_one(engine, multi, store):
    before = {a.id: a for a in store.select(answers_collection("c1"))}
    await engine.add_liquidity("c1", "bob", 30)
    after = store.select(answers_collection("c1"))
    for a in after:
        assert a.prob == pytest.approx(before[a.id].prob)
        assert a.pool_yes > before[a.id].pool_yes
    assert sum(a.prob for a in after) == pytest.approx(1)


async def test_add_liquidity_independent(engine, seed, store):
    seed.user("bob")
    seed.contract("c1", should_answers_sum_to_one=False)
    seed.answer("c1", "a0", 100, 100, index=0)
    seed.answer("c1", "a1", 25, 75, index=1)
    await engine.add_liquidity("c1", "bob", 20)
    a0 = store.read(answer_path("c1", "a0"))
    a1 = store.read(answer_path("c1", "a1"))
    assert (a0.pool_yes, a0.pool_no) == (110, 110)
    assert a1.prob == pytest.approx(0.75)
    assert a0.total_liquidity == pytest.approx(110)


async def test_add_liquidity_needs_balance(engine, binary):
    with pytest.raises(InsufficientBalance):
        await engine.add_liquidity("c1", "bob", 5000)


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

@pytest.fixture
def tagged(seed):
    seed.user("creator")
    seed.user("bob")
    seed.contract("c1", creator_id="creator", created_time=1_700_000_000_000 - 1000)
    seed.group("public")
    seed.group("secret", privacy_status="private")
    seed.group("curated", privacy_status="curated")
    return seed


async def test_creator_adds_public_topic(engine, tagged, store, notifier):
    result = engine.finish(await engine.add_or_remove_topic(
        "c1", "public", "creator"))
    await engine.drain()
    assert result == {"success": True}
    assert store.read(contract_path("c1")).group_ids == ["public"]
    kinds = [m["kind"] for m in notifier.sent]
    assert kinds == ["revalidate", "feed"]
    assert notifier.sent[1]["reason"] == "contract_tagged_with_group"


async def test_removing_topic_skips_feed(engine, tagged, store, notifier):
    tagged.contract("c1", creator_id="creator", group_ids=["public"])
    engine.finish(await engine.add_or_remove_topic("c1", "public", "creator",
                                                   remove=True))
    await engine.drain()
    assert store.read(contract_path("c1")).group_ids == []
    assert [m["kind"] for m in notifier.sent] == ["revalidate"]


async def test_old_contract_skips_feed(engine, tagged, notifier):
    tagged.contract("c1", creator_id="creator", created_time=0)
    engine.finish(await engine.add_or_remove_topic("c1", "public", "creator"))
    await engine.drain()
    assert [m["kind"] for m in notifier.sent] == ["revalidate"]


async def test_private_group_is_refused(engine, tagged):
    with pytest.raises(Forbidden):
        await engine.add_or_remove_topic("c1", "secret", "creator")


async def test_private_contract_is_refused(engine, tagged):
    tagged.contract("c1", creator_id="creator", visibility="private")
    with pytest.raises(Forbidden):
        await engine.add_or_remove_topic("c1", "public", "creator")


async def test_stranger_is_refused(engine, tagged):
    with pytest.raises(Forbidden):
        await engine.add_or_remove_topic("c1", "public", "bob")


async def test_group_moderator_may_tag(engine, tagged, store):
    tagged.member("curated", "bob", role="moderator")
    await engine.add_or_remove_topic("c1", "curated", "bob")
    assert store.read(contract_path("c1")).group_ids == ["curated"]


async def test_creator_needs_membership_for_curated(engine, tagged, store):
    with pytest.raises(Forbidden):
        await engine.add_or_remove_topic("c1", "curated", "creator")
    tagged.member("curated", "creator")
    await engine.add_or_remove_topic("c1", "curated", "creator")


async def test_topic_cap(engine, tagged, monkeypatch):
    monkeypatch.setattr(config, "MAX_GROUPS_PER_MARKET", 1)
    tagged.contract("c1", creator_id="creator", group_ids=["other"])
    with pytest.raises(Forbidden):
        await engine.add_or_remove_topic("c1", "public", "creator")


async def test_missing_group(engine, tagged):
    with pytest.raises(NotFound):
        await engine.add_or_remove_topic("c1", "nope", "creator")
