"""
Trading: market and limit orders, cancelling orders, adding liquidity.

Three pool shapes can be traded:

  * a binary contract (pool on the contract),
  * one answer of an independent multi-answer contract (pool on the
    answer, nothing else moves),
  * one answer of a sum-to-one contract, which also moves every other
    answer (see arbitrage.arbitrage_bet).

Bettors pay only for what fills. A limit order's unfilled remainder
rests, and is paid for by its owner when a later taker matches it.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from marketcore import ledger
from marketcore.arbitrage import arbitrage_bet
from marketcore.errors import (
    BadRequest, Forbidden, InsufficientBalance, NotFound,
)
from marketcore.fills import CandidateBet, compute_fills
from marketcore.models import (
    CPMM_BINARY, CPMM_MULTI, OUTCOMES, Answer, Bet, Contract,
    LiquidityProvision, Pool, User, answer_path, answers_collection,
    bet_path, contract_path, liquidity_path, random_id, user_path,
)
from marketcore.pricing import (
    add_liquidity_fixed_p, add_liquidity_sum_to_one, floating_equal,
    liquidity, probability,
)
from marketcore.store import Increment, Transaction


logger = logging.getLogger(__name__)


@dataclass
class PlacedBet:
    bet: Bet
    contract: Contract
    extra_bets: list[Bet] = field(default_factory=list)
    maker_user_ids: list[str] = field(default_factory=list)
    cancelled_bet_ids: list[str] = field(default_factory=list)


async def _load_tradable(tx: Transaction, contract_id: str, user_id: str,
                         now: int) -> tuple[Contract, User]:
    contract = await tx.get(contract_path(contract_id))
    if contract is None:
        raise NotFound("Contract not found")
    if contract.is_closed(now):
        raise Forbidden("Trading is closed")
    if contract.resolution:
        raise Forbidden("Contract is resolved")
    user = await tx.get(user_path(user_id))
    if user is None:
        raise NotFound("User not found")
    return contract, user


def _write_pool(tx: Transaction, contract: Contract, answer: Optional[Answer],
                pool: Pool) -> None:
    fields = {"pool_yes": pool.yes, "pool_no": pool.no,
              "prob": probability(pool)}
    if answer is None:
        tx.update(contract_path(contract.id), fields)
    else:
        tx.update(answer_path(contract.id, answer.id), fields)


# ---------------------------------------------------------------------------
# Place bet
# ---------------------------------------------------------------------------

async def place_bet(tx: Transaction, contract_id: str, user_id: str,
                    amount: float, outcome: str, now: int,
                    answer_id: Optional[str] = None,
                    limit_prob: Optional[float] = None,
                    is_api: bool = False) -> PlacedBet:
    if outcome not in OUTCOMES:
        raise BadRequest(f"outcome must be YES or NO, got {outcome!r}")
    if not amount > 0:
        raise BadRequest("amount must be positive")
    if limit_prob is not None and not 0 < limit_prob < 1:
        raise BadRequest("limitProb must be between 0 and 1")

    contract, user = await _load_tradable(tx, contract_id, user_id, now)
    if user.balance < amount:
        raise InsufficientBalance(
            f"Insufficient balance: need M{amount:g}, have M{user.balance:g}")

    answers: list[Answer] = []
    answer = None
    if contract.mechanism == CPMM_BINARY:
        if answer_id is not None:
            raise BadRequest("answerId is only for multi-answer contracts")
        pool = contract.pool
    elif contract.mechanism == CPMM_MULTI:
        if answer_id is None:
            raise BadRequest("answerId is required for multi-answer contracts")
        answers = await tx.query(answers_collection(contract_id))
        answer = next((a for a in answers if a.id == answer_id), None)
        if answer is None:
            raise NotFound("Answer not found")
        if answer.resolution:
            raise Forbidden("Answer is resolved")
        pool = answer.pool
    else:
        raise BadRequest(f"unsupported mechanism {contract.mechanism}")

    sum_to_one = (contract.mechanism == CPMM_MULTI
                  and contract.should_answers_sum_to_one)
    unfilled, balances = await ledger.unfilled_bets_and_balances(
        tx, contract_id, None if sum_to_one else answer_id)
    if contract.mechanism == CPMM_BINARY:
        unfilled = [b for b in unfilled if b.answer_id is None]

    if sum_to_one:
        open_answers = [a for a in answers if not a.resolution]
        return _write_arbitrage_bet(tx, contract, user, open_answers, answer_id,
                                    outcome, amount, limit_prob, unfilled,
                                    balances, now, is_api)

    fill = compute_fills(pool, outcome, amount, limit_prob, unfilled,
                         balances, now)
    filled = fill.amount
    candidate = CandidateBet(
        outcome=outcome,
        answer_id=answer_id,
        amount=filled,
        shares=fill.shares,
        prob_before=probability(pool),
        prob_after=probability(fill.pool),
        fills=list(fill.takers),
        limit_prob=limit_prob,
        order_amount=amount if limit_prob is not None else None,
        is_filled=limit_prob is None or floating_equal(filled, amount),
    )
    bet = candidate.to_bet(random_id(), contract_id, user_id, now,
                           visibility=contract.visibility, is_api=is_api)

    tx.create(bet_path(contract_id, bet.id), bet)
    _write_pool(tx, contract, answer, fill.pool)
    ledger.apply_maker_fills(tx, contract_id, fill.makers, bet.id)
    ledger.cancel_orders(tx, contract_id, fill.orders_to_cancel)
    if filled:
        tx.update(user_path(user_id), balance=Increment(-filled))

    logger.info("bet %s: %s M%.4f %s on %s/%s, filled M%.4f", bet.id, user_id,
                amount, outcome, contract_id, answer_id, filled)
    return PlacedBet(bet=bet, contract=contract,
                     maker_user_ids=ledger.maker_user_ids(fill.makers),
                     cancelled_bet_ids=[b.id for b in fill.orders_to_cancel])


def _write_arbitrage_bet(tx: Transaction, contract: Contract, user: User,
                         answers: list[Answer], answer_id: str, outcome: str,
                         amount: float, limit_prob: Optional[float],
                         unfilled: list[Bet], balances: dict[str, float],
                         now: int, is_api: bool) -> PlacedBet:
    result = arbitrage_bet(answers, answer_id, outcome, amount, unfilled,
                           balances, now, limit_prob=limit_prob)
    spent = result.amount
    main = result.main.bet
    if limit_prob is not None:
        # The unspent part rests on the chosen answer.
        main.limit_prob = limit_prob
        main.order_amount = main.amount + (amount - spent)
        main.is_filled = floating_equal(spent, amount)

    bets = []
    makers = []
    cancelled = []
    for i, r in enumerate(result.bet_results):
        if i > 0 and not r.bet.fills and not r.orders_to_cancel:
            continue
        bet = r.bet.to_bet(random_id(), contract.id, user.id, now,
                           visibility=contract.visibility, is_api=is_api)
        tx.create(bet_path(contract.id, bet.id), bet)
        _write_pool(tx, contract, r.answer, r.pool)
        ledger.apply_maker_fills(tx, contract.id, r.makers, bet.id)
        ledger.cancel_orders(tx, contract.id, r.orders_to_cancel)
        bets.append(bet)
        makers.extend(r.makers)
        cancelled.extend(b.id for b in r.orders_to_cancel)

    if spent:
        tx.update(user_path(user.id), balance=Increment(-spent))
    logger.info("bet %s: %s M%.4f %s on %s/%s across %d answers, filled M%.4f",
                bets[0].id, user.id, amount, outcome, contract.id, answer_id,
                len(bets), spent)
    return PlacedBet(bet=bets[0], contract=contract, extra_bets=bets[1:],
                     maker_user_ids=ledger.maker_user_ids(makers),
                     cancelled_bet_ids=cancelled)


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

async def cancel_bet(tx: Transaction, contract_id: str, bet_id: str,
                     user_id: str) -> Bet:
    bet = await tx.get(bet_path(contract_id, bet_id))
    if bet is None:
        raise NotFound("Bet not found")
    if bet.user_id != user_id:
        raise Forbidden("Not your bet")
    if not bet.is_limit_order:
        raise BadRequest("Not a limit order")
    if bet.is_filled:
        raise BadRequest("Order already filled")
    if bet.is_cancelled:
        raise BadRequest("Order already cancelled")

    tx.update(bet_path(contract_id, bet_id), is_cancelled=True)
    bet.is_cancelled = True
    return bet


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

async def add_liquidity(tx: Transaction, contract_id: str, user_id: str,
                        amount: float, now: int) -> LiquidityProvision:
    """
    Subsidise a contract without moving any price.

    Binary: fixed-p on the contract pool. Independent answers: split
    equally between open answers. Sum-to-one answers: spread so that the
    thrown-away shares are recycled.
    """
    if not amount > 0:
        raise BadRequest("amount must be positive")
    contract, user = await _load_tradable(tx, contract_id, user_id, now)
    if user.balance < amount:
        raise InsufficientBalance(
            f"Insufficient balance: need M{amount:g}, have M{user.balance:g}")

    if contract.mechanism == CPMM_BINARY:
        pool = contract.pool
        new_pool, added, _ = add_liquidity_fixed_p(pool, amount)
        _write_pool(tx, contract, None, new_pool)
    else:
        answers = await tx.query(answers_collection(contract_id),
                                 where=lambda a: not a.resolution)
        if not answers:
            raise Forbidden("No open answers to subsidise")
        if contract.should_answers_sum_to_one:
            new_pools = add_liquidity_sum_to_one(
                {a.id: a.pool for a in answers}, amount)
        else:
            new_pools = {a.id: add_liquidity_fixed_p(a.pool, amount / len(answers))[0]
                         for a in answers}
        added = 0.0
        for a in answers:
            added += liquidity(new_pools[a.id]) - liquidity(a.pool)
            _write_pool(tx, contract, a, new_pools[a.id])
            if not contract.should_answers_sum_to_one:
                tx.update(answer_path(contract_id, a.id),
                          total_liquidity=Increment(amount / len(answers)))

    provision = LiquidityProvision(
        id=random_id(),
        contract_id=contract_id,
        user_id=user_id,
        amount=amount,
        liquidity=added,
        created_time=now,
    )
    tx.create(liquidity_path(contract_id, provision.id), provision)
    tx.update(contract_path(contract_id), total_liquidity=Increment(amount))
    tx.update(user_path(user_id), balance=Increment(-amount),
              total_deposits=Increment(-amount))
    logger.info("liquidity M%.4f added to %s by %s", amount, contract_id,
                user_id)
    return provision
