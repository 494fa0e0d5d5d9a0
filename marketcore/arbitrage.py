"""
Keeping sum-to-one answer sets consistent.

On a contract whose answers are mutually exclusive and exhaustive the
answer probabilities must add up to one. Two things break that:

  * splitting a new answer out of Other pushes the sum above one, and
  * a trade on one answer moves only that answer's price.

Both are repaired the same way: buy the same number of shares of one
outcome in a set of answers until the sum is one again, filling any
resting orders that get crossed on the way.

A NO share in every one of n answers always pays n - 1 (exactly one
answer wins), and a NO share in answer j is as good as a YES share in
every answer except j. Those two identities are what make the trades
below free of risk for whoever is credited with them.

Pure functions, deterministic for a given `now`.
"""

import math
from dataclasses import dataclass, field
from typing import Optional

from marketcore.errors import InvariantViolation
from marketcore.fills import (
    CandidateBet, FillResult, MakerFill, amount_for_shares_with_orders,
    compute_fills,
)
from marketcore.models import Answer, Bet, Fill, Pool, opposite
from marketcore.pricing import (
    PROB_TOLERANCE, binary_search, check_finite, floating_equal, probability,
)


MAX_BOUND_GROWTH = 20


@dataclass
class AnswerBetResult:
    answer: Answer
    pool: Pool
    bet: CandidateBet
    makers: list[MakerFill] = field(default_factory=list)
    orders_to_cancel: list[Bet] = field(default_factory=list)


@dataclass
class BetDownResult:
    bet_results: list[AnswerBetResult]
    extra_mana: float
    no_shares: float


@dataclass
class ArbitrageResult:
    """A trade on one answer plus the balancing trades on the others."""
    main: AnswerBetResult
    others: list[AnswerBetResult]

    @property
    def bet_results(self) -> list[AnswerBetResult]:
        return [self.main] + self.others

    @property
    def amount(self) -> float:
        return sum(r.bet.amount for r in self.bet_results)


def _bets_by_answer(unfilled_bets: list[Bet]) -> dict[str, list[Bet]]:
    by_answer: dict[str, list[Bet]] = {}
    for bet in unfilled_bets:
        by_answer.setdefault(bet.answer_id, []).append(bet)
    return by_answer


def _buy_shares_in_answers(answers: list[Answer], shares: float, outcome: str,
                           bets_by_answer: dict[str, list[Bet]],
                           balance_by_user_id: dict[str, float],
                           now: int) -> list[FillResult]:
    """Buy exactly `shares` of `outcome` in each answer, in order."""
    balances = balance_by_user_id
    results = []
    for answer in answers:
        orders = bets_by_answer.get(answer.id, [])
        amount = amount_for_shares_with_orders(
            answer.pool, shares, outcome, orders, balances)
        fill = compute_fills(answer.pool, outcome, amount, None, orders,
                             balances, now)
        balances = fill.balance_by_user_id
        results.append(fill)
    return results


def _shares_to_sum_to_one(answers: list[Answer], outcome: str,
                          fixed_prob: float,
                          bets_by_answer: dict[str, list[Bet]],
                          balance_by_user_id: dict[str, float],
                          now: int) -> float:
    """
    Shares of `outcome` to buy in each of `answers` so that their
    probabilities plus `fixed_prob` come to exactly one.
    """
    sign = 1 if outcome == "YES" else -1

    def excess(shares: float) -> float:
        fills = _buy_shares_in_answers(answers, shares, outcome,
                                       bets_by_answer, balance_by_user_id, now)
        total = fixed_prob + sum(probability(f.pool) for f in fills)
        return sign * (total - 1)

    start = excess(0.0)
    if abs(start) < PROB_TOLERANCE / 10:
        return 0.0
    if start > 0:
        raise InvariantViolation(
            f"buying {outcome} cannot bring the probabilities back to one",
            details={"excess": sign * start, "answers": len(answers)})

    high = 10.0
    for _ in range(MAX_BOUND_GROWTH):
        if excess(high) > 0:
            break
        high *= 10
    else:
        raise InvariantViolation("no share count balances the answers",
                                 details={"upper_bound": high})

    return binary_search(0.0, high, excess)


def _check_sum(pools: list[Pool], context: str) -> None:
    total = sum(probability(pool) for pool in pools)
    if not floating_equal(total, 1.0, PROB_TOLERANCE):
        raise InvariantViolation(f"{context}: probabilities sum to {total}",
                                 details={"sum": total})
    for pool in pools:
        if pool.yes <= 0 or pool.no <= 0:
            raise InvariantViolation(f"{context}: non-positive pool reserve",
                                     details={"yes": pool.yes, "no": pool.no})


# ---------------------------------------------------------------------------
# Bet down
# ---------------------------------------------------------------------------

def bet_down_to_one(answers: list[Answer], unfilled_bets: list[Bet],
                    balance_by_user_id: dict[str, float],
                    now: int) -> BetDownResult:
    """
    Buy the same number of NO shares in every answer until the
    probabilities sum to one.

    The shares are immediately redeemed as complete sets, which pays
    no_shares * (n - 1); what is left after paying the takers is
    extra_mana, to be put back into the pools as subsidy. Each answer's
    bet record carries its taker fills plus the closing redemption leg,
    so it holds no shares afterwards.
    """
    n = len(answers)
    bets_by_answer = _bets_by_answer(unfilled_bets)
    no_shares = _shares_to_sum_to_one(answers, "NO", 0.0, bets_by_answer,
                                      balance_by_user_id, now)
    fills = _buy_shares_in_answers(answers, no_shares, "NO", bets_by_answer,
                                   balance_by_user_id, now)

    taker_total = sum(f.amount for f in fills)
    extra_mana = check_finite(no_shares * (n - 1) - taker_total, "extra mana",
                              no_shares=no_shares)
    if extra_mana < 0 and not floating_equal(extra_mana, 0):
        raise InvariantViolation("betting down cost more than it redeemed",
                                 details={"extra_mana": extra_mana})
    extra_mana = max(extra_mana, 0.0)

    redeemed_per_answer = no_shares * (n - 1) / n if n else 0.0
    results = []
    for answer, fill in zip(answers, fills):
        takers = list(fill.takers)
        if no_shares > 0:
            takers.append(Fill(matched_bet_id=None,
                               amount=-redeemed_per_answer,
                               shares=-fill.shares, timestamp=now,
                               is_sale=True))
        bet = CandidateBet(
            outcome="NO",
            answer_id=answer.id,
            amount=sum(t.amount for t in takers),
            shares=sum(t.shares for t in takers),
            prob_before=probability(answer.pool),
            prob_after=probability(fill.pool),
            fills=takers,
        )
        results.append(AnswerBetResult(answer=answer, pool=fill.pool, bet=bet,
                                       makers=fill.makers,
                                       orders_to_cancel=fill.orders_to_cancel))

    _check_sum([r.pool for r in results], "bet down")
    return BetDownResult(bet_results=results, extra_mana=extra_mana,
                         no_shares=no_shares)


# ---------------------------------------------------------------------------
# Trading on sum-to-one answers
# ---------------------------------------------------------------------------

def _answer_bet(answer: Answer, outcome: str, fill: FillResult) -> AnswerBetResult:
    bet = CandidateBet(
        outcome=outcome,
        answer_id=answer.id,
        amount=fill.amount,
        shares=fill.shares,
        prob_before=probability(answer.pool),
        prob_after=probability(fill.pool),
        fills=list(fill.takers),
    )
    return AnswerBetResult(answer=answer, pool=fill.pool, bet=bet,
                           makers=fill.makers,
                           orders_to_cancel=fill.orders_to_cancel)


def _shares_within(others: list[Answer], outcome: str, spend: float,
                   bets_by_answer: dict[str, list[Bet]],
                   balance_by_user_id: dict[str, float], now: int) -> float:
    """Largest equal share count of `outcome` on `others` costing `spend`."""
    if floating_equal(spend, 0):
        return 0.0

    def overspend(shares: float) -> float:
        fills = _buy_shares_in_answers(others, shares, outcome, bets_by_answer,
                                       balance_by_user_id, now)
        return sum(f.amount for f in fills) - spend

    high = spend
    for _ in range(MAX_BOUND_GROWTH):
        if overspend(high) >= 0:
            break
        high *= 10
    else:
        raise InvariantViolation("no share count uses up the amount",
                                 details={"spend": spend})
    return binary_search(0.0, high, overspend)


def arbitrage_bet(answers: list[Answer], answer_id: str, outcome: str,
                  amount: float, unfilled_bets: list[Bet],
                  balance_by_user_id: dict[str, float], now: int,
                  limit_prob: Optional[float] = None) -> ArbitrageResult:
    """
    Spend `amount` on `outcome` of one answer of a sum-to-one set.

    The opposite outcome is bought in equal share counts on every other
    answer and whatever mana is left buys `outcome` on the chosen
    answer. A YES bet leaves NO shares on the others, a NO bet leaves
    YES shares on the others, and both are the same exposure as the bet
    that was asked for.

    The search runs over the share count on the other answers, not over
    the mana on the chosen one: crossing a resting order on another
    answer holds that answer's price while the order fills, and only a
    share count moves through that smoothly.

    With `limit_prob`, the chosen answer's probability is not pushed past
    the limit; the result then spends less than `amount` and the caller
    rests the remainder as an order.
    """
    target = next((a for a in answers if a.id == answer_id), None)
    if target is None:
        raise InvariantViolation(f"answer {answer_id} not in the answer set")
    others = [a for a in answers if a.id != answer_id]
    other_outcome = opposite(outcome)
    bets_by_answer = _bets_by_answer(unfilled_bets)

    def split(shares: float, spend: float):
        other_fills = _buy_shares_in_answers(others, shares, other_outcome,
                                             bets_by_answer,
                                             balance_by_user_id, now)
        balances = (other_fills[-1].balance_by_user_id if other_fills
                    else balance_by_user_id)
        left = max(0.0, spend - sum(f.amount for f in other_fills))
        main_fill = compute_fills(target.pool, outcome, left, None,
                                  bets_by_answer.get(target.id, []),
                                  balances, now)
        return main_fill, other_fills

    def trade(spend: float):
        if not others:
            return split(0.0, spend)
        most = _shares_within(others, other_outcome, spend, bets_by_answer,
                              balance_by_user_id, now)

        # More shares on the others lowers a YES bettor's sum and raises
        # a NO bettor's.
        def imbalance(shares: float) -> float:
            main_fill, other_fills = split(shares, spend)
            total = probability(main_fill.pool) + sum(
                probability(f.pool) for f in other_fills)
            return total - 1 if outcome == "NO" else 1 - total

        return split(binary_search(0.0, most, imbalance), spend)

    main_fill, other_fills = trade(amount)

    if limit_prob is not None:
        sign = 1 if outcome == "YES" else -1

        def past_limit(spend: float) -> float:
            return sign * (probability(trade(spend)[0].pool) - limit_prob)

        if sign * (probability(main_fill.pool) - limit_prob) > 0:
            if sign * (probability(target.pool) - limit_prob) >= 0:
                spend = 0.0
            else:
                spend = binary_search(0.0, amount, past_limit)
            main_fill, other_fills = trade(spend)

    if not math.isfinite(main_fill.amount):
        raise InvariantViolation("non-finite arbitrage amount",
                                 details={"amount": amount})

    result = ArbitrageResult(
        main=_answer_bet(target, outcome, main_fill),
        others=[_answer_bet(a, other_outcome, f)
                for a, f in zip(others, other_fills)],
    )
    if others:
        _check_sum([r.pool for r in result.bet_results], "arbitrage bet")
    return result
