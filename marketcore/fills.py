"""
Matching a market order against the pool and resting limit orders.

A taker buying `outcome` is filled by whichever is cheaper at each step:
the pool (price moves as it fills) or the best resting order on the
opposite outcome (fixed price = its limit). Orders are walked in price
order, most favourable to the taker first, ties broken by creation time.

Pure functions. `now` stamps the fills; nothing reads the clock.
"""

from dataclasses import dataclass, field
from typing import Optional

from marketcore.models import Bet, Fees, Fill, NO_FEES, Pool
from marketcore.pricing import (
    amount_for_shares, amount_to_prob, floating_equal,
    floating_greater_equal, floating_lesser_equal, probability,
    shares_for_amount, trade_outcome,
)


@dataclass
class MakerFill:
    bet: Bet
    amount: float
    shares: float
    timestamp: int


@dataclass
class FillResult:
    takers: list[Fill]
    makers: list[MakerFill]
    orders_to_cancel: list[Bet]
    pool: Pool
    balance_by_user_id: dict[str, float]

    @property
    def amount(self) -> float:
        return sum(t.amount for t in self.takers)

    @property
    def shares(self) -> float:
        return sum(t.shares for t in self.takers)


@dataclass
class CandidateBet:
    """A bet computed by the engines, not yet given an id or owner."""
    outcome: str
    amount: float
    shares: float
    prob_before: float
    prob_after: float
    answer_id: Optional[str] = None
    fills: list[Fill] = field(default_factory=list)
    limit_prob: Optional[float] = None
    order_amount: Optional[float] = None
    is_filled: bool = True
    is_redemption: bool = False
    loan_amount: float = 0.0
    fees: Fees = NO_FEES

    def to_bet(self, bet_id: str, contract_id: str, user_id: str,
               created_time: int, visibility: str = "public",
               is_api: bool = False) -> Bet:
        return Bet(
            id=bet_id,
            contract_id=contract_id,
            user_id=user_id,
            answer_id=self.answer_id,
            outcome=self.outcome,
            amount=self.amount,
            shares=self.shares,
            prob_before=self.prob_before,
            prob_after=self.prob_after,
            created_time=created_time,
            fees=self.fees,
            loan_amount=self.loan_amount,
            limit_prob=self.limit_prob,
            order_amount=self.order_amount,
            fills=list(self.fills),
            is_filled=self.is_filled,
            is_redemption=self.is_redemption,
            visibility=visibility,
            is_api=is_api,
        )


def _taker_price(outcome: str, limit_prob: float) -> float:
    """What the taker pays per share when matched at limit_prob."""
    return limit_prob if outcome == "YES" else 1 - limit_prob


def sorted_opposing_orders(unfilled_bets: list[Bet],
                           outcome: str) -> list[Bet]:
    """Resting orders a taker of `outcome` can match, best price first."""
    opposing = [b for b in unfilled_bets if b.outcome != outcome]
    if outcome == "YES":
        return sorted(opposing, key=lambda b: (b.limit_prob, b.created_time))
    return sorted(opposing, key=lambda b: (-b.limit_prob, b.created_time))


def _compute_fill(amount: float, outcome: str, limit_prob: Optional[float],
                  pool: Pool, matched: Optional[Bet], now: int):
    """
    One step of the walk. Returns (taker, maker, new_pool) or None when
    the taker's limit stops it.
    """
    prob = probability(pool)

    if limit_prob is not None:
        if outcome == "YES":
            blocked = (floating_greater_equal(prob, limit_prob)
                       and (matched.limit_prob if matched else 1) > limit_prob)
        else:
            blocked = (floating_lesser_equal(prob, limit_prob)
                       and (matched.limit_prob if matched else 0) < limit_prob)
        if blocked:
            return None

    pool_is_cheaper = matched is None or (
        not floating_greater_equal(prob, matched.limit_prob)
        if outcome == "YES"
        else not floating_lesser_equal(prob, matched.limit_prob)
    )

    if pool_is_cheaper:
        if matched is None:
            stop = limit_prob
        elif outcome == "YES":
            stop = min(matched.limit_prob,
                       limit_prob if limit_prob is not None else 1)
        else:
            stop = max(matched.limit_prob,
                       limit_prob if limit_prob is not None else 0)
        buy_amount = amount if stop is None else min(
            amount, amount_to_prob(pool, stop, outcome))
        purchase = trade_outcome(pool, buy_amount, outcome)
        taker = Fill(matched_bet_id=None, amount=buy_amount,
                     shares=purchase.shares, timestamp=now)
        return taker, None, purchase.pool

    price = _taker_price(outcome, matched.limit_prob)
    match_remaining = matched.order_amount - matched.amount
    shares = min(amount / price, match_remaining / (1 - price))
    maker = MakerFill(bet=matched, amount=shares * (1 - price),
                      shares=shares, timestamp=now)
    taker = Fill(matched_bet_id=matched.id, amount=shares * price,
                 shares=shares, timestamp=now)
    return taker, maker, pool


def compute_fills(pool: Pool, outcome: str, amount: float,
                  limit_prob: Optional[float], unfilled_bets: list[Bet],
                  balance_by_user_id: dict[str, float],
                  now: int) -> FillResult:
    """
    Fill a taker of `outcome` for up to `amount` mana.

    Makers that cannot afford their side of a fill are put in
    orders_to_cancel and skipped. The returned balances already have the
    makers' spend taken off, so several calls can be chained.
    """
    balances = dict(balance_by_user_id)
    prob = probability(pool)
    if limit_prob is not None and (
            limit_prob <= prob if outcome == "YES" else limit_prob >= prob):
        return FillResult([], [], [], pool, balances)

    orders = sorted_opposing_orders(unfilled_bets, outcome)
    takers: list[Fill] = []
    makers: list[MakerFill] = []
    orders_to_cancel: list[Bet] = []
    remaining = amount
    i = 0

    while not floating_equal(remaining, 0):
        matched = orders[i] if i < len(orders) else None
        step = _compute_fill(remaining, outcome, limit_prob, pool, matched, now)
        if step is None:
            break
        taker, maker, new_pool = step

        if maker is not None:
            i += 1
            user_id = maker.bet.user_id
            balance = balances.get(user_id, 0.0)
            if not floating_greater_equal(balance, maker.amount):
                orders_to_cancel.append(maker.bet)
                continue
            balances[user_id] = balance - maker.amount
            makers.append(maker)
        else:
            if taker.amount <= 0:
                break
            pool = new_pool

        takers.append(taker)
        remaining -= taker.amount

    return FillResult(takers, makers, orders_to_cancel, pool, balances)


def amount_for_shares_with_orders(pool: Pool, shares: float, outcome: str,
                                  unfilled_bets: list[Bet],
                                  balance_by_user_id: dict[str, float]) -> float:
    """
    Mana a taker must spend to end up with exactly `shares` of `outcome`,
    walking pool segments and resting orders the same way compute_fills
    does.
    """
    if shares <= 0:
        return 0.0
    balances = dict(balance_by_user_id)
    amount = 0.0
    remaining = shares

    for order in sorted_opposing_orders(unfilled_bets, outcome):
        segment_amount = amount_to_prob(pool, order.limit_prob, outcome)
        segment_shares = shares_for_amount(pool, segment_amount, outcome)
        if floating_greater_equal(segment_shares, remaining):
            return amount + amount_for_shares(pool, remaining, outcome)
        amount += segment_amount
        remaining -= segment_shares
        pool = trade_outcome(pool, segment_amount, outcome).pool

        price = _taker_price(outcome, order.limit_prob)
        available = (order.order_amount - order.amount) / (1 - price)
        taken = min(available, remaining)
        maker_cost = taken * (1 - price)
        balance = balances.get(order.user_id, 0.0)
        if not floating_greater_equal(balance, maker_cost):
            continue
        balances[order.user_id] = balance - maker_cost
        amount += taken * price
        remaining -= taken
        if floating_equal(remaining, 0):
            return amount

    return amount + amount_for_shares(pool, remaining, outcome)
