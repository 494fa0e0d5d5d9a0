"""
CPMM (constant-product market maker): pure math, no state.

All functions take Pool/float inputs and return new values; nothing is
mutated. The caller (answers, arbitrage, trading) handles state and
persistence.

Parameterisation: p = 0.5, so the pool invariant is YES * NO = k and

    probability(YES) = NO / (YES + NO)

i.e. the share of the *opposite* reserve. This is not the legacy DPM
formula (YES² / (YES² + NO²)); the two must not be mixed.

Notation:
    pool: Pool(yes, no), the reserves
    amount: mana paid in
    shares: outcome shares paid out (each pays 1 mana if it wins)
"""

import math
from dataclasses import dataclass
from typing import Callable

from marketcore.errors import InvariantViolation
from marketcore.models import Fees, NO_FEES, Pool


EPSILON = 1e-9
PROB_TOLERANCE = 1e-6


# ---------------------------------------------------------------------------
# Float helpers
# ---------------------------------------------------------------------------

def floating_equal(a: float, b: float, epsilon: float = EPSILON) -> bool:
    return abs(a - b) < epsilon


def floating_greater_equal(a: float, b: float,
                           epsilon: float = EPSILON) -> bool:
    return a + epsilon >= b


def floating_lesser_equal(a: float, b: float,
                          epsilon: float = EPSILON) -> bool:
    return a - epsilon <= b


def check_finite(value: float, what: str, **context) -> float:
    """Refuse to let NaN or infinity leak out of the pricing math."""
    if not math.isfinite(value):
        raise InvariantViolation(f"non-finite {what}: {value}",
                                 details=context)
    return value


def binary_search(low: float, high: float,
                  comparator: Callable[[float], float],
                  max_iterations: int = 200) -> float:
    """
    Find x in [low, high] where comparator(x) == 0.

    comparator must be increasing: positive means x is too large.
    Stops at float precision or after max_iterations.
    """
    mid = low
    for _ in range(max_iterations):
        mid = low + (high - low) / 2
        if mid == low or mid == high:
            break
        comparison = comparator(mid)
        if comparison == 0:
            break
        if comparison > 0:
            high = mid
        else:
            low = mid
    return mid


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Purchase:
    shares: float
    pool: Pool
    fees: Fees = NO_FEES


def probability(pool: Pool) -> float:
    """
    Implied probability of YES: NO / (YES + NO).

    Defined for any pool with a positive total. An empty pool has no
    price at all and is an internal error.
    """
    total = pool.yes + pool.no
    if total <= 0:
        raise InvariantViolation(
            "cannot price an empty pool",
            details={"yes": pool.yes, "no": pool.no})
    return check_finite(pool.no / total, "probability",
                        yes=pool.yes, no=pool.no)


def liquidity(pool: Pool) -> float:
    """Geometric mean of the reserves. The k^(1/2) of YES * NO = k."""
    return math.sqrt(pool.yes * pool.no)


def shares_for_amount(pool: Pool, amount: float, outcome: str) -> float:
    """
    Shares of `outcome` bought with `amount` mana.

    The mana mints `amount` YES and `amount` NO; the unwanted side goes
    into the pool and the pool pays out enough of the wanted side to
    restore YES * NO = k.
    """
    if amount == 0:
        return 0.0
    k = pool.yes * pool.no
    if outcome == "YES":
        shares = pool.yes + amount - k / (pool.no + amount)
    else:
        shares = pool.no + amount - k / (pool.yes + amount)
    return check_finite(shares, "shares", amount=amount, outcome=outcome)


def trade_outcome(pool: Pool, amount: float, outcome: str) -> Purchase:
    """
    Apply a purchase of `amount` mana on `outcome` to `pool`.

    Returns the shares received and the resulting pool. Larger amounts
    never return fewer shares. Fees are zero.
    """
    if amount < 0:
        raise ValueError(f"purchase amount must be >= 0, got {amount}")
    shares = shares_for_amount(pool, amount, outcome)
    if outcome == "YES":
        new_pool = Pool(pool.yes - shares + amount, pool.no + amount)
    else:
        new_pool = Pool(pool.yes + amount, pool.no - shares + amount)
    return Purchase(shares=shares, pool=new_pool)


def amount_to_prob(pool: Pool, prob: float, outcome: str) -> float:
    """
    Mana needed to move the YES probability to `prob` by buying `outcome`.

    Buying YES raises the probability, buying NO lowers it. Returns 0
    if the pool is already past `prob` in that direction, infinity for
    an unreachable target (prob <= 0 or >= 1).

    Buying YES with amount a leaves NO' = NO + a and the price is
    NO'^2 / (NO'^2 + k); solving for NO' gives the closed form below.
    Buying NO is the mirror image with YES' = YES + a.
    """
    if not 0 < prob < 1 or math.isnan(prob):
        return math.inf
    k = pool.yes * pool.no
    if outcome == "YES":
        target_no = math.sqrt(k * prob / (1 - prob))
        amount = target_no - pool.no
    else:
        target_yes = math.sqrt(k * (1 - prob) / prob)
        amount = target_yes - pool.yes
    return max(0.0, check_finite(amount, "amount to prob", prob=prob))


def amount_for_shares(pool: Pool, shares: float, outcome: str) -> float:
    """
    Mana needed to receive exactly `shares` of `outcome` from the pool.

    Inverse of shares_for_amount. For YES it solves
        (YES + a - s)(NO + a) = YES * NO
    i.e. a² + a(YES + NO - s) - s·NO = 0, positive root. NO swaps roles.
    """
    if shares <= 0:
        return 0.0
    b = pool.yes + pool.no - shares
    c = shares * (pool.no if outcome == "YES" else pool.yes)
    root = math.sqrt(b * b + 4 * c)
    # Rationalised form avoids cancellation when b >> c.
    amount = 2 * c / (b + root) if b > 0 else (root - b) / 2
    return check_finite(amount, "amount for shares",
                        shares=shares, outcome=outcome)


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

def pool_at_probability(amount: float, prob: float) -> Pool:
    """Seed pool for `amount` mana of liquidity priced at `prob`."""
    if not 0 < prob < 1:
        raise InvariantViolation(f"cannot seed a pool at probability {prob}")
    if prob <= 0.5:
        return Pool(amount, amount * prob / (1 - prob))
    return Pool(amount * (1 - prob) / prob, amount)


def add_liquidity_fixed_p(pool: Pool,
                          amount: float) -> tuple[Pool, float, Pool]:
    """
    Subsidise a pool with `amount` mana without moving its probability.

    The mana mints `amount` YES and `amount` NO. Adding both would move
    the price, so the side the pool is short of goes in whole and the
    other side is scaled to keep the ratio; the excess is thrown away.

    Returns (new_pool, liquidity_added, shares_thrown_away).
    """
    prob = probability(pool)
    if prob < 0.5:
        added = Pool(amount, prob / (1 - prob) * amount)
    else:
        added = Pool((1 - prob) / prob * amount, amount)
    new_pool = pool.plus(yes=added.yes, no=added.no)
    thrown_away = Pool(amount - added.yes, amount - added.no)
    return new_pool, liquidity(new_pool) - liquidity(pool), thrown_away


def add_liquidity_sum_to_one(pools_by_answer: dict[str, Pool],
                             amount: float) -> dict[str, Pool]:
    """
    Spread `amount` mana of subsidy over the answers of a sum-to-one
    contract, keeping every answer's probability unchanged.

    Adding an equal slice to every pool at fixed p throws shares away.
    They are not lost: a NO share in one answer is a YES share in every
    other answer (exactly one answer wins), and one YES share in every
    answer is worth exactly 1 mana. The complete YES sets formed by the
    thrown-away shares are worth a fraction r of the slice, which can be
    added again, and so on.

    Fixed-p additions are linear in the amount and leave the
    probabilities alone, so r is the same every round and the series
    sums to one slice of amount / (n * (1 - r)) per answer.
    """
    if amount <= 0 or not pools_by_answer:
        return dict(pools_by_answer)
    n = len(pools_by_answer)

    thrown = {
        answer_id: add_liquidity_fixed_p(pool, 1.0 / n)[2]
        for answer_id, pool in pools_by_answer.items()
    }
    total_no_thrown = sum(t.no for t in thrown.values())
    recycled = min(t.yes + total_no_thrown - t.no for t in thrown.values())
    if recycled >= 1:
        raise InvariantViolation(
            "subsidy recycling would create mana",
            details={"recycled_fraction": recycled})

    per_answer = check_finite(amount / n / (1 - recycled), "subsidy slice")
    return {
        answer_id: add_liquidity_fixed_p(pool, per_answer)[0]
        for answer_id, pool in pools_by_answer.items()
    }
