"""
Redemption: turning matched YES + NO holdings back into mana.

One YES share and one NO share of the same pool always pay exactly one
mana between them, so a user holding both can cash the pair in at any
time. Redeeming `shares` pairs is recorded as two bets that sell
`shares` YES at the current probability and `shares` NO at its
complement. Any loan outstanding on the position is repaid out of the
proceeds in proportion to the part of the position that was redeemed.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from marketcore.errors import InvariantViolation, NotFound
from marketcore.fills import CandidateBet
from marketcore.models import (
    Bet, Contract, bet_path, bets_collection, random_id, user_path,
)
from marketcore.pricing import floating_equal
from marketcore.store import Increment, Transaction


logger = logging.getLogger(__name__)

# (total_loan, shares_redeemed, yes_shares, no_shares) -> loan repaid
LoanPolicy = Callable[[float, float, float, float], float]


@dataclass(frozen=True)
class Redemption:
    shares: float
    loan_payment: float
    net_amount: float


def proportional_loan_payment(total_loan: float, shares: float,
                              yes_shares: float, no_shares: float) -> float:
    larger = max(yes_shares, no_shares)
    if larger <= 0:
        return 0.0
    return total_loan * shares / larger


def compute_redemption(bets: list[Bet],
                       loan_policy: LoanPolicy = proportional_loan_payment) -> Redemption:
    yes_shares = sum(b.shares for b in bets if b.outcome == "YES")
    no_shares = sum(b.shares for b in bets if b.outcome == "NO")
    shares = max(min(yes_shares, no_shares), 0.0)

    total_loan = sum(b.loan_amount for b in bets)
    loan_payment = loan_policy(total_loan, shares, yes_shares, no_shares)
    return Redemption(shares=shares, loan_payment=loan_payment,
                      net_amount=shares - loan_payment)


def redemption_bets(shares: float, loan_payment: float, prob: float,
                    answer_id: Optional[str] = None) -> list[CandidateBet]:
    """The YES and NO sale records for redeeming `shares` pairs at `prob`."""
    return [
        CandidateBet(outcome="YES", answer_id=answer_id,
                     amount=-prob * shares, shares=-shares,
                     prob_before=prob, prob_after=prob,
                     loan_amount=-loan_payment / 2, is_redemption=True),
        CandidateBet(outcome="NO", answer_id=answer_id,
                     amount=-(1 - prob) * shares, shares=-shares,
                     prob_before=prob, prob_after=prob,
                     loan_amount=-loan_payment / 2, is_redemption=True),
    ]


def _last_prob(bets: list[Bet]) -> float:
    return max(bets, key=lambda b: b.created_time).prob_after


async def redeem_shares(tx: Transaction, user_id: str, contract: Contract,
                        now: int,
                        loan_policy: LoanPolicy = proportional_loan_payment) -> float:
    """
    Redeem every matched pair the user holds on `contract`, per answer
    (or the whole contract for binary). Returns the mana credited.
    """
    bets = await tx.query(bets_collection(contract.id),
                          where=lambda b: b.user_id == user_id)
    user = await tx.get(user_path(user_id))
    if user is None:
        raise NotFound(f"user {user_id} not found")

    by_answer: dict[Optional[str], list[Bet]] = {}
    for bet in sorted(bets, key=lambda b: b.created_time):
        by_answer.setdefault(bet.answer_id, []).append(bet)

    total = 0.0
    for answer_id, answer_bets in by_answer.items():
        redemption = compute_redemption(answer_bets, loan_policy)
        if floating_equal(redemption.shares, 0):
            continue
        if not math.isfinite(redemption.net_amount):
            raise InvariantViolation(
                "Invalid redemption amount, no clue what happened here",
                details={"user_id": user_id, "contract_id": contract.id,
                         "answer_id": answer_id,
                         "net_amount": redemption.net_amount})
        prob = _last_prob(answer_bets)
        for candidate in redemption_bets(redemption.shares,
                                         redemption.loan_payment, prob,
                                         answer_id):
            bet = candidate.to_bet(random_id(), contract.id, user_id, now,
                                   visibility=contract.visibility)
            tx.create(bet_path(contract.id, bet.id), bet)
        total += redemption.net_amount
        logger.info("redeemed %.6f shares for %s on %s/%s", redemption.shares,
                    user_id, contract.id, answer_id)

    if total:
        tx.update(user_path(user_id), balance=Increment(total))
    return total
