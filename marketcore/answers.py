"""
Answer lifecycle: adding an answer to a multi-answer contract.

Independent contracts just get a fresh pool at 50%.

Sum-to-one contracts keep an "Other" answer that stands for every
answer not yet listed. A new answer is carved out of Other: Other's
reserves are split between Other and the new answer, the probabilities
(which now add up to more than one) are bet back down, and the mana the
bet-down frees up is put back into the pools as subsidy. All of that is
one transaction.

People already holding Other were holding the new answer too. Their
positions are converted afterwards, one small transaction per user,
driven by a ShareConversion job document written in the main
transaction. Each user's conversion leaves a marker, so the job can be
re-run after a crash without converting anyone twice.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from marketcore import config
from marketcore import ledger
from marketcore.arbitrage import bet_down_to_one
from marketcore.errors import (
    AddingAnswersDisabled, Forbidden, InsufficientBalance,
    InvariantViolation, NotFound,
)
from marketcore.models import (
    ADD_ANSWERS_DISABLED, ADD_ANSWERS_ONLY_CREATOR, CPMM_MULTI, Answer, Bet,
    Contract, ConversionMarker, LiquidityProvision, Pool, ShareConversion,
    User, answer_path, answers_collection, bet_path, bets_collection,
    contract_path, conversion_marker_path, conversion_path,
    conversions_collection, liquidity_path, random_id, user_path,
)
from marketcore.pricing import (
    PROB_TOLERANCE, add_liquidity_sum_to_one, floating_equal, probability,
)
from marketcore.store import DocumentStore, Increment, Transaction


logger = logging.getLogger(__name__)

SPECIAL_ANSWER_PROB = 0.02


@dataclass
class CreateAnswerOptions:
    override_add_answers_mode: Optional[str] = None
    special_liquidity_per_answer: Optional[float] = None


@dataclass
class NewAnswer:
    answer: Answer
    contract: Contract
    user: User
    conversion: Optional[ShareConversion] = None
    maker_user_ids: list[str] = field(default_factory=list)
    cancelled_bet_ids: list[str] = field(default_factory=list)


@dataclass
class SplitPlan:
    """Pools after carving a new answer out of Other, before betting down."""
    new_answer: Answer
    other: Answer
    previous: list[Answer]
    mana: float
    excess_yes: float
    excess_no: float

    @property
    def answers(self) -> list[Answer]:
        return self.previous + [self.new_answer, self.other]


# ---------------------------------------------------------------------------
# Pure pieces
# ---------------------------------------------------------------------------

def plan_split(answers: list[Answer], new_answer: Answer,
               answer_cost: float) -> SplitPlan:
    """
    Split Other's reserves between Other and `new_answer`.

    Other's YES/NO imbalance is kept: whatever YES excess Other had goes
    to both halves, and whatever NO excess it had becomes YES on every
    previous answer, which is the same position (NO on Other pays when
    one of the listed answers wins).
    """
    other = next((a for a in answers if a.is_other), None)
    if other is None:
        raise InvariantViolation(
            '"Other" answer not found, and is required for adding new answers',
            details={"contract_id": new_answer.contract_id})
    previous = sorted((a for a in answers if not a.is_other),
                      key=lambda a: a.index)
    n = len(answers)

    mana = answer_cost + min(other.pool_yes, other.pool_no)
    excess_yes = max(0.0, other.pool_yes - other.pool_no)
    excess_no = max(0.0, other.pool_no - other.pool_yes)
    half = min(answer_cost, mana / 2)

    new_answer.index = n - 1
    new_answer.pool_yes = half + excess_yes
    new_answer.pool_no = half
    new_answer.total_liquidity = half
    new_answer.prob = probability(new_answer.pool)

    other.index = n
    other.pool_yes = mana - half + excess_yes
    other.pool_no = mana - half
    other.total_liquidity = other.pool_no
    other.prob = probability(other.pool)

    for answer in previous:
        answer.pool_yes += excess_no
        answer.prob = probability(answer.pool)

    return SplitPlan(new_answer=new_answer, other=other, previous=previous,
                     mana=mana, excess_yes=excess_yes, excess_no=excess_no)


def net_positions(bets: list[Bet]) -> dict[str, float]:
    """user id -> YES shares minus NO shares, dropping users who are flat."""
    positions: dict[str, float] = {}
    for bet in bets:
        sign = 1 if bet.outcome == "YES" else -1
        positions[bet.user_id] = positions.get(bet.user_id, 0.0) + sign * bet.shares
    return {uid: shares for uid, shares in sorted(positions.items())
            if not floating_equal(shares, 0)}


def _check_answer_set(answers: list[Answer]) -> None:
    total = sum(a.prob for a in answers)
    if not floating_equal(total, 1.0, PROB_TOLERANCE):
        raise InvariantViolation(
            f"answer probabilities sum to {total} after adding an answer",
            details={a.id: a.prob for a in answers})
    for a in answers:
        if a.pool_yes <= 0 or a.pool_no <= 0:
            raise InvariantViolation(
                f"answer {a.id} has a non-positive reserve",
                details={"yes": a.pool_yes, "no": a.pool_no})


# ---------------------------------------------------------------------------
# Create answer
# ---------------------------------------------------------------------------

async def create_answer(tx: Transaction, contract_id: str, text: str,
                        creator_id: str, now: int,
                        options: Optional[CreateAnswerOptions] = None) -> NewAnswer:
    """
    Add an answer inside `tx`. Every precondition is checked here, on the
    transaction's own reads, so a retry re-validates against fresh state.
    """
    options = options or CreateAnswerOptions()
    answer_cost = config.ANSWER_COST
    special = options.special_liquidity_per_answer

    contract = await tx.get(contract_path(contract_id))
    if contract is None:
        raise NotFound("Contract not found")
    if contract.mechanism != CPMM_MULTI:
        raise Forbidden("Requires a cpmm multiple choice contract")
    if contract.outcome_type == "NUMBER":
        raise Forbidden("Cannot create new answers for numeric contracts")
    if contract.is_closed(now):
        raise Forbidden("Trading is closed")

    mode = options.override_add_answers_mode or contract.add_answers_mode
    if not mode or mode == ADD_ANSWERS_DISABLED:
        raise AddingAnswersDisabled("Adding answers is disabled")
    # The creator-only rule follows the stored mode even when an override
    # lets the request past the disabled check.
    if (contract.add_answers_mode == ADD_ANSWERS_ONLY_CREATOR
            and contract.creator_id != creator_id
            and not config.is_admin_id(creator_id)):
        raise Forbidden("Only the creator or an admin can create an answer")

    user = await tx.get(user_path(creator_id))
    if user is None:
        raise NotFound("Your account was not found")
    if user.is_banned_from_posting:
        raise Forbidden("You are banned")
    if special is None and user.balance < answer_cost:
        raise InsufficientBalance(f"Insufficient balance, need M{answer_cost:g}",
                                  details={"balance": user.balance})

    answers = await tx.query(answers_collection(contract_id))
    unresolved = [a for a in answers if not a.resolution]
    limit = config.max_answers(contract.should_answers_sum_to_one)
    if len(unresolved) >= limit:
        raise Forbidden(f"Cannot add an answer: Maximum number ({limit}) "
                        "of open answers reached")

    if special is not None:
        if contract.should_answers_sum_to_one:
            raise InvariantViolation(
                "special liquidity is only for independent answers")
        pool = Pool(special, special / (1 / SPECIAL_ANSWER_PROB - 1))
        total_liquidity = special
    else:
        pool = Pool(answer_cost, answer_cost)
        total_liquidity = answer_cost

    new_answer = Answer(
        id=random_id(),
        index=len(answers),
        contract_id=contract_id,
        user_id=creator_id,
        text=text,
        pool_yes=pool.yes,
        pool_no=pool.no,
        prob=probability(pool),
        total_liquidity=total_liquidity,
        created_time=now,
    )
    result = NewAnswer(answer=new_answer, contract=contract, user=user)

    if contract.should_answers_sum_to_one:
        await _split_from_other(tx, contract, answers, result, answer_cost, now)
    else:
        tx.create(answer_path(contract_id, new_answer.id), new_answer)

    if special is None:
        tx.update(user_path(creator_id), balance=Increment(-answer_cost),
                  total_deposits=Increment(-answer_cost))
        tx.update(contract_path(contract_id),
                  total_liquidity=Increment(answer_cost))
        provision = LiquidityProvision(
            id=random_id(),
            contract_id=contract_id,
            user_id=creator_id,
            amount=answer_cost,
            liquidity=answer_cost,
            created_time=now,
            answer_id=new_answer.id,
            is_answer_cost=True,
        )
        tx.create(liquidity_path(contract_id, provision.id), provision)

    logger.info("answer %s added to %s by %s", new_answer.id, contract_id,
                creator_id)
    return result


async def _split_from_other(tx: Transaction, contract: Contract,
                            answers: list[Answer], result: NewAnswer,
                            answer_cost: float, now: int) -> None:
    """Carve result.answer out of Other, bet down, subsidise, write."""
    plan = plan_split(answers, result.answer, answer_cost)
    other = plan.other

    # All reads before the first write.
    unfilled, balances = await ledger.unfilled_bets_and_balances(tx, contract.id)
    other_bets = await tx.query(
        bets_collection(contract.id),
        where=lambda b: b.answer_id == other.id)

    on_other = [b for b in unfilled if b.answer_id == other.id]
    elsewhere = [b for b in unfilled if b.answer_id != other.id]

    bet_down = bet_down_to_one(plan.answers, elsewhere, balances, now)
    pools = add_liquidity_sum_to_one(
        {r.answer.id: r.pool for r in bet_down.bet_results},
        bet_down.extra_mana)

    final_answers = []
    for r in bet_down.bet_results:
        answer = r.answer
        answer.pool_yes = pools[answer.id].yes
        answer.pool_no = pools[answer.id].no
        answer.prob = probability(pools[answer.id])
        final_answers.append(answer)
    _check_answer_set(final_answers)

    new_answer = result.answer
    tx.create(answer_path(contract.id, new_answer.id), new_answer)
    tx.update(answer_path(contract.id, other.id), pool_yes=other.pool_yes,
              pool_no=other.pool_no, prob=other.prob, index=other.index,
              total_liquidity=other.total_liquidity)
    for answer in plan.previous:
        tx.update(answer_path(contract.id, answer.id), pool_yes=answer.pool_yes,
                  pool_no=answer.pool_no, prob=answer.prob)

    for r in bet_down.bet_results:
        bet = r.bet.to_bet(random_id(), contract.id, result.user.id, now,
                           visibility=contract.visibility)
        tx.create(bet_path(contract.id, bet.id), bet)
        ledger.apply_maker_fills(tx, contract.id, r.makers, bet.id)
        result.maker_user_ids.extend(ledger.maker_user_ids(r.makers))

    to_cancel = on_other + [b for r in bet_down.bet_results
                            for b in r.orders_to_cancel]
    ledger.cancel_orders(tx, contract.id, to_cancel)
    result.cancelled_bet_ids = list(dict.fromkeys(b.id for b in to_cancel))

    positions = net_positions(other_bets)
    if positions:
        job = ShareConversion(
            id=new_answer.id,
            contract_id=contract.id,
            new_answer_id=new_answer.id,
            other_answer_id=other.id,
            previous_answer_ids=[a.id for a in plan.previous],
            answer_probs={a.id: a.prob for a in final_answers},
            positions=positions,
            created_time=now,
            visibility=contract.visibility,
        )
        tx.create(conversion_path(contract.id, new_answer.id), job)
        result.conversion = job

    logger.info("split %s out of Other on %s: extra mana %.6f, "
                "%d conversions owed", new_answer.id, contract.id,
                bet_down.extra_mana, len(positions))


# ---------------------------------------------------------------------------
# Share conversion tail
# ---------------------------------------------------------------------------

def _conversion_bet(contract_id: str, user_id: str, answer_id: str,
                    outcome: str, shares: float, prob: float, now: int,
                    visibility: str) -> Bet:
    return Bet(
        id=random_id(),
        contract_id=contract_id,
        user_id=user_id,
        answer_id=answer_id,
        outcome=outcome,
        amount=0.0,
        shares=shares,
        prob_before=prob,
        prob_after=prob,
        created_time=now,
        is_redemption=True,
        visibility=visibility,
    )


async def convert_user_shares(tx: Transaction, contract_id: str,
                              new_answer_id: str, user_id: str,
                              now: int) -> list[str]:
    """
    Convert one user's Other position. Returns the new bet ids, or an
    empty list if this user was already converted.
    """
    job = await tx.get(conversion_path(contract_id, new_answer_id))
    if job is None:
        raise NotFound(f"No share conversion for answer {new_answer_id}")
    marker_path = conversion_marker_path(contract_id, new_answer_id, user_id)
    if await tx.get(marker_path) is not None:
        return []

    position = job.positions[user_id]
    probs = job.answer_probs
    bets = []
    if position > 0:
        bets.append(_conversion_bet(contract_id, user_id, new_answer_id, "YES",
                                    position, probs[new_answer_id], now,
                                    job.visibility))
    else:
        no_shares = -position
        bets.append(_conversion_bet(contract_id, user_id, job.other_answer_id,
                                    "NO", -no_shares,
                                    probs[job.other_answer_id], now,
                                    job.visibility))
        for answer_id in job.previous_answer_ids:
            bets.append(_conversion_bet(contract_id, user_id, answer_id, "YES",
                                        no_shares, probs[answer_id], now,
                                        job.visibility))

    for bet in bets:
        tx.create(bet_path(contract_id, bet.id), bet)
    tx.create(marker_path, ConversionMarker(user_id=user_id, created_time=now,
                                            bet_ids=[b.id for b in bets]))
    return [b.id for b in bets]


async def _complete_job(tx: Transaction, contract_id: str,
                        new_answer_id: str) -> None:
    job = await tx.get(conversion_path(contract_id, new_answer_id))
    if job is not None and job.status != "complete":
        tx.update(conversion_path(contract_id, new_answer_id),
                  status="complete")


async def convert_other_shares(store: DocumentStore, contract_id: str,
                               new_answer_id: str,
                               clock: Callable[[], int]) -> int:
    """
    Run every per-user conversion of a job, then mark it complete.
    Returns how many users were converted by this call.
    """
    job = store.read(conversion_path(contract_id, new_answer_id))
    if job is None or job.status == "complete":
        return 0

    converted = 0
    for user_id in job.positions:
        async def convert(tx, user_id=user_id):
            return await convert_user_shares(tx, contract_id, new_answer_id,
                                             user_id, clock())
        if await store.run_transaction(convert):
            converted += 1

    async def complete(tx):
        await _complete_job(tx, contract_id, new_answer_id)
    await store.run_transaction(complete)

    logger.info("converted Other shares of %d users for answer %s",
                converted, new_answer_id)
    return converted


def pending_conversions(store: DocumentStore,
                        contract_id: Optional[str] = None) -> list[ShareConversion]:
    if contract_id is not None:
        return store.select(conversions_collection(contract_id),
                            where=lambda job: job.status == "pending")
    return [job for _, job in store.find_in_group(
        "conversions", lambda doc: isinstance(doc, ShareConversion)
        and doc.status == "pending")]
