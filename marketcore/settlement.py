"""
Settlement orchestrator. The one place that turns a request into ledger
writes plus follow-up work.

Every mutating operation:

  1. runs its transaction function under store.run_transaction
     (reads, validation, writes, retried on conflict),
  2. does any follow-up ledger work that must happen but may happen
     in separate transactions (share conversion, redemption),
  3. returns a Settlement: the result for the caller plus a
     continuation of best-effort side effects (notifications, cache
     revalidation, follower bookkeeping).

finish() schedules the continuation on the event loop and hands back
the result. Continuation steps run one after another; a failing step is
logged and skipped, and never undoes anything already committed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from marketcore import config
from marketcore.answers import (
    CreateAnswerOptions, convert_other_shares, create_answer,
    pending_conversions,
)
from marketcore.errors import BadRequest, InsufficientBalance, MarketError, NotFound
from marketcore.models import (
    ADD_ANSWERS_DISABLED, ADD_ANSWERS_MODES, CPMM_BINARY, CPMM_MULTI,
    OTHER_ANSWER_TEXT, Answer, Contract, Group, GroupMember,
    LiquidityProvision, User, answer_path, bet_path, bets_collection,
    contract_path, group_path, liquidity_path, member_path, now_ms,
    random_id, user_path,
)
from marketcore.market_updates import MarketUpdate
from marketcore.notifications import NotificationDispatcher
from marketcore.pricing import pool_at_probability, probability
from marketcore.redemption import redeem_shares
from marketcore.store import DocumentStore, Increment, Transaction
from marketcore import market_updates
from marketcore import topics
from marketcore import trading


logger = logging.getLogger(__name__)

Continuation = Callable[[], Awaitable[None]]
Step = tuple[str, Continuation]

FEED_WINDOW_MS = 2 * 24 * 60 * 60 * 1000


@dataclass
class Settlement:
    result: Any
    continuation: Optional[Continuation] = None


def continuation(*steps: Step) -> Optional[Continuation]:
    """Chain best-effort steps. Each failure is logged, then the next runs."""
    if not steps:
        return None

    async def run():
        for name, step in steps:
            try:
                await step()
            except Exception:
                logger.exception("continuation step %r failed", name)
    return run


class SettlementEngine:

    def __init__(self, store: DocumentStore,
                 notifier: Optional[NotificationDispatcher] = None,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.notifier = notifier or NotificationDispatcher()
        self.clock = clock
        self._background: set[asyncio.Task] = set()

    def finish(self, settlement: Settlement) -> Any:
        if settlement.continuation is not None:
            task = asyncio.create_task(settlement.continuation())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return settlement.result

    async def drain(self) -> None:
        """Wait for every scheduled continuation to finish."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # ------------------------------------------------------------------
    # Users and groups
    # ------------------------------------------------------------------

    async def create_user(self, username: str,
                          balance: Optional[float] = None,
                          user_id: Optional[str] = None) -> User:
        user = User(
            id=user_id or random_id(),
            username=username,
            balance=config.INITIAL_MANA if balance is None else balance,
            created_time=self.clock(),
        )

        async def fn(tx: Transaction):
            if await tx.get(user_path(user.id)) is not None:
                raise BadRequest(f"user {user.id} already exists")
            tx.create(user_path(user.id), user)
            return user
        return await self.store.run_transaction(fn)

    async def mint(self, user_id: str, amount: float) -> User:
        if not amount > 0:
            raise BadRequest("amount must be positive")

        async def fn(tx: Transaction):
            user = await tx.get(user_path(user_id))
            if user is None:
                raise NotFound("User not found")
            tx.update(user_path(user_id), balance=Increment(amount))
            user.balance += amount
            return user
        user = await self.store.run_transaction(fn)
        logger.info("minted M%.4f to %s", amount, user_id)
        return user

    async def set_banned(self, user_id: str, banned: bool) -> User:
        async def fn(tx: Transaction):
            user = await tx.get(user_path(user_id))
            if user is None:
                raise NotFound("User not found")
            tx.update(user_path(user_id), is_banned_from_posting=banned)
            user.is_banned_from_posting = banned
            return user
        return await self.store.run_transaction(fn)

    async def create_group(self, name: str, creator_id: str,
                           privacy_status: str = "public") -> Group:
        group = Group(id=random_id(), name=name, creator_id=creator_id,
                      privacy_status=privacy_status)

        async def fn(tx: Transaction):
            tx.create(group_path(group.id), group)
            tx.create(member_path(group.id, creator_id),
                      GroupMember(group_id=group.id, user_id=creator_id,
                                  role="admin"))
            return group
        return await self.store.run_transaction(fn)

    async def set_group_member(self, group_id: str, user_id: str,
                               role: str = "member") -> GroupMember:
        member = GroupMember(group_id=group_id, user_id=user_id, role=role)

        async def fn(tx: Transaction):
            if await tx.get(group_path(group_id)) is None:
                raise NotFound("Group cannot be found")
            tx.set(member_path(group_id, user_id), member)
            return member
        return await self.store.run_transaction(fn)

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    async def create_contract(self, question: str, creator_id: str,
                              mechanism: str = CPMM_MULTI,
                              answers: Optional[list[str]] = None,
                              should_answers_sum_to_one: bool = True,
                              add_answers_mode: str = "ANYONE",
                              ante: float = 100.0,
                              close_time: Optional[int] = None,
                              visibility: str = "public") -> Settlement:
        """
        Create a binary or multi-answer contract, seeded with `ante` mana
        of liquidity paid by the creator. A sum-to-one contract that
        allows new answers gets an Other answer.
        """
        if not question.strip():
            raise BadRequest("question must not be empty")
        if not ante > 0:
            raise BadRequest("ante must be positive")
        if mechanism not in (CPMM_BINARY, CPMM_MULTI):
            raise BadRequest(f"unsupported mechanism {mechanism}")
        if add_answers_mode not in ADD_ANSWERS_MODES:
            raise BadRequest(f"unknown add answers mode {add_answers_mode}")

        now = self.clock()
        contract = Contract(
            id=random_id(),
            question=question,
            creator_id=creator_id,
            mechanism=mechanism,
            outcome_type="BINARY" if mechanism == CPMM_BINARY else "MULTIPLE_CHOICE",
            should_answers_sum_to_one=(mechanism == CPMM_MULTI
                                       and should_answers_sum_to_one),
            add_answers_mode=(add_answers_mode if mechanism == CPMM_MULTI
                              else ADD_ANSWERS_DISABLED),
            close_time=close_time,
            total_liquidity=ante,
            visibility=visibility,
            follower_ids=[creator_id],
            created_time=now,
        )
        seeded = self._seed_answers(contract, answers or [], ante, now)
        if mechanism == CPMM_BINARY:
            contract.pool_yes = ante
            contract.pool_no = ante
            contract.prob = probability(contract.pool)

        async def fn(tx: Transaction):
            user = await tx.get(user_path(creator_id))
            if user is None:
                raise NotFound("Creator not found")
            if user.balance < ante:
                raise InsufficientBalance(
                    f"Insufficient balance: need M{ante:g} to create a market")
            tx.create(contract_path(contract.id), contract)
            for answer in seeded:
                tx.create(answer_path(contract.id, answer.id), answer)
            provision = LiquidityProvision(
                id=random_id(), contract_id=contract.id, user_id=creator_id,
                amount=ante, liquidity=ante, created_time=now)
            tx.create(liquidity_path(contract.id, provision.id), provision)
            tx.update(user_path(creator_id), balance=Increment(-ante),
                      total_deposits=Increment(-ante))
            return contract

        await self.store.run_transaction(fn)
        logger.info("contract %s created by %s (%s, %d answers)", contract.id,
                    creator_id, mechanism, len(seeded))
        return Settlement(
            {"contract": contract, "answers": seeded},
            continuation(
                ("feed", lambda: self.notifier.add_contract_to_feed(
                    contract, "new_contract", contract.group_ids)),
            ),
        )

    def _seed_answers(self, contract: Contract, texts: list[str],
                      ante: float, now: int) -> list[Answer]:
        if contract.mechanism != CPMM_MULTI:
            if texts:
                raise BadRequest("answers are only for multi-answer contracts")
            return []
        with_other = (contract.should_answers_sum_to_one
                      and contract.add_answers_mode != ADD_ANSWERS_DISABLED)
        entries = [(text, False) for text in texts]
        if with_other:
            entries.append((OTHER_ANSWER_TEXT, True))
        if not texts or (contract.should_answers_sum_to_one and len(entries) < 2):
            raise BadRequest("a multi-answer contract needs more answers")

        n = len(entries)
        per_answer = ante / n
        prob = 1 / n if contract.should_answers_sum_to_one else 0.5
        seeded = []
        for index, (text, is_other) in enumerate(entries):
            pool = pool_at_probability(per_answer, prob)
            seeded.append(Answer(
                id=random_id(), index=index, contract_id=contract.id,
                user_id=contract.creator_id, text=text, pool_yes=pool.yes,
                pool_no=pool.no, prob=probability(pool),
                total_liquidity=per_answer, is_other=is_other,
                created_time=now))
        return seeded

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def create_answer(self, contract_id: str, text: str,
                            creator_id: str,
                            options: Optional[CreateAnswerOptions] = None) -> Settlement:
        text = text.strip()
        if not 1 <= len(text) <= config.MAX_ANSWER_LENGTH:
            raise BadRequest(
                f"answer text must be 1 to {config.MAX_ANSWER_LENGTH} characters")
        now = self.clock()

        async def fn(tx: Transaction):
            return await create_answer(tx, contract_id, text, creator_id, now,
                                       options)
        created = await self.store.run_transaction(fn)

        if created.conversion is not None:
            await self._convert(contract_id, created.answer.id)
        await self._redeem_users(contract_id, created.maker_user_ids)

        return Settlement(
            {"newAnswerId": created.answer.id},
            continuation(
                ("notify", lambda: self.notifier.notify_new_answer(
                    created.answer, created.user, created.contract)),
                ("follow", lambda: self._follow(contract_id, creator_id)),
            ),
        )

    async def _convert(self, contract_id: str, new_answer_id: str) -> None:
        try:
            await convert_other_shares(self.store, contract_id, new_answer_id,
                                       self.clock)
        except MarketError:
            logger.exception("share conversion for %s/%s left pending",
                             contract_id, new_answer_id)

    async def resume_share_conversions(self,
                                       contract_id: Optional[str] = None) -> int:
        """Finish every conversion job still pending. Returns the job count."""
        jobs = pending_conversions(self.store, contract_id)
        for job in jobs:
            logger.info("resuming share conversion %s/%s", job.contract_id,
                        job.new_answer_id)
            await convert_other_shares(self.store, job.contract_id,
                                       job.new_answer_id, self.clock)
        return len(jobs)

    async def _follow(self, contract_id: str, user_id: str) -> None:
        async def fn(tx: Transaction):
            contract = await tx.get(contract_path(contract_id))
            if contract is not None and user_id not in contract.follower_ids:
                tx.update(contract_path(contract_id),
                          follower_ids=contract.follower_ids + [user_id])
        await self.store.run_transaction(fn)

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_bet(self, contract_id: str, user_id: str, amount: float,
                        outcome: str, answer_id: Optional[str] = None,
                        limit_prob: Optional[float] = None,
                        is_api: bool = False) -> Settlement:
        now = self.clock()

        async def fn(tx: Transaction):
            return await trading.place_bet(tx, contract_id, user_id, amount,
                                           outcome, now, answer_id=answer_id,
                                           limit_prob=limit_prob, is_api=is_api)
        placed = await self.store.run_transaction(fn)
        await self._redeem_users(contract_id,
                                 [user_id] + placed.maker_user_ids)
        return Settlement(
            placed,
            continuation(
                ("follow", lambda: self._follow(contract_id, user_id)),
                ("revalidate",
                 lambda: self.notifier.revalidate_contract(placed.contract)),
            ),
        )

    async def cancel_bet(self, bet_id: str, user_id: str) -> Settlement:
        found = self.store.find_in_group("bets", lambda b: b.id == bet_id)
        if not found:
            raise NotFound("Bet not found")
        contract_id = found[0][1].contract_id

        async def fn(tx: Transaction):
            return await trading.cancel_bet(tx, contract_id, bet_id, user_id)
        bet = await self.store.run_transaction(fn)
        logger.info("order %s cancelled by %s", bet_id, user_id)
        return Settlement(bet)

    async def add_liquidity(self, contract_id: str, user_id: str,
                            amount: float) -> Settlement:
        now = self.clock()

        async def fn(tx: Transaction):
            return await trading.add_liquidity(tx, contract_id, user_id,
                                               amount, now)
        provision = await self.store.run_transaction(fn)
        return Settlement(provision)

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    async def redeem(self, user_id: str, contract_id: str) -> Settlement:
        async def fn(tx: Transaction):
            contract = await tx.get(contract_path(contract_id))
            if contract is None:
                raise NotFound("Contract not found")
            return await redeem_shares(tx, user_id, contract, self.clock())
        total = await self.store.run_transaction(fn)
        return Settlement({"status": "success", "redeemed": total})

    async def _redeem_users(self, contract_id: str, user_ids: list[str]) -> None:
        """
        Redeem after fills. The fills are already committed, so a failure
        here is logged and left for the user to retry through redeem().
        """
        for user_id in dict.fromkeys(user_ids):
            try:
                await self.redeem(user_id, contract_id)
            except MarketError:
                logger.exception("redemption for %s on %s failed", user_id,
                                 contract_id)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    async def add_or_remove_topic(self, contract_id: str, group_id: str,
                                  user_id: str, remove: bool = False) -> Settlement:
        async def fn(tx: Transaction):
            return await topics.add_or_remove_topic(tx, contract_id, group_id,
                                                    user_id, remove)
        change = await self.store.run_transaction(fn)
        contract = change.contract
        steps = [("revalidate",
                  lambda: self.notifier.revalidate_contract(contract))]
        recent = contract.created_time > self.clock() - FEED_WINDOW_MS
        if change.added and recent and contract.visibility == "public":
            steps.append(("feed", lambda: self.notifier.add_contract_to_feed(
                contract, "contract_tagged_with_group", [group_id])))
        return Settlement({"success": True}, continuation(*steps))

    # ------------------------------------------------------------------
    # Market edits
    # ------------------------------------------------------------------

    async def update_market(self, contract_id: str, user_id: str,
                            update: MarketUpdate) -> Settlement:
        """
        Change a contract's question, close time, visibility or
        add-answers mode. Followers hear about a new close time, and a
        visibility change is copied onto the contract's bets afterwards.
        """
        now = self.clock()

        async def fn(tx: Transaction):
            return await market_updates.update_market(tx, contract_id, user_id,
                                                      update, now)
        updated = await self.store.run_transaction(fn)
        contract = updated.contract
        logger.info("contract %s updated by %s: %s", contract_id, user_id,
                    ", ".join(updated.updated_keys))

        steps = [
            ("revalidate", lambda: self.notifier.revalidate_contract(contract)),
            ("touch", lambda: self._touch(contract_id)),
        ]
        if update.close_time is not None:
            steps.append(("close_time", lambda: self._notify_close_time(
                contract, user_id, update.close_time)))
        if update.visibility is not None:
            steps.append(("visibility", lambda: self._copy_visibility(
                contract_id, update.visibility)))
        return Settlement({"success": True}, continuation(*steps))

    async def _touch(self, contract_id: str) -> None:
        async def fn(tx: Transaction):
            tx.update(contract_path(contract_id),
                      last_updated_time=self.clock())
        await self.store.run_transaction(fn)

    async def _notify_close_time(self, contract: Contract, updater_id: str,
                                 close_time: int) -> None:
        updater = self.store.read(user_path(updater_id))
        if updater is None:
            raise NotFound("Could not find contract updater")
        await self.notifier.notify_close_time_updated(contract, updater,
                                                      close_time)

    async def _copy_visibility(self, contract_id: str, visibility: str) -> None:
        stale = [b.id for b in self.store.select(bets_collection(contract_id))
                 if b.visibility != visibility]
        for start in range(0, len(stale), config.MAX_WRITES_PER_TRANSACTION):
            batch = stale[start:start + config.MAX_WRITES_PER_TRANSACTION]

            async def fn(tx: Transaction, batch=batch):
                for bet_id in batch:
                    tx.update(bet_path(contract_id, bet_id),
                              visibility=visibility)
            await self.store.run_transaction(fn)
