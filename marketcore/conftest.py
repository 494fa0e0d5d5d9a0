"""
Shared fixtures. `seed` writes documents straight into a store, without
going through a transaction, to set up market states the engines
would take many steps to reach.
"""

import pytest

from marketcore.models import (
    ADD_ANSWERS_ANYONE, CPMM_MULTI, Answer, Bet, Contract, Group,
    GroupMember, Pool, User, answer_path, bet_path, contract_path, group_path,
    member_path, user_path,
)
from marketcore.notifications import NotificationDispatcher
from marketcore.pricing import probability
from marketcore.settlement import SettlementEngine
from marketcore.store import DocumentStore, parent_collection


NOW = 1_700_000_000_000


class Seed:

    def __init__(self, store: DocumentStore):
        self.store = store
        self.now = NOW

    def put(self, path, doc):
        self.store.sequence += 1
        self.store.docs[path] = (self.store.sequence, doc)
        self.store.collection_versions[parent_collection(path)] = self.store.sequence
        return doc

    def user(self, user_id, balance=1000.0, **kw):
        return self.put(user_path(user_id),
                        User(id=user_id, username=user_id, balance=balance,
                             created_time=NOW - 10_000, **kw))

    def contract(self, contract_id="c1", creator_id="creator", **kw):
        kw.setdefault("mechanism", CPMM_MULTI)
        kw.setdefault("add_answers_mode", ADD_ANSWERS_ANYONE)
        kw.setdefault("created_time", NOW - 10_000)
        return self.put(contract_path(contract_id),
                        Contract(id=contract_id, question="Who wins?",
                                 creator_id=creator_id, **kw))

    def answer(self, contract_id, answer_id, pool_yes, pool_no, index=0,
               is_other=False, **kw):
        pool = Pool(pool_yes, pool_no)
        return self.put(answer_path(contract_id, answer_id), Answer(
            id=answer_id, index=index, contract_id=contract_id,
            user_id="creator", text="Other" if is_other else answer_id,
            pool_yes=pool_yes, pool_no=pool_no, prob=probability(pool),
            total_liquidity=pool_no, is_other=is_other,
            created_time=NOW - 10_000, **kw))

    def bet(self, contract_id, bet_id, user_id, outcome, shares,
            amount=None, answer_id=None, created_time=NOW - 5_000, **kw):
        kw.setdefault("prob_before", 0.5)
        kw.setdefault("prob_after", 0.5)
        return self.put(bet_path(contract_id, bet_id), Bet(
            id=bet_id, contract_id=contract_id, user_id=user_id,
            outcome=outcome, shares=shares,
            amount=shares * 0.5 if amount is None else amount,
            answer_id=answer_id, created_time=created_time, **kw))

    def limit_order(self, contract_id, bet_id, user_id, outcome, limit_prob,
                    order_amount, answer_id=None, created_time=NOW - 5_000):
        return self.bet(contract_id, bet_id, user_id, outcome, 0.0, amount=0.0,
                        answer_id=answer_id, created_time=created_time,
                        limit_prob=limit_prob, order_amount=order_amount,
                        is_filled=False, prob_before=limit_prob,
                        prob_after=limit_prob)

    def group(self, group_id, creator_id="creator", privacy_status="public"):
        return self.put(group_path(group_id),
                        Group(id=group_id, name=group_id,
                              creator_id=creator_id,
                              privacy_status=privacy_status))

    def member(self, group_id, user_id, role="member"):
        return self.put(member_path(group_id, user_id),
                        GroupMember(group_id=group_id, user_id=user_id,
                                    role=role))


@pytest.fixture
def store():
    return DocumentStore()


@pytest.fixture
def seed(store):
    return Seed(store)


@pytest.fixture
def notifier():
    return NotificationDispatcher(webhook_url="")


@pytest.fixture
def engine(store, notifier):
    return SettlementEngine(store, notifier=notifier, clock=lambda: NOW)
