"""
Data models for the CPMM market core.

Documents live in the transactional store (see store.py) keyed by
slash paths. The layout:

  users/{id}
  groups/{id}, groups/{id}/members/{userId}
  contracts/{id}
  contracts/{id}/answersCpmm/{id}
  contracts/{id}/bets/{id}
  contracts/{id}/liquidity/{id}
  contracts/{id}/edits/{id}
  contracts/{id}/conversions/{answerId}
  contracts/{id}/conversions/{answerId}/users/{userId}

All mana, pool and share values are floats. Compare them with the
tolerance helpers in pricing.py, never with ==.

Times are integer milliseconds since the epoch, supplied by the caller
so that the pure engines stay deterministic.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Optional


OUTCOMES = ("YES", "NO")

CPMM_BINARY = "cpmm-1"
CPMM_MULTI = "cpmm-multi-1"

ADD_ANSWERS_DISABLED = "DISABLED"
ADD_ANSWERS_ONLY_CREATOR = "ONLY_CREATOR"
ADD_ANSWERS_ANYONE = "ANYONE"
ADD_ANSWERS_MODES = (ADD_ANSWERS_DISABLED, ADD_ANSWERS_ONLY_CREATOR,
                     ADD_ANSWERS_ANYONE)

OTHER_ANSWER_TEXT = "Other"

VISIBILITIES = ("public", "unlisted")


# ---------------------------------------------------------------------------
# IDs and clock
# ---------------------------------------------------------------------------

_ID_ALPHABET = string.ascii_letters + string.digits


def random_id(length: int = 12) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def now_ms() -> int:
    return int(time.time() * 1000)


def opposite(outcome: str) -> str:
    return "NO" if outcome == "YES" else "YES"


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Pool:
    """
    CPMM reserves. The same shape backs a binary contract and each
    answer of a multi-answer contract; where it is stored decides
    what it prices.
    """
    yes: float
    no: float

    def __getitem__(self, outcome: str) -> float:
        return self.yes if outcome == "YES" else self.no

    def with_outcome(self, outcome: str, value: float) -> "Pool":
        if outcome == "YES":
            return Pool(yes=value, no=self.no)
        return Pool(yes=self.yes, no=value)

    def plus(self, yes: float = 0.0, no: float = 0.0) -> "Pool":
        return Pool(yes=self.yes + yes, no=self.no + no)


@dataclass(frozen=True)
class Fees:
    creator_fee: float = 0.0
    platform_fee: float = 0.0
    liquidity_fee: float = 0.0

    @property
    def total(self) -> float:
        return self.creator_fee + self.platform_fee + self.liquidity_fee


NO_FEES = Fees()


@dataclass
class Fill:
    """
    One slice of a bet's execution.

    matched_bet_id is None when the pool filled it, the resting order's
    id when a limit order filled it, or "taker" on the maker side.
    """
    matched_bet_id: Optional[str]
    amount: float
    shares: float
    timestamp: int
    is_sale: bool = False


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@dataclass
class User:
    id: str
    username: str
    balance: float = 0.0
    total_deposits: float = 0.0
    is_banned_from_posting: bool = False
    created_time: int = field(default_factory=now_ms)


@dataclass
class Contract:
    """
    A market.

    Binary contracts (cpmm-1) keep their pool on the contract.
    Multi-answer contracts (cpmm-multi-1) keep one pool per answer in
    the answersCpmm subcollection; `pool` stays None for them.
    """
    id: str
    question: str
    creator_id: str
    mechanism: str = CPMM_MULTI
    outcome_type: str = "MULTIPLE_CHOICE"
    should_answers_sum_to_one: bool = True
    add_answers_mode: Optional[str] = ADD_ANSWERS_ANYONE
    close_time: Optional[int] = None
    total_liquidity: float = 0.0
    pool_yes: Optional[float] = None
    pool_no: Optional[float] = None
    prob: Optional[float] = None
    visibility: str = "public"
    group_ids: list[str] = field(default_factory=list)
    follower_ids: list[str] = field(default_factory=list)
    resolution: Optional[str] = None
    created_time: int = field(default_factory=now_ms)
    last_updated_time: Optional[int] = None

    @property
    def pool(self) -> Optional[Pool]:
        if self.pool_yes is None or self.pool_no is None:
            return None
        return Pool(self.pool_yes, self.pool_no)

    def is_closed(self, now: int) -> bool:
        return self.close_time is not None and now > self.close_time


@dataclass
class Answer:
    id: str
    index: int
    contract_id: str
    user_id: str
    text: str
    pool_yes: float
    pool_no: float
    prob: float
    total_liquidity: float
    subsidy_pool: float = 0.0
    is_other: bool = False
    resolution: Optional[str] = None
    created_time: int = field(default_factory=now_ms)

    @property
    def pool(self) -> Pool:
        return Pool(self.pool_yes, self.pool_no)


@dataclass
class Bet:
    """
    An immutable trade record. After creation only is_cancelled (and,
    for resting limit orders, the fill bookkeeping) ever changes.

    answer_id None means the contract-wide binary outcome.
    A bet with limit_prob set and not filled is a resting limit order.
    """
    id: str
    contract_id: str
    user_id: str
    outcome: str
    amount: float
    shares: float
    prob_before: float
    prob_after: float
    created_time: int
    answer_id: Optional[str] = None
    fees: Fees = NO_FEES
    loan_amount: float = 0.0
    limit_prob: Optional[float] = None
    order_amount: Optional[float] = None
    fills: list[Fill] = field(default_factory=list)
    is_filled: bool = True
    is_cancelled: bool = False
    is_redemption: bool = False
    is_ante: bool = False
    is_challenge: bool = False
    is_api: bool = False
    visibility: str = "public"

    @property
    def is_limit_order(self) -> bool:
        return self.limit_prob is not None

    @property
    def is_resting(self) -> bool:
        return (self.limit_prob is not None
                and not self.is_filled and not self.is_cancelled)


@dataclass
class LiquidityProvision:
    """Mana injected into a pool by one actor. Immutable."""
    id: str
    contract_id: str
    user_id: str
    amount: float
    liquidity: float
    created_time: int
    answer_id: Optional[str] = None
    is_answer_cost: bool = False


@dataclass
class Group:
    id: str
    name: str
    creator_id: str
    privacy_status: str = "public"     # "public", "curated", "private"


@dataclass
class GroupMember:
    group_id: str
    user_id: str
    role: str = "member"               # "member", "moderator", "admin"


@dataclass
class ShareConversion:
    """
    Durable record of the follow-up work owed after an answer was split
    out of Other. positions maps user id -> net YES shares held on Other
    when the split committed (negative = net NO).
    """
    id: str
    contract_id: str
    new_answer_id: str
    other_answer_id: str
    previous_answer_ids: list[str]
    answer_probs: dict[str, float]
    positions: dict[str, float]
    created_time: int
    visibility: str = "public"
    status: str = "pending"            # "pending", "complete"


@dataclass
class ConversionMarker:
    """Per-user proof that a ShareConversion was applied to that user."""
    user_id: str
    created_time: int
    bet_ids: list[str] = field(default_factory=list)


@dataclass
class ContractEdit:
    """Who changed which contract fields, and when."""
    id: str
    contract_id: str
    editor_id: str
    updated_keys: list[str]
    created_time: int


# Last path segment's collection name -> document type. Used by the
# snapshot loader.
DOCUMENT_TYPES: dict[str, type] = {
    "users": User,
    "groups": Group,
    "members": GroupMember,
    "contracts": Contract,
    "answersCpmm": Answer,
    "bets": Bet,
    "liquidity": LiquidityProvision,
    "conversions": ShareConversion,
    "edits": ContractEdit,
}


# ---------------------------------------------------------------------------
# Document paths
# ---------------------------------------------------------------------------

def user_path(user_id: str) -> str:
    return f"users/{user_id}"


def group_path(group_id: str) -> str:
    return f"groups/{group_id}"


def member_path(group_id: str, user_id: str) -> str:
    return f"groups/{group_id}/members/{user_id}"


def contract_path(contract_id: str) -> str:
    return f"contracts/{contract_id}"


def answers_collection(contract_id: str) -> str:
    return f"contracts/{contract_id}/answersCpmm"


def answer_path(contract_id: str, answer_id: str) -> str:
    return f"{answers_collection(contract_id)}/{answer_id}"


def bets_collection(contract_id: str) -> str:
    return f"contracts/{contract_id}/bets"


def bet_path(contract_id: str, bet_id: str) -> str:
    return f"{bets_collection(contract_id)}/{bet_id}"


def liquidity_path(contract_id: str, lp_id: str) -> str:
    return f"contracts/{contract_id}/liquidity/{lp_id}"


def edit_path(contract_id: str, edit_id: str) -> str:
    return f"contracts/{contract_id}/edits/{edit_id}"


def conversions_collection(contract_id: str) -> str:
    return f"contracts/{contract_id}/conversions"


def conversion_path(contract_id: str, answer_id: str) -> str:
    return f"{conversions_collection(contract_id)}/{answer_id}"


def conversion_marker_path(contract_id: str, answer_id: str,
                           user_id: str) -> str:
    return f"{conversion_path(contract_id, answer_id)}/users/{user_id}"
