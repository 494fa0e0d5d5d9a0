"""
Pydantic request/response models for the API.

Fields are snake_case in Python and camelCase on the wire.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketcore import config


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Auth ---

class RegisterRequest(CamelModel):
    username: str

class RegisterResponse(CamelModel):
    api_key: str
    user_id: str
    username: str


# --- Users ---

class UserResponse(CamelModel):
    id: str
    username: str
    balance: float
    total_deposits: float
    is_banned_from_posting: bool


# --- Markets ---

class AnswerResponse(CamelModel):
    id: str
    index: int
    text: str
    user_id: str
    pool_yes: float
    pool_no: float
    prob: float
    total_liquidity: float
    is_other: bool
    resolution: str | None = None

class MarketResponse(CamelModel):
    id: str
    question: str
    creator_id: str
    mechanism: str
    outcome_type: str
    should_answers_sum_to_one: bool
    add_answers_mode: str | None
    close_time: int | None
    total_liquidity: float
    pool_yes: float | None
    pool_no: float | None
    prob: float | None
    visibility: str
    group_ids: list[str]
    created_time: int
    last_updated_time: int | None = None
    answers: list[AnswerResponse] = []

class FillResponse(CamelModel):
    matched_bet_id: str | None
    amount: float
    shares: float
    timestamp: int
    is_sale: bool = False

class BetResponse(CamelModel):
    id: str
    contract_id: str
    user_id: str
    answer_id: str | None
    outcome: str
    amount: float
    shares: float
    prob_before: float
    prob_after: float
    created_time: int
    loan_amount: float
    limit_prob: float | None
    order_amount: float | None
    fills: list[FillResponse]
    is_filled: bool
    is_cancelled: bool
    is_redemption: bool

class PlaceBetResponse(BetResponse):
    related_bets: list[BetResponse] = []


# --- Requests ---

class CreateAnswerRequest(CamelModel):
    contract_id: str | None = None
    text: str = Field(min_length=1, max_length=config.MAX_ANSWER_LENGTH)

class CreateAnswerResponse(CamelModel):
    new_answer_id: str

class TopicRequest(CamelModel):
    group_id: str
    remove: bool = False

class SuccessResponse(CamelModel):
    success: bool = True

class RedeemResponse(CamelModel):
    status: str
    redeemed: float

class PlaceBetRequest(CamelModel):
    contract_id: str
    amount: float = Field(ge=1)
    outcome: str = Field(pattern="^(YES|NO)$")
    answer_id: str | None = None
    limit_prob: float | None = Field(default=None, gt=0, lt=1)

class UpdateMarketRequest(CamelModel):
    question: str | None = Field(default=None, min_length=1)
    close_time: int | None = None
    visibility: str | None = None
    add_answers_mode: str | None = None

class AddLiquidityRequest(CamelModel):
    amount: float = Field(gt=0)

class LiquidityResponse(CamelModel):
    id: str
    contract_id: str
    user_id: str
    amount: float
    liquidity: float
    created_time: int


# --- Admin ---

class CreateMarketRequest(CamelModel):
    question: str = Field(min_length=1)
    creator_id: str
    mechanism: str = "cpmm-multi-1"
    answers: list[str] = []
    should_answers_sum_to_one: bool = True
    add_answers_mode: str = "ANYONE"
    ante: float = Field(default=100.0, gt=0)
    close_time: int | None = None
    visibility: str = "public"

class CreateGroupRequest(CamelModel):
    name: str = Field(min_length=1)
    creator_id: str
    privacy_status: str = Field(default="public",
                                pattern="^(public|curated|private)$")
    members: dict[str, str] = {}

class GroupResponse(CamelModel):
    id: str
    name: str
    creator_id: str
    privacy_status: str

class BanRequest(CamelModel):
    banned: bool = True

class MintRequest(CamelModel):
    user_id: str
    amount: float = Field(gt=0)

class HealthResponse(CamelModel):
    status: str
    markets: int
    users: int
    pending_conversions: int
