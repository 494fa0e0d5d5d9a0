"""
FastAPI application. HTTP surface of the market core.

Public endpoints (no auth): health, market detail, market bets.
User endpoints (API key): /me, answers, topics, market edits, bets,
redemption, liquidity.
Admin endpoints (admin key): create market, groups, bans, mint.

There is no global lock. Every mutation is a store transaction that is
retried on conflict, and the snapshot is written after every commit.

Run with (install the `serve` extra): uvicorn marketcore.api:app --port 8000
"""

import dataclasses
import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable

from fastapi import FastAPI

from marketcore import config
from marketcore.answers import pending_conversions
from marketcore.api_errors import APIError, api_error_handler
from marketcore.api_models import (
    AddLiquidityRequest, AnswerResponse, BanRequest, BetResponse,
    CreateAnswerRequest, CreateAnswerResponse, CreateGroupRequest,
    CreateMarketRequest, GroupResponse, HealthResponse, LiquidityResponse,
    MarketResponse, MintRequest, PlaceBetRequest, PlaceBetResponse,
    RedeemResponse, RegisterRequest, RegisterResponse, SuccessResponse,
    TopicRequest, UpdateMarketRequest, UserResponse,
)
from marketcore.auth import AuthStore
from marketcore.errors import MarketError
from marketcore.market_updates import MarketUpdate
from marketcore.middleware import AdminDep, AuthUser
from marketcore.models import (
    Answer, Bet, Contract, answers_collection, bets_collection,
    contract_path, user_path,
)
from marketcore.persistence import load_snapshot, save_snapshot
from marketcore.settlement import SettlementEngine
from marketcore.store import DocumentStore


logger = logging.getLogger(__name__)


def _save():
    """Save state to disk. Called after every commit."""
    save_snapshot(app.state.store, config.STATE_PATH,
                  auth_store=app.state.auth_store)


def install_state(store: DocumentStore, auth_store: AuthStore) -> None:
    store.on_commit = lambda _store: _save()
    app.state.store = store
    app.state.auth_store = auth_store
    app.state.engine = SettlementEngine(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    if os.path.exists(config.STATE_PATH):
        store, auth_store = load_snapshot(config.STATE_PATH)
        logger.info("loaded %d documents from %s", len(store.docs),
                    config.STATE_PATH)
    else:
        store, auth_store = DocumentStore(), AuthStore()
    install_state(store, auth_store)

    resumed = await app.state.engine.resume_share_conversions()
    if resumed:
        logger.info("resumed %d pending share conversions", resumed)
    yield
    await app.state.engine.drain()


app = FastAPI(title="Market Core API", version="0.3.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)
app.add_exception_handler(MarketError, api_error_handler)


async def _run(operation: Awaitable):
    """Await an engine call and settle its continuation."""
    return app.state.engine.finish(await operation)


def _market_response(contract: Contract, answers: list[Answer]) -> MarketResponse:
    return MarketResponse.model_validate({
        **dataclasses.asdict(contract),
        "answers": [_answer_response(a) for a in sorted(answers,
                                                        key=lambda a: a.index)],
    })


def _answer_response(answer: Answer) -> AnswerResponse:
    return AnswerResponse.model_validate(dataclasses.asdict(answer))


def _bet_response(bet: Bet) -> BetResponse:
    return BetResponse.model_validate(dataclasses.asdict(bet))


def _get_contract(contract_id: str) -> Contract:
    contract = app.state.store.read(contract_path(contract_id))
    if contract is None:
        raise APIError(404, "not_found", f"Market {contract_id} not found")
    return contract


# ---------------------------------------------------------------------------
# Health + auth (public)
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    store = app.state.store
    return HealthResponse(
        status="ok",
        markets=store.count("contracts"),
        users=len(store.select("users")),
        pending_conversions=len(pending_conversions(store)),
    )


@app.post("/v1/auth/register")
async def auth_register(req: RegisterRequest) -> RegisterResponse:
    """Register with a username. Creates the user with the starting balance."""
    username = req.username.strip()
    if not username or len(username) > 40:
        raise APIError(400, "invalid_username",
                       "Username must be 1-40 characters")
    auth_store = app.state.auth_store
    if auth_store.is_taken(username):
        raise APIError(409, "username_taken",
                       f"Username '{username}' is already taken")

    user = await app.state.engine.create_user(username)
    holder, raw_key = auth_store.register_user(username, user.id)
    _save()
    return RegisterResponse(api_key=raw_key, user_id=holder.user_id,
                            username=username)


# ---------------------------------------------------------------------------
# Public market data
# ---------------------------------------------------------------------------

@app.get("/v1/markets/{contract_id}")
async def get_market(contract_id: str) -> MarketResponse:
    contract = _get_contract(contract_id)
    answers = app.state.store.select(answers_collection(contract_id))
    return _market_response(contract, answers)


@app.get("/v1/markets/{contract_id}/bets")
async def get_market_bets(contract_id: str) -> list[BetResponse]:
    _get_contract(contract_id)
    bets = app.state.store.select(bets_collection(contract_id))
    return [_bet_response(b) for b in sorted(bets, key=lambda b: b.created_time)]


# ---------------------------------------------------------------------------
# User endpoints
# ---------------------------------------------------------------------------

@app.get("/v1/me")
async def get_me(holder: AuthUser) -> UserResponse:
    user = app.state.store.read(user_path(holder.user_id))
    if user is None:
        raise APIError(404, "not_found", "Your account was not found")
    return UserResponse.model_validate(dataclasses.asdict(user))


@app.post("/v1/market/{contract_id}/answer")
async def create_answer(contract_id: str, req: CreateAnswerRequest,
                        holder: AuthUser) -> CreateAnswerResponse:
    if req.contract_id is not None and req.contract_id != contract_id:
        raise APIError(400, "bad_request",
                       "contractId does not match the market in the path")
    result = await _run(app.state.engine.create_answer(
        contract_id, req.text, holder.user_id))
    return CreateAnswerResponse(new_answer_id=result["newAnswerId"])


@app.post("/v1/market/{contract_id}/group")
async def add_or_remove_topic(contract_id: str, req: TopicRequest,
                              holder: AuthUser) -> SuccessResponse:
    await _run(app.state.engine.add_or_remove_topic(
        contract_id, req.group_id, holder.user_id, req.remove))
    return SuccessResponse()


@app.post("/v1/market/{contract_id}/update")
async def update_market(contract_id: str, req: UpdateMarketRequest,
                        holder: AuthUser) -> SuccessResponse:
    update = MarketUpdate(**req.model_dump(exclude_none=True))
    await _run(app.state.engine.update_market(contract_id, holder.user_id,
                                              update))
    return SuccessResponse()


@app.post("/v1/market/{contract_id}/redeem")
async def redeem(contract_id: str, holder: AuthUser) -> RedeemResponse:
    result = await _run(app.state.engine.redeem(holder.user_id, contract_id))
    return RedeemResponse(**result)


@app.post("/v1/market/{contract_id}/add-liquidity")
async def add_liquidity(contract_id: str, req: AddLiquidityRequest,
                        holder: AuthUser) -> LiquidityResponse:
    provision = await _run(app.state.engine.add_liquidity(
        contract_id, holder.user_id, req.amount))
    return LiquidityResponse.model_validate(dataclasses.asdict(provision))


@app.post("/v1/bet")
async def place_bet(req: PlaceBetRequest, holder: AuthUser) -> PlaceBetResponse:
    placed = await _run(app.state.engine.place_bet(
        req.contract_id, holder.user_id, req.amount, req.outcome,
        answer_id=req.answer_id, limit_prob=req.limit_prob, is_api=True))
    return PlaceBetResponse.model_validate({
        **dataclasses.asdict(placed.bet),
        "related_bets": [_bet_response(b) for b in placed.extra_bets],
    })


@app.post("/v1/bet/cancel/{bet_id}")
async def cancel_bet(bet_id: str, holder: AuthUser) -> BetResponse:
    bet = await _run(app.state.engine.cancel_bet(bet_id, holder.user_id))
    return _bet_response(bet)


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/markets")
async def admin_create_market(req: CreateMarketRequest,
                              _: AdminDep) -> MarketResponse:
    result = await _run(app.state.engine.create_contract(
        req.question, req.creator_id, mechanism=req.mechanism,
        answers=req.answers,
        should_answers_sum_to_one=req.should_answers_sum_to_one,
        add_answers_mode=req.add_answers_mode, ante=req.ante,
        close_time=req.close_time, visibility=req.visibility))
    return _market_response(result["contract"], result["answers"])


@app.post("/v1/admin/groups")
async def admin_create_group(req: CreateGroupRequest,
                             _: AdminDep) -> GroupResponse:
    engine = app.state.engine
    group = await engine.create_group(req.name, req.creator_id,
                                      req.privacy_status)
    for user_id, role in req.members.items():
        await engine.set_group_member(group.id, user_id, role)
    return GroupResponse.model_validate(dataclasses.asdict(group))


@app.post("/v1/admin/users/{user_id}/ban")
async def admin_ban(user_id: str, req: BanRequest,
                    _: AdminDep) -> UserResponse:
    user = await app.state.engine.set_banned(user_id, req.banned)
    return UserResponse.model_validate(dataclasses.asdict(user))


@app.post("/v1/admin/mint")
async def admin_mint(req: MintRequest, _: AdminDep) -> UserResponse:
    user = await app.state.engine.mint(req.user_id, req.amount)
    return UserResponse.model_validate(dataclasses.asdict(user))
