#!/usr/bin/env python3
"""
Market core CLI. Each run locks the state file, loads the snapshot, runs one
command, waits for its follow-up work, saves, and unlocks.

Usage:
    python3 -m marketcore.cli create-user USERNAME [--balance N]
    python3 -m marketcore.cli mint USER_ID AMOUNT
    python3 -m marketcore.cli create-market QUESTION CREATOR_ID [--answer TEXT ...]
                                            [--binary] [--independent]
                                            [--mode ANYONE] [--ante 100]
    python3 -m marketcore.cli add-answer CONTRACT_ID USER_ID TEXT
    python3 -m marketcore.cli bet CONTRACT_ID USER_ID OUTCOME AMOUNT
                                  [--answer ANSWER_ID] [--limit PROB]
    python3 -m marketcore.cli redeem CONTRACT_ID USER_ID
    python3 -m marketcore.cli resume-conversions [CONTRACT_ID]
    python3 -m marketcore.cli user USER_ID
    python3 -m marketcore.cli market CONTRACT_ID

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "..."}
State: MARKET_STATE env var, default ./market_state.json
"""

import argparse
import asyncio
import fcntl
import json
import os
import sys
from contextlib import contextmanager

from marketcore import config
from marketcore.auth import AuthStore
from marketcore.errors import MarketError
from marketcore.models import (
    CPMM_BINARY, CPMM_MULTI, answers_collection, contract_path, user_path,
)
from marketcore.persistence import load_snapshot, save_snapshot
from marketcore.settlement import SettlementEngine
from marketcore.store import DocumentStore


@contextmanager
def exclusive(state_path: str):
    """Hold an flock on <state>.lock for the whole load, run, save cycle."""
    with open(f"{state_path}.lock", "a") as lock:
        fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock.fileno(), fcntl.LOCK_UN)


def load_or_create(path) -> tuple[DocumentStore, AuthStore]:
    if not os.path.exists(path):
        return DocumentStore(), AuthStore()
    return load_snapshot(path)


def emit(result: dict) -> None:
    sys.stdout.write(json.dumps(result) + "\n")


async def cmd_create_user(engine, args):
    user = await engine.create_user(args.username, balance=args.balance)
    return {"ok": True, "user_id": user.id, "balance": user.balance}


async def cmd_mint(engine, args):
    user = await engine.mint(args.user_id, float(args.amount))
    return {"ok": True, "user_id": user.id, "balance": user.balance}


async def cmd_create_market(engine, args):
    settlement = await engine.create_contract(
        args.question, args.creator_id,
        mechanism=CPMM_BINARY if args.binary else CPMM_MULTI,
        answers=args.answer,
        should_answers_sum_to_one=not args.independent,
        add_answers_mode=args.mode,
        ante=float(args.ante),
    )
    engine.finish(settlement)
    contract = settlement.result["contract"]
    return {"ok": True, "contract_id": contract.id,
            "answers": {a.text: a.id for a in settlement.result["answers"]}}


async def cmd_add_answer(engine, args):
    result = engine.finish(
        await engine.create_answer(args.contract_id, args.text, args.user_id))
    return {"ok": True, "new_answer_id": result["newAnswerId"]}


async def cmd_bet(engine, args):
    placed = engine.finish(await engine.place_bet(
        args.contract_id, args.user_id, float(args.amount), args.outcome,
        answer_id=args.answer,
        limit_prob=float(args.limit) if args.limit else None))
    bet = placed.bet
    legs = [bet] + placed.extra_bets
    return {"ok": True, "bet_id": bet.id,
            "amount": sum(b.amount for b in legs),
            "shares": bet.shares, "prob_after": bet.prob_after,
            "is_filled": bet.is_filled,
            "related_bet_ids": [b.id for b in placed.extra_bets]}


async def cmd_redeem(engine, args):
    result = engine.finish(await engine.redeem(args.user_id, args.contract_id))
    return {"ok": True, **result}


async def cmd_resume_conversions(engine, args):
    jobs = await engine.resume_share_conversions(args.contract_id)
    return {"ok": True, "jobs": jobs}


async def cmd_user(engine, args):
    user = engine.store.read(user_path(args.user_id))
    if user is None:
        return {"ok": False, "error": f"user {args.user_id} not found"}
    return {"ok": True, "user_id": user.id, "username": user.username,
            "balance": user.balance}


async def cmd_market(engine, args):
    contract = engine.store.read(contract_path(args.contract_id))
    if contract is None:
        return {"ok": False, "error": f"market {args.contract_id} not found"}
    answers = sorted(engine.store.select(answers_collection(contract.id)),
                     key=lambda a: a.index)
    return {"ok": True, "contract_id": contract.id,
            "question": contract.question,
            "mechanism": contract.mechanism,
            "prob": contract.prob,
            "total_liquidity": contract.total_liquidity,
            "answers": [{"id": a.id, "text": a.text, "prob": a.prob}
                        for a in answers]}


# Commands that mutate state (need save after)
MUTATING = {"create-user", "mint", "create-market", "add-answer", "bet",
            "redeem", "resume-conversions"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Market core CLI")
    parser.add_argument("--state", default=config.STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("create-user")
    p.add_argument("username")
    p.add_argument("--balance", type=float, default=None)

    p = sub.add_parser("mint")
    p.add_argument("user_id")
    p.add_argument("amount")

    p = sub.add_parser("create-market")
    p.add_argument("question")
    p.add_argument("creator_id")
    p.add_argument("--answer", action="append", default=[])
    p.add_argument("--binary", action="store_true")
    p.add_argument("--independent", action="store_true")
    p.add_argument("--mode", default="ANYONE")
    p.add_argument("--ante", default="100")

    p = sub.add_parser("add-answer")
    p.add_argument("contract_id")
    p.add_argument("user_id")
    p.add_argument("text")

    p = sub.add_parser("bet")
    p.add_argument("contract_id")
    p.add_argument("user_id")
    p.add_argument("outcome", choices=["YES", "NO"])
    p.add_argument("amount")
    p.add_argument("--answer", default=None)
    p.add_argument("--limit", default=None)

    p = sub.add_parser("redeem")
    p.add_argument("contract_id")
    p.add_argument("user_id")

    p = sub.add_parser("resume-conversions")
    p.add_argument("contract_id", nargs="?", default=None)

    p = sub.add_parser("user")
    p.add_argument("user_id")

    p = sub.add_parser("market")
    p.add_argument("contract_id")

    return parser


COMMANDS = {
    "create-user": cmd_create_user,
    "mint": cmd_mint,
    "create-market": cmd_create_market,
    "add-answer": cmd_add_answer,
    "bet": cmd_bet,
    "redeem": cmd_redeem,
    "resume-conversions": cmd_resume_conversions,
    "user": cmd_user,
    "market": cmd_market,
}


async def run(args) -> dict:
    store, auth_store = load_or_create(args.state)
    engine = SettlementEngine(store)
    result = await COMMANDS[args.command](engine, args)
    await engine.drain()
    if args.command in MUTATING:
        save_snapshot(store, args.state, auth_store=auth_store)
    return result


def main(argv=None):
    config.configure_logging("WARNING")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        with exclusive(args.state):
            emit(asyncio.run(run(args)))
    except (MarketError, ValueError, OSError) as e:
        emit({"ok": False, "error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
