"""
Transaction helpers shared by the answer, trading and redemption paths:
loading resting orders with their owners' balances, writing maker
fills, cancelling orders.

Everything here takes an open Transaction. Reads go first, writes
after, like every other transaction function.
"""

from typing import Optional

from marketcore.fills import MakerFill
from marketcore.models import Bet, Fill, bet_path, bets_collection, user_path
from marketcore.pricing import floating_greater_equal
from marketcore.store import Increment, Transaction


async def unfilled_bets_and_balances(
        tx: Transaction, contract_id: str,
        answer_id: Optional[str] = None) -> tuple[list[Bet], dict[str, float]]:
    """
    Resting limit orders on a contract (optionally one answer) and the
    current balance of everyone who placed one.
    """
    def resting(bet: Bet) -> bool:
        return bet.is_resting and (answer_id is None
                                   or bet.answer_id == answer_id)

    unfilled = await tx.query(bets_collection(contract_id), where=resting)
    user_ids = sorted({bet.user_id for bet in unfilled})
    users = await tx.get_all([user_path(uid) for uid in user_ids])
    balances = {user.id: user.balance for user in users if user is not None}
    return unfilled, balances


def apply_maker_fills(tx: Transaction, contract_id: str,
                      makers: list[MakerFill], taker_bet_id: str) -> None:
    """Record fills on the matched orders and debit their owners."""
    by_bet: dict[str, list[MakerFill]] = {}
    for maker in makers:
        by_bet.setdefault(maker.bet.id, []).append(maker)

    for bet_makers in by_bet.values():
        bet = bet_makers[0].bet
        fills = bet.fills + [
            Fill(matched_bet_id=taker_bet_id, amount=m.amount,
                 shares=m.shares, timestamp=m.timestamp)
            for m in bet_makers
        ]
        amount = sum(f.amount for f in fills)
        shares = sum(f.shares for f in fills)
        tx.update(bet_path(contract_id, bet.id), fills=fills, amount=amount,
                  shares=shares,
                  is_filled=floating_greater_equal(amount, bet.order_amount))

    spent: dict[str, float] = {}
    for maker in makers:
        spent[maker.bet.user_id] = spent.get(maker.bet.user_id, 0.0) + maker.amount
    for user_id, amount in spent.items():
        tx.update(user_path(user_id), balance=Increment(-amount))


def cancel_orders(tx: Transaction, contract_id: str, bets: list[Bet]) -> None:
    for bet_id in dict.fromkeys(bet.id for bet in bets):
        tx.update(bet_path(contract_id, bet_id), is_cancelled=True)


def maker_user_ids(makers: list[MakerFill]) -> list[str]:
    return list(dict.fromkeys(m.bet.user_id for m in makers))
