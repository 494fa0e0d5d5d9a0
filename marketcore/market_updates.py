"""
Editing a contract after creation: question, close time, visibility and
the add-answers mode. Only the creator or a site moderator may edit.
"""

from dataclasses import dataclass, field
from typing import Optional

from marketcore import config
from marketcore.errors import BadRequest, Forbidden, NotFound
from marketcore.models import (
    ADD_ANSWERS_MODES, CPMM_MULTI, VISIBILITIES, Contract, ContractEdit,
    contract_path, edit_path, random_id,
)
from marketcore.store import Transaction


# Changes worth an entry in the contract's edit history.
RECORDED_KEYS = ("question", "close_time", "visibility")


@dataclass
class MarketUpdate:
    question: Optional[str] = None
    close_time: Optional[int] = None
    visibility: Optional[str] = None
    add_answers_mode: Optional[str] = None

    def fields(self) -> dict:
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class UpdatedMarket:
    contract: Contract
    updated_keys: list[str] = field(default_factory=list)


def validate_update(update: MarketUpdate, contract: Contract) -> dict:
    changes = update.fields()
    if not changes:
        raise BadRequest("Must provide some change to the contract")
    if "question" in changes:
        changes["question"] = changes["question"].strip()
        if not changes["question"]:
            raise BadRequest("question must not be empty")
    if "visibility" in changes and changes["visibility"] not in VISIBILITIES:
        raise BadRequest(f"unknown visibility {changes['visibility']}")
    if "add_answers_mode" in changes:
        if contract.mechanism != CPMM_MULTI:
            raise BadRequest("addAnswersMode is only for multi-answer contracts")
        if changes["add_answers_mode"] not in ADD_ANSWERS_MODES:
            raise BadRequest(
                f"unknown add answers mode {changes['add_answers_mode']}")
    return changes


async def update_market(tx: Transaction, contract_id: str, user_id: str,
                        update: MarketUpdate, now: int) -> UpdatedMarket:
    contract = await tx.get(contract_path(contract_id))
    if contract is None:
        raise NotFound(f"Contract {contract_id} not found")
    if contract.creator_id != user_id and not config.is_admin_id(user_id):
        raise Forbidden("Only the creator or a moderator can edit this market")
    changes = validate_update(update, contract)

    tx.update(contract_path(contract_id), changes)
    for key, value in changes.items():
        setattr(contract, key, value)

    recorded = [k for k in RECORDED_KEYS if k in changes]
    if recorded:
        edit = ContractEdit(id=random_id(), contract_id=contract_id,
                            editor_id=user_id, updated_keys=recorded,
                            created_time=now)
        tx.create(edit_path(contract_id, edit.id), edit)
    return UpdatedMarket(contract=contract, updated_keys=list(changes))
