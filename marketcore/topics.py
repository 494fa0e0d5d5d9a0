"""
Tagging contracts with groups ("topics").
"""

from dataclasses import dataclass
from typing import Optional

from marketcore import config
from marketcore.errors import Forbidden, NotFound
from marketcore.models import (
    Contract, Group, GroupMember, contract_path, group_path, member_path,
)
from marketcore.store import Transaction


@dataclass
class TopicChange:
    contract: Contract
    group: Group
    added: bool


def can_user_add_group_to_market(user_id: str, group: Group,
                                 contract: Contract,
                                 membership: Optional[GroupMember]) -> bool:
    is_market_creator = contract.creator_id == user_id
    is_admin_or_mod = membership is not None and membership.role in (
        "admin", "moderator")
    return (config.is_admin_id(user_id) or is_admin_or_mod
            or (is_market_creator and (group.privacy_status == "public"
                                       or membership is not None)))


async def add_or_remove_topic(tx: Transaction, contract_id: str,
                              group_id: str, user_id: str,
                              remove: bool = False) -> TopicChange:
    group = await tx.get(group_path(group_id))
    if group is None:
        raise NotFound("Group cannot be found")
    contract = await tx.get(contract_path(contract_id))
    if contract is None:
        raise NotFound("Contract cannot be found")
    membership = await tx.get(member_path(group_id, user_id))

    if contract.visibility == "private":
        raise Forbidden("You can not add topics to private questions")
    if group.privacy_status == "private":
        raise Forbidden("You can not add private topics to questions")
    if not remove and len(contract.group_ids) >= config.MAX_GROUPS_PER_MARKET:
        raise Forbidden(f"A question can have at most "
                        f"{config.MAX_GROUPS_PER_MARKET} topics")
    if not can_user_add_group_to_market(user_id, group, contract, membership):
        raise Forbidden("Permission denied")

    if remove:
        group_ids = [gid for gid in contract.group_ids if gid != group_id]
    else:
        group_ids = list(dict.fromkeys(contract.group_ids + [group_id]))
    if group_ids != contract.group_ids:
        tx.update(contract_path(contract_id), group_ids=group_ids)
        contract.group_ids = group_ids
    return TopicChange(contract=contract, group=group, added=not remove)
