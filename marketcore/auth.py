"""
API key management.

Users register with a username and get a raw API key back exactly once.
Only the sha256 hash of the key is kept. Registering again is refused;
rotate_key issues a new key and invalidates the old one.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ApiKeyHolder:
    username: str
    user_id: str
    api_key_hash: str
    created_at: str = field(default_factory=_now)
    last_seen_at: str = field(default_factory=_now)


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class AuthStore:
    """In-memory key store. Serialized via the persistence module."""

    def __init__(self):
        self.holders: dict[str, ApiKeyHolder] = {}     # username -> holder
        self.key_to_holder: dict[str, ApiKeyHolder] = {}   # key hash -> holder

    def is_taken(self, username: str) -> bool:
        return username in self.holders

    def register_user(self, username: str,
                      user_id: str) -> tuple[ApiKeyHolder, str]:
        """Returns (holder, raw_api_key)."""
        if username in self.holders:
            raise ValueError("username_taken")
        raw_key = secrets.token_urlsafe(32)
        holder = ApiKeyHolder(username=username, user_id=user_id,
                              api_key_hash=_hash_key(raw_key))
        self.holders[username] = holder
        self.key_to_holder[holder.api_key_hash] = holder
        return holder, raw_key

    def rotate_key(self, username: str) -> str:
        holder = self.holders[username]
        raw_key = secrets.token_urlsafe(32)
        self.key_to_holder.pop(holder.api_key_hash, None)
        holder.api_key_hash = _hash_key(raw_key)
        self.key_to_holder[holder.api_key_hash] = holder
        return raw_key

    def authenticate(self, raw_key: str) -> ApiKeyHolder | None:
        holder = self.key_to_holder.get(_hash_key(raw_key))
        if holder:
            holder.last_seen_at = _now()
        return holder

    def add(self, holder: ApiKeyHolder) -> None:
        """Re-insert a holder loaded from a snapshot."""
        self.holders[holder.username] = holder
        self.key_to_holder[holder.api_key_hash] = holder
