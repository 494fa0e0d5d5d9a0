"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot holds the complete store: every document with its path
and version, the collection versions, the commit sequence, and the API
key store. Saved after every commit (the store's on_commit hook). On
startup the snapshot is loaded as is; there is no replay.

Writes go to <path>.tmp, are fsynced, then renamed over the snapshot, so a
crash mid-write leaves the previous one intact.
"""

import dataclasses
import json
import os
from typing import Optional

from marketcore.auth import ApiKeyHolder, AuthStore
from marketcore.models import (
    Bet, ConversionMarker, DOCUMENT_TYPES, Fees, Fill,
)
from marketcore.store import DocumentStore, collection_name, parent_collection


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _document_type(path: str) -> type:
    # Conversion markers live under a "users" collection of their own.
    if "/conversions/" in path and collection_name(path) == "users":
        return ConversionMarker
    cls = DOCUMENT_TYPES.get(collection_name(path))
    if cls is None:
        raise ValueError(f"unknown document path in snapshot: {path}")
    return cls


def _load_fields(cls: type, d: dict) -> dict:
    names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in d.items() if k in names}


def _load_bet(d: dict) -> Bet:
    fields = _load_fields(Bet, d)
    fields["fees"] = Fees(**d.get("fees", {}))
    fields["fills"] = [Fill(**f) for f in d.get("fills", [])]
    return Bet(**fields)


def _load_document(path: str, d: dict):
    cls = _document_type(path)
    if cls is Bet:
        return _load_bet(d)
    return cls(**_load_fields(cls, d))


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 2


def _rebuild_collection_versions(state: dict) -> dict:
    """Version 1 did not store collection versions."""
    versions: dict[str, int] = {}
    for doc in state["documents"]:
        collection = parent_collection(doc["path"])
        versions[collection] = max(versions.get(collection, 0), doc["version"])
    state["collection_versions"] = versions
    return state


# Keyed by the version each step produces.
_MIGRATIONS = {2: _rebuild_collection_versions}


def _upgrade(state: dict) -> dict:
    found = state.get("version", 1)
    for target in range(found + 1, CURRENT_VERSION + 1):
        if target not in _MIGRATIONS:
            raise ValueError(f"snapshot version {found} cannot be upgraded")
        state = _MIGRATIONS[target](state)
        state["version"] = target
    return state


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(store: DocumentStore, path: str,
                  auth_store: Optional[AuthStore] = None) -> None:
    holders = auth_store.holders.values() if auth_store else []
    state = {
        "version": CURRENT_VERSION,
        "sequence": store.sequence,
        "collection_versions": dict(store.collection_versions),
        "documents": [
            {"path": doc_path, "version": version,
             "data": dataclasses.asdict(doc)}
            for doc_path, (version, doc) in store.docs.items()
        ],
        "auth": {"users": [dataclasses.asdict(h) for h in holders]},
    }
    tmp = f"{path}.tmp"
    with open(tmp, "w") as f:
        f.write(json.dumps(state, indent=2))
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def load_snapshot(path: str) -> tuple[DocumentStore, AuthStore]:
    """
    Load the store and auth state from a JSON snapshot, upgrading older
    versions. The returned store has no on_commit hook yet.
    """
    with open(path) as f:
        state = _upgrade(json.load(f))

    store = DocumentStore()
    store.docs = {
        entry["path"]: (entry["version"],
                        _load_document(entry["path"], entry["data"]))
        for entry in state["documents"]
    }
    store.collection_versions = dict(state["collection_versions"])
    store.sequence = state.get(
        "sequence", max((v for v, _ in store.docs.values()), default=0))

    auth_store = AuthStore()
    for holder in state.get("auth", {}).get("users", []):
        auth_store.add(ApiKeyHolder(**holder))
    return store, auth_store
