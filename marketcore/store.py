"""
Transactional document store. The single source of truth for ledger state.

Documents are dataclass instances addressed by slash paths (see the
layout in models.py). Every document has a version; every collection
has a version that moves whenever one of its members is written, so a
query can tell when something appeared or changed under it.

Transactions are optimistic:

  1. reads (get / get_all / query) record the versions they saw,
  2. writes (create / update / set) are buffered,
  3. commit re-checks every recorded version and, if nothing moved,
     applies all buffered writes at once.

A version that moved raises TransactionConflict and run_transaction
starts the whole function again on fresh reads, up to a bounded number
of attempts.

As with Firestore, all reads must happen before the first write, and
reads never see the transaction's own buffered writes.

Reads hand out deep copies. The only way to change stored state is a
commit.
"""

import asyncio
import copy
import dataclasses
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from marketcore import config
from marketcore.errors import (
    InvariantViolation, TransactionConflict, TransactionFailed,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Increment:
    """Atomic field increment for Transaction.update."""

    def __init__(self, amount: float):
        self.amount = amount

    def __repr__(self):
        return f"Increment({self.amount!r})"


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0]


def collection_name(path: str) -> str:
    """Name of the collection a document path sits in ('bets', 'users', ...)."""
    return parent_collection(path).rsplit("/", 1)[-1]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class DocumentStore:

    def __init__(self, max_attempts: Optional[int] = None,
                 on_commit: Optional[Callable[["DocumentStore"], None]] = None):
        self.docs: dict[str, tuple[int, Any]] = {}
        self.collection_versions: dict[str, int] = {}
        self.sequence = 0
        self.max_attempts = max_attempts
        self.on_commit = on_commit
        self.commits = 0
        self.conflicts = 0

    def version(self, path: str) -> int:
        entry = self.docs.get(path)
        return entry[0] if entry else 0

    def transaction(self) -> "Transaction":
        return Transaction(self)

    async def run_transaction(self, fn: Callable[["Transaction"], Awaitable[T]],
                              max_attempts: Optional[int] = None) -> T:
        """
        Run `fn(tx)` and commit. On conflict, run it again from scratch.

        Engine errors raised by `fn` propagate at once and nothing is
        written. Raises TransactionFailed when every attempt conflicted.
        """
        attempts = (max_attempts or self.max_attempts
                    or config.TRANSACTION_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            tx = Transaction(self)
            result = await fn(tx)
            try:
                tx.commit()
            except TransactionConflict as e:
                self.conflicts += 1
                logger.info("transaction conflict, attempt %d/%d: %s",
                            attempt, attempts, e.message)
                continue
            return result
        raise TransactionFailed(
            f"transaction gave up after {attempts} conflicting attempts",
            details={"attempts": attempts})

    # ------------------------------------------------------------------
    # Non-transactional reads (public GET endpoints, job discovery)
    # ------------------------------------------------------------------

    def read(self, path: str) -> Optional[Any]:
        entry = self.docs.get(path)
        return copy.deepcopy(entry[1]) if entry else None

    def select(self, collection: str,
               where: Optional[Callable[[Any], bool]] = None) -> list:
        return [copy.deepcopy(doc) for doc in self._members(collection, where)]

    def find_in_group(self, name: str,
                      where: Callable[[Any], bool]) -> list[tuple[str, Any]]:
        """(path, doc) for every document in any collection called `name`."""
        return [
            (path, copy.deepcopy(doc))
            for path, (_, doc) in self.docs.items()
            if collection_name(path) == name and where(doc)
        ]

    def count(self, name: str) -> int:
        return sum(1 for path in self.docs if collection_name(path) == name)

    def _members(self, collection: str, where) -> list:
        return [
            doc for path, (_, doc) in self.docs.items()
            if parent_collection(path) == collection
            and (where is None or where(doc))
        ]

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _apply(self, writes: list[tuple[str, str, Any]]) -> None:
        staged: dict[str, Any] = {}

        def current(path):
            if path in staged:
                return staged[path]
            entry = self.docs.get(path)
            return entry[1] if entry else None

        for op, path, payload in writes:
            existing = current(path)
            if op == "create":
                if existing is not None:
                    raise InvariantViolation(
                        f"document already exists: {path}")
                staged[path] = copy.deepcopy(payload)
            elif op == "set":
                staged[path] = copy.deepcopy(payload)
            else:
                if existing is None:
                    raise InvariantViolation(
                        f"cannot update missing document: {path}")
                resolved = {
                    name: (getattr(existing, name) + value.amount
                           if isinstance(value, Increment)
                           else copy.deepcopy(value))
                    for name, value in payload.items()
                }
                staged[path] = dataclasses.replace(existing, **resolved)

        self.sequence += 1
        for path, doc in staged.items():
            self.docs[path] = (self.sequence, doc)
            self.collection_versions[parent_collection(path)] = self.sequence


class Transaction:

    def __init__(self, store: DocumentStore):
        self.store = store
        self.reads: dict[str, int] = {}
        self.collection_reads: dict[str, int] = {}
        self.writes: list[tuple[str, str, Any]] = []
        self.committed = False

    def _check_can_read(self):
        if self.writes:
            raise RuntimeError("transaction reads must happen before writes")

    async def get(self, path: str) -> Optional[Any]:
        self._check_can_read()
        await asyncio.sleep(0)
        self.reads.setdefault(path, self.store.version(path))
        return self.store.read(path)

    async def get_all(self, paths: list[str]) -> list[Optional[Any]]:
        return [await self.get(path) for path in paths]

    async def query(self, collection: str,
                    where: Optional[Callable[[Any], bool]] = None) -> list:
        self._check_can_read()
        await asyncio.sleep(0)
        self.collection_reads.setdefault(
            collection, self.store.collection_versions.get(collection, 0))
        return self.store.select(collection, where)

    def create(self, path: str, doc: Any) -> None:
        self.writes.append(("create", path, doc))

    def set(self, path: str, doc: Any) -> None:
        self.writes.append(("set", path, doc))

    def update(self, path: str, fields: Optional[dict] = None,
               **kwargs) -> None:
        self.writes.append(("update", path, {**(fields or {}), **kwargs}))

    def commit(self) -> None:
        if self.committed:
            raise RuntimeError("transaction already committed")
        if len(self.writes) > config.MAX_WRITES_PER_TRANSACTION:
            raise InvariantViolation(
                "too many writes in one transaction",
                details={"writes": len(self.writes),
                         "limit": config.MAX_WRITES_PER_TRANSACTION})

        for path, seen in self.reads.items():
            if self.store.version(path) != seen:
                raise TransactionConflict(f"{path} changed since it was read")
        for collection, seen in self.collection_reads.items():
            if self.store.collection_versions.get(collection, 0) != seen:
                raise TransactionConflict(
                    f"{collection} changed since it was queried")

        self.committed = True
        if not self.writes:
            return
        self.store._apply(self.writes)
        self.store.commits += 1
        if self.store.on_commit is not None:
            self.store.on_commit(self.store)
