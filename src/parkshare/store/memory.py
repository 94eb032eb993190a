"""In-memory document store.

Reference backend for tests, simulations and single-process deployments.
Transactions are optimistic: every read records the document version, and
commit validates those versions and applies all buffered writes without
yielding to the event loop in between.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from parkshare.exceptions import (
    ParkShareConflictError,
    ParkShareError,
    ParkShareNotFoundError,
    ParkShareTransactionConflictError,
)
from parkshare.store.base import (
    ChangeListener,
    ChangeType,
    DocumentChange,
    DocumentSnapshot,
    Unsubscribe,
    new_document_id,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_Key = tuple[str, str]


async def _round_trip() -> None:
    # Every call suspends once, like a real backend would.
    await asyncio.sleep(0)


def _sort_key(value: Any) -> tuple[str, Any]:
    return (type(value).__name__, value)


class _MemoryTransaction:
    def __init__(self, store: InMemoryDocumentStore) -> None:
        self._store = store
        self._reads: dict[_Key, int] = {}
        self._writes: list[tuple[str, str, str, dict[str, Any] | None]] = []

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        if self._writes:
            raise ParkShareError("Transaction reads must happen before writes")
        snapshot = self._store._snapshot(collection, doc_id)
        # First read wins: a re-read cannot hide a concurrent change.
        self._reads.setdefault((collection, doc_id), snapshot.version)
        await _round_trip()
        return snapshot

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(("set", collection, doc_id, copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, copy.deepcopy(patch)))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(("delete", collection, doc_id, None))


class InMemoryDocumentStore:
    """Dict-backed :class:`~parkshare.store.base.DocumentStore`."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}
        # Versions outlive deletes so a delete-then-recreate is still a change.
        self._versions: dict[_Key, int] = {}
        self._listeners: dict[str, list[ChangeListener]] = {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _snapshot(self, collection: str, doc_id: str) -> DocumentSnapshot:
        data = self._docs.get(collection, {}).get(doc_id)
        return DocumentSnapshot(
            collection=collection,
            id=doc_id,
            data=copy.deepcopy(data) if data is not None else None,
            version=self._versions.get((collection, doc_id), 0),
        )

    def _apply(self, staged: dict[_Key, dict[str, Any] | None]) -> list[DocumentChange]:
        changes: list[DocumentChange] = []
        for (collection, doc_id), new_data in staged.items():
            docs = self._docs.setdefault(collection, {})
            previous = docs.get(doc_id)
            if new_data is None:
                if previous is None:
                    continue
                del docs[doc_id]
                change_type = ChangeType.REMOVED
            else:
                docs[doc_id] = new_data
                change_type = ChangeType.ADDED if previous is None else ChangeType.MODIFIED
            key = (collection, doc_id)
            self._versions[key] = self._versions.get(key, 0) + 1
            changes.append(
                DocumentChange(
                    type=change_type,
                    collection=collection,
                    id=doc_id,
                    data=copy.deepcopy(new_data),
                    previous=copy.deepcopy(previous),
                )
            )
        return changes

    def _notify(self, changes: list[DocumentChange]) -> None:
        by_collection: dict[str, list[DocumentChange]] = {}
        for change in changes:
            by_collection.setdefault(change.collection, []).append(change)
        for collection, batch in by_collection.items():
            for listener in list(self._listeners.get(collection, ())):
                try:
                    listener(batch)
                except Exception:
                    _logger.warning("Change listener for %s failed", collection, exc_info=True)

    def _write(self, collection: str, doc_id: str, data: dict[str, Any] | None) -> None:
        changes = self._apply({(collection, doc_id): data})
        self._notify(changes)

    def _commit(self, tx: _MemoryTransaction) -> None:
        for (collection, doc_id), version in tx._reads.items():
            if self._versions.get((collection, doc_id), 0) != version:
                raise ParkShareTransactionConflictError(
                    f"{collection}/{doc_id} changed during transaction (read version {version})"
                )

        staged: dict[_Key, dict[str, Any] | None] = {}
        for op, collection, doc_id, data in tx._writes:
            key = (collection, doc_id)
            current = staged[key] if key in staged else self._docs.get(collection, {}).get(doc_id)
            if op == "delete":
                staged[key] = None
            elif op == "set":
                staged[key] = data
            else:
                if current is None:
                    raise ParkShareNotFoundError(
                        f"Cannot update missing document {collection}/{doc_id}",
                        collection=collection,
                        doc_id=doc_id,
                    )
                staged[key] = {**current, **(data or {})}

        changes = self._apply(staged)
        self._notify(changes)

    # ------------------------------------------------------------------
    # DocumentStore
    # ------------------------------------------------------------------

    async def create(self, collection: str, data: dict[str, Any], *, doc_id: str | None = None) -> str:
        await _round_trip()
        new_id = doc_id or new_document_id()
        if new_id in self._docs.get(collection, {}):
            raise ParkShareConflictError(f"{collection}/{new_id} already exists")
        self._write(collection, new_id, copy.deepcopy(data))
        return new_id

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        await _round_trip()
        return self._snapshot(collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await _round_trip()
        self._write(collection, doc_id, copy.deepcopy(data))

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        await _round_trip()
        current = self._docs.get(collection, {}).get(doc_id)
        if current is None:
            raise ParkShareNotFoundError(
                f"Cannot update missing document {collection}/{doc_id}",
                collection=collection,
                doc_id=doc_id,
            )
        self._write(collection, doc_id, {**current, **copy.deepcopy(patch)})

    async def delete(self, collection: str, doc_id: str) -> None:
        await _round_trip()
        self._write(collection, doc_id, None)

    async def range_query(
        self,
        collection: str,
        field: str,
        *,
        start: Any = None,
        end: Any = None,
    ) -> list[DocumentSnapshot]:
        await _round_trip()
        matched: list[tuple[Any, str]] = []
        for doc_id, data in self._docs.get(collection, {}).items():
            if field not in data:
                continue
            value = data[field]
            try:
                if start is not None and value < start:
                    continue
                if end is not None and value >= end:
                    continue
            except TypeError:
                continue
            matched.append((value, doc_id))
        matched.sort(key=lambda item: (_sort_key(item[0]), item[1]))
        return [self._snapshot(collection, doc_id) for _, doc_id in matched]

    async def query_equal(self, collection: str, field: str, value: Any) -> list[DocumentSnapshot]:
        await _round_trip()
        return [
            self._snapshot(collection, doc_id)
            for doc_id, data in sorted(self._docs.get(collection, {}).items())
            if data.get(field) == value
        ]

    def listen(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        listeners = self._listeners.setdefault(collection, [])
        listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    async def run_transaction(
        self,
        fn: Callable[[_MemoryTransaction], Awaitable[T]],
        *,
        max_attempts: int = 1,
    ) -> T:
        """Run *fn* in a transaction, re-running it on version conflicts.

        With the default single attempt a lost race surfaces as
        :class:`ParkShareTransactionConflictError`.
        """
        attempt = 1
        while True:
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            try:
                self._commit(tx)
            except ParkShareTransactionConflictError:
                if attempt >= max_attempts:
                    raise
                _logger.debug("Transaction conflict, retry %d/%d", attempt, max_attempts)
                attempt += 1
                continue
            return result
