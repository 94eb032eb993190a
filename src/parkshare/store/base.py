"""Document store interface consumed by the engine.

Having protocols here makes it easy to plug a real backend (or test
doubles) while keeping the reference implementation
(:class:`~parkshare.store.memory.InMemoryDocumentStore`) concrete.

Backends report retryable infrastructure failures as
:class:`~parkshare.exceptions.ParkShareTransientStoreError` and lost
transaction races as
:class:`~parkshare.exceptions.ParkShareTransactionConflictError`.
"""

from __future__ import annotations

import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document as read at one version.  ``data`` is ``None`` when missing."""

    collection: str
    id: str
    data: dict[str, Any] | None
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class DocumentChange:
    """One committed write, as delivered to change listeners."""

    type: ChangeType
    collection: str
    id: str
    data: dict[str, Any] | None
    previous: dict[str, Any] | None


ChangeListener = Callable[[list[DocumentChange]], None]
Unsubscribe = Callable[[], None]


def new_document_id() -> str:
    """Random 20-character document id."""
    return secrets.token_hex(10)


class Transaction(Protocol):
    """Serializable read-modify-write unit.

    All reads must happen before the first write.  Writes are buffered and
    applied atomically on commit, which fails if anything read has changed.
    """

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        ...

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        ...

    def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...


class DocumentStore(Protocol):
    """Structural interface of the persistent document store."""

    async def create(self, collection: str, data: dict[str, Any], *, doc_id: str | None = None) -> str:
        ...

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        ...

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        ...

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    async def range_query(
        self,
        collection: str,
        field: str,
        *,
        start: Any = None,
        end: Any = None,
    ) -> list[DocumentSnapshot]:
        """Documents with ``start <= doc[field] < end`` (either bound optional)."""
        ...

    async def query_equal(self, collection: str, field: str, value: Any) -> list[DocumentSnapshot]:
        ...

    def listen(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        ...

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 1,
    ) -> T:
        ...
