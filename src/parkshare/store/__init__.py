"""Document store layer.

Everything the engine persists (spots, history, accounts, the reward outbox
and owner slots) goes through the :class:`DocumentStore` protocol.
"""

from parkshare.store.base import (
    ChangeListener,
    ChangeType,
    DocumentChange,
    DocumentSnapshot,
    DocumentStore,
    Transaction,
    Unsubscribe,
    new_document_id,
)
from parkshare.store.memory import InMemoryDocumentStore

__all__ = [
    "ChangeListener",
    "ChangeType",
    "DocumentChange",
    "DocumentSnapshot",
    "DocumentStore",
    "InMemoryDocumentStore",
    "Transaction",
    "Unsubscribe",
    "new_document_id",
]
