"""Turnpoint: checkpoint snapshots for conversational coding sessions."""

__version__ = "0.4.0"

# Branded types for type-safe IDs
from turnpoint.types import BlobHash, MessageId, NodeId, SessionId, TreeHash

__all__ = [
    "__version__",
    "BlobHash",
    "MessageId",
    "NodeId",
    "SessionId",
    "TreeHash",
]
