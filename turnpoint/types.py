"""Branded identifier types.

These are plain strings at runtime; the NewType wrappers only exist so type
checkers catch a tree hash passed where a blob hash is expected.
"""

from typing import NewType

BlobHash = NewType("BlobHash", str)
TreeHash = NewType("TreeHash", str)
NodeId = NewType("NodeId", str)
MessageId = NewType("MessageId", str)
SessionId = NewType("SessionId", str)
