"""SQLAlchemy ORM models for the local store."""

from replica.models.base import Base
from replica.models.store import BlobEntry, StoreVar

__all__ = [
    "Base",
    "BlobEntry",
    "StoreVar",
]
