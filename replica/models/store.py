"""Local store models: blob collection and store variables."""

from __future__ import annotations

from sqlalchemy import LargeBinary, Text
from sqlalchemy.orm import Mapped, mapped_column

from replica.models.base import Base


class BlobEntry(Base):
    """A stored blob keyed by file name.

    The reserved name ``index`` holds the gzip-compressed manifest itself.
    """

    __tablename__ = "blobs"

    name: Mapped[str] = mapped_column(Text, primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class StoreVar(Base):
    """Small named metadata value (``image`` epoch, ``dataver`` data version)."""

    __tablename__ = "store_vars"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
