"""Replica configuration loaded from environment variables."""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_INDEX_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")


class Settings(BaseSettings):
    """Dataset replica settings."""

    model_config = SettingsConfigDict(
        env_prefix="REPLICA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Remote source
    data_base_url: str = ""
    index_name: str = "data_index.gz"
    http_timeout: float = Field(default=60.0, gt=0)

    # Local store
    store_path: Path = Path("./data/replica.db")
    structural_version: int = Field(default=1, ge=1)
    store_busy_timeout: float = Field(default=5.0, gt=0)

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL of the local store."""
        return f"sqlite+aiosqlite:///{self.store_path}"

    def validate_runtime(self) -> None:
        """Validate settings required before talking to the remote source."""
        violations: list[str] = []
        parsed = urlparse(self.data_base_url)
        if not self.data_base_url:
            violations.append("DATA_BASE_URL must be set")
        elif parsed.scheme not in {"http", "https"} or not parsed.netloc:
            violations.append("DATA_BASE_URL must include an http(s) scheme and host")
        if not _INDEX_NAME_RE.match(self.index_name):
            violations.append("INDEX_NAME must be a plain file name")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid replica configuration: {joined}")
