# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Abstract Secret Store Interface.

Defines the contract that all secret store backends must implement. CA
material is kept in secret-like records (string data plus annotations and
labels) that carry a version used for optimistic concurrency.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Configuration for secret store backends."""

    backend: str = Field(default="memory", description="Storage backend type")
    key_prefix: str = Field(default="clusterca:", description="Prefix for backend keys")
    timeout_seconds: float = Field(default=30.0, gt=0, le=300, description="Backend socket timeout")

    # Redis-specific
    redis_url: Optional[str] = Field(default=None, description="Overrides host/port/db when set")
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0)
    redis_password: Optional[str] = None
    redis_ssl: bool = False


class SecretRecord(BaseModel):
    """A named, versioned record holding secret data and metadata.

    Attributes:
        name: Record name, unique within the store.
        data: Secret entries (PEM text, base64 blobs, passwords).
        annotations: Metadata read by external observers.
        labels: Selector labels.
        version: Store version. On read it is the current version; on
            commit it is the expected current version, None meaning the
            record must not exist yet.
    """

    name: str
    data: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    version: Optional[str] = None


def next_version(current: Optional[str]) -> str:
    return str(int(current or "0") + 1)


class AbstractSecretStore(ABC):
    """
    Abstract secret store.

    All backends (memory, Redis) must implement this interface. Writes are
    conditional: ``commit`` applies a batch of records only if every record's
    expected version still matches, otherwise nothing is written and
    StoreConflict is raised.
    """

    def __init__(self, config: StorageConfig):
        """Initialize secret store with configuration."""
        self.config = config

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the backend."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the backend."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the backend is healthy."""

    @abstractmethod
    async def get(self, name: str) -> Optional[SecretRecord]:
        """Get a record by name, or None when it does not exist."""

    @abstractmethod
    async def commit(self, records: Sequence[SecretRecord]) -> list[SecretRecord]:
        """Atomically write ``records`` if all expected versions match.

        Returns:
            The written records carrying their new versions.

        Raises:
            StoreConflict: If any record changed since it was read.
            StoreUnavailable: If the backend cannot be reached.
        """
