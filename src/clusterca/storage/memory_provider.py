# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
In-Memory Secret Store.

Simple in-memory implementation for development and testing.
"""

import logging
from typing import Optional, Sequence

from clusterca.exceptions import StoreConflict
from .provider import AbstractSecretStore, SecretRecord, StorageConfig, next_version

logger = logging.getLogger(__name__)


class MemorySecretStore(AbstractSecretStore):
    """
    In-memory secret store.

    Uses a Python dictionary for storage. Data is lost on restart.
    A commit checks every precondition before writing anything and never
    awaits in between, so it is atomic with respect to other coroutines.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize in-memory storage."""
        super().__init__(config or StorageConfig(backend="memory"))
        self._records: dict[str, SecretRecord] = {}
        self._connected = False

    async def connect(self) -> None:
        """Establish connection (no-op for memory)."""
        self._connected = True

    async def disconnect(self) -> None:
        """Close connection (no-op for memory)."""
        self._connected = False

    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        return self._connected

    async def get(self, name: str) -> Optional[SecretRecord]:
        """Get a copy of a record by name."""
        record = self._records.get(name)
        return record.model_copy(deep=True) if record else None

    async def commit(self, records: Sequence[SecretRecord]) -> list[SecretRecord]:
        """Conditionally write a batch of records."""
        for record in records:
            current = self._records.get(record.name)
            current_version = current.version if current else None
            if current_version != record.version:
                raise StoreConflict(
                    f"Record {record.name} changed concurrently "
                    f"(expected version {record.version}, found {current_version})"
                )

        written = []
        for record in records:
            stored = record.model_copy(deep=True, update={"version": next_version(record.version)})
            self._records[record.name] = stored
            written.append(stored.model_copy(deep=True))
        logger.debug("Committed records %s", [r.name for r in written])
        return written

    async def delete(self, name: str) -> bool:
        """Delete a record. Used by tests and teardown tooling."""
        return self._records.pop(name, None) is not None
