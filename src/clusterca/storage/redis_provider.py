# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Redis Secret Store.

Production Redis backend. Conditional commits use WATCH/MULTI/EXEC, so a
concurrent writer touching any of the records aborts the transaction.
"""

import json
import logging
from typing import Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from clusterca.exceptions import StoreConflict, StoreUnavailable
from .provider import AbstractSecretStore, SecretRecord, StorageConfig, next_version

logger = logging.getLogger(__name__)


class RedisSecretStore(AbstractSecretStore):
    """
    Redis secret store.

    Each record is stored as one JSON document under
    ``<key_prefix>secret:<name>``.

    Args:
        config: Store configuration.
        client: Pre-built client (e.g. a test double); when None a client
            is created on ``connect``.
    """

    def __init__(self, config: StorageConfig, client: Optional[aioredis.Redis] = None):
        """Initialize Redis storage."""
        super().__init__(config)
        self._client = client
        self._owns_client = client is None

    def _key(self, name: str) -> str:
        return f"{self.config.key_prefix}secret:{name}"

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            if self.config.redis_url:
                self._client = aioredis.Redis.from_url(
                    self.config.redis_url,
                    socket_timeout=self.config.timeout_seconds,
                    decode_responses=True,
                )
            else:
                self._client = aioredis.Redis(
                    host=self.config.redis_host,
                    port=self.config.redis_port,
                    db=self.config.redis_db,
                    password=self.config.redis_password,
                    ssl=self.config.redis_ssl,
                    socket_timeout=self.config.timeout_seconds,
                    socket_connect_timeout=self.config.timeout_seconds,
                    decode_responses=True,
                )
        try:
            await self._client.ping()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(f"Redis is not reachable: {exc}") from exc

    async def disconnect(self) -> None:
        """Close connection to Redis."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            if self._client is not None:
                await self._client.ping()
                return True
        except (RedisConnectionError, RedisTimeoutError):
            logger.debug("Redis health check failed", exc_info=True)
        return False

    async def get(self, name: str) -> Optional[SecretRecord]:
        """Get a record by name."""
        try:
            raw = await self._client.get(self._key(name))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(f"Failed to read {name}: {exc}") from exc
        if raw is None:
            return None
        return SecretRecord.model_validate(json.loads(raw))

    async def commit(self, records: Sequence[SecretRecord]) -> list[SecretRecord]:
        """Conditionally write a batch of records in one transaction."""
        keys = [self._key(record.name) for record in records]
        written = [
            record.model_copy(deep=True, update={"version": next_version(record.version)})
            for record in records
        ]
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(*keys)
                for record, key in zip(records, keys):
                    raw = await pipe.get(key)
                    current_version = json.loads(raw)["version"] if raw else None
                    if current_version != record.version:
                        raise StoreConflict(
                            f"Record {record.name} changed concurrently "
                            f"(expected version {record.version}, found {current_version})"
                        )
                pipe.multi()
                for stored, key in zip(written, keys):
                    pipe.set(key, stored.model_dump_json())
                await pipe.execute()
        except WatchError as exc:
            raise StoreConflict(f"Concurrent write to {[r.name for r in records]}") from exc
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(f"Failed to commit {[r.name for r in records]}: {exc}") from exc

        logger.debug("Committed records %s", [r.name for r in written])
        return written
