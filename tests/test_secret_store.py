"""
Tests for secret stores.

Tests the abstract store interface and the in-memory implementation.
"""

import pytest

from clusterca.exceptions import StoreConflict
from clusterca.storage import AbstractSecretStore, MemorySecretStore, SecretRecord, StorageConfig
from clusterca.storage.provider import next_version


class TestStorageConfig:
    def test_defaults(self):
        config = StorageConfig()
        assert config.backend == "memory"
        assert config.key_prefix == "clusterca:"
        assert config.redis_port == 6379

    def test_next_version(self):
        assert next_version(None) == "1"
        assert next_version("9") == "10"


class TestMemorySecretStore:
    """Test MemorySecretStore."""

    def test_is_a_secret_store(self):
        assert isinstance(MemorySecretStore(), AbstractSecretStore)

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, memory_store):
        """Test connection lifecycle."""
        assert await memory_store.health_check()
        await memory_store.disconnect()
        assert not await memory_store.health_check()

    @pytest.mark.asyncio
    async def test_get_missing(self, memory_store):
        assert await memory_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_create_and_update(self, memory_store):
        """Versions start at 1 and increase on every write."""
        [created] = await memory_store.commit([SecretRecord(name="a", data={"k": "v1"})])
        assert created.version == "1"

        loaded = await memory_store.get("a")
        assert loaded.data == {"k": "v1"}
        assert loaded.version == "1"

        loaded.data["k"] = "v2"
        [updated] = await memory_store.commit([loaded])
        assert updated.version == "2"
        assert (await memory_store.get("a")).data == {"k": "v2"}

    @pytest.mark.asyncio
    async def test_create_conflicts_with_existing(self, memory_store):
        await memory_store.commit([SecretRecord(name="a")])
        with pytest.raises(StoreConflict):
            await memory_store.commit([SecretRecord(name="a")])

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, memory_store):
        await memory_store.commit([SecretRecord(name="a")])
        first = await memory_store.get("a")
        second = await memory_store.get("a")
        await memory_store.commit([first])
        with pytest.raises(StoreConflict):
            await memory_store.commit([second])

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, memory_store):
        await memory_store.commit([SecretRecord(name="b", data={"k": "old"})])
        with pytest.raises(StoreConflict):
            await memory_store.commit([
                SecretRecord(name="a", data={"k": "new"}),
                SecretRecord(name="b", data={"k": "new"}, version="7"),
            ])
        assert await memory_store.get("a") is None
        assert (await memory_store.get("b")).data == {"k": "old"}

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, memory_store):
        await memory_store.commit([SecretRecord(name="a", annotations={"x": "1"})])
        loaded = await memory_store.get("a")
        loaded.annotations["x"] = "2"
        assert (await memory_store.get("a")).annotations == {"x": "1"}

    @pytest.mark.asyncio
    async def test_delete(self, memory_store):
        await memory_store.commit([SecretRecord(name="a")])
        assert await memory_store.delete("a")
        assert not await memory_store.delete("a")
        assert await memory_store.get("a") is None
