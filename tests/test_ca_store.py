"""
Tests for CaStoreAdapter.

Covers the mapping of CA material onto the certificate and key records,
optimistic concurrency and per-call timeouts.
"""

import asyncio
import base64
import json

import pytest
from cryptography.hazmat.primitives.serialization import pkcs12

from clusterca.ca.annotations import (
    ANNO_CA_CERT_GENERATION,
    ANNO_CA_KEY_GENERATION,
    ANNO_FORCE_RENEW,
    ANNO_FORCE_REPLACE,
    ANNO_SUPERSEDED_CERTS,
)
from clusterca.ca.crypto import certificate_pem, private_key_pem
from clusterca.ca.models import CaMaterial, SupersededCertificate
from clusterca.exceptions import DriftDetected, StoreConflict, StoreUnavailable
from clusterca.storage import CaStoreAdapter, MemorySecretStore, SecretRecord

from conftest import T0, day, put_external_ca

KEY = "c1-cluster-ca"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def new_material(cert_manager):
    def _make(cert_generation=1, key_generation=1, superseded=()):
        key = cert_manager.generate_ca_key()
        cert = cert_manager.self_signed_ca(key, "cluster-ca v1", "io.clusterca", T0, 365)
        return CaMaterial(
            certificate=certificate_pem(cert),
            private_key=private_key_pem(key, "keypass"),
            key_password="keypass",
            cert_generation=cert_generation,
            key_generation=key_generation,
            superseded=list(superseded),
            truststore_password="trustpass",
        )

    return _make


class _SlowStore(MemorySecretStore):
    async def get(self, name):
        await asyncio.sleep(5)
        return await super().get(name)


class TestLoad:
    @pytest.mark.asyncio
    async def test_absent(self, adapter):
        assert await adapter.load(KEY) is None

    @pytest.mark.asyncio
    async def test_orphan_key_record_counts_as_absent(self, adapter, memory_store):
        await memory_store.commit([SecretRecord(name=KEY, data={"ca.key": "pem"})])
        assert await adapter.load(KEY) is None

    @pytest.mark.asyncio
    async def test_external_ca_without_annotations(self, adapter, memory_store, cert_manager):
        cert, _ = await put_external_ca(memory_store, KEY, cert_manager)
        material = await adapter.load(KEY)
        assert material.cert_generation == 0
        assert material.key_generation == 0
        assert material.has_private_key
        assert material.created_at == cert.not_valid_before_utc
        assert material.expires_at == cert.not_valid_after_utc
        assert material.cert_version == "1"
        assert material.key_version == "1"

    @pytest.mark.asyncio
    async def test_malformed_generation_is_drift(self, adapter, memory_store):
        await memory_store.commit([
            SecretRecord(name=f"{KEY}-cert", data={"ca.crt": "x"}, annotations={ANNO_CA_CERT_GENERATION: "01"}),
        ])
        with pytest.raises(DriftDetected):
            await adapter.load(KEY)

    @pytest.mark.asyncio
    async def test_force_flags(self, adapter, memory_store, cert_manager):
        await put_external_ca(memory_store, KEY, cert_manager)
        cert_record = await memory_store.get(f"{KEY}-cert")
        key_record = await memory_store.get(KEY)
        cert_record.annotations[ANNO_FORCE_RENEW] = "true"
        key_record.annotations[ANNO_FORCE_REPLACE] = "true"
        await memory_store.commit([cert_record, key_record])

        material = await adapter.load(KEY)
        assert material.force_renew_requested
        assert material.force_replace_requested

    @pytest.mark.asyncio
    async def test_hand_added_superseded_cert_trusted_until_expiry(self, adapter, memory_store, cert_manager):
        cert, _ = await put_external_ca(memory_store, KEY, cert_manager)
        old = cert_manager.self_signed_ca(cert_manager.generate_ca_key(), "old", "example", T0, 100)
        record = await memory_store.get(f"{KEY}-cert")
        record.data["ca-3.crt"] = certificate_pem(old)
        await memory_store.commit([record])

        [superseded] = (await adapter.load(KEY)).superseded
        assert superseded.cert_generation == 3
        assert superseded.retain_until == old.not_valid_after_utc

    @pytest.mark.asyncio
    async def test_orphan_key_generation(self, adapter, memory_store):
        assert await adapter.orphan_key_generation(KEY) == 0
        await memory_store.commit([SecretRecord(name=KEY, annotations={ANNO_CA_KEY_GENERATION: "5"})])
        assert await adapter.orphan_key_generation(KEY) == 5

    @pytest.mark.asyncio
    async def test_orphan_key_generation_ignored_once_certificate_exists(self, adapter, new_material):
        await adapter.save(KEY, new_material(key_generation=3))
        assert await adapter.orphan_key_generation(KEY) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("metadata", [
        [{"generation": 1}],
        [{"generation": 1, "supersededAt": "yesterday", "retainUntil": "2026-02-01T00:00:00+00:00"}],
        [{"generation": 1, "supersededAt": None, "retainUntil": None}],
        ["ca-1.crt"],
    ])
    async def test_malformed_superseded_metadata_is_drift(self, adapter, memory_store, new_material, metadata):
        superseded = SupersededCertificate(
            certificate=new_material().certificate,
            cert_generation=1,
            superseded_at=day(10),
            retain_until=day(40),
        )
        await adapter.save(KEY, new_material(cert_generation=2, key_generation=2, superseded=[superseded]))
        record = await memory_store.get(f"{KEY}-cert")
        record.annotations[ANNO_SUPERSEDED_CERTS] = json.dumps(metadata)
        await memory_store.commit([record])

        with pytest.raises(DriftDetected):
            await adapter.load(KEY)


class TestSave:
    @pytest.mark.asyncio
    async def test_bootstrap_writes_both_records(self, adapter, memory_store, new_material):
        saved = await adapter.save(KEY, new_material())
        assert saved.cert_version == "1"
        assert saved.key_version == "1"

        cert_record = await memory_store.get(f"{KEY}-cert")
        key_record = await memory_store.get(KEY)
        assert cert_record.annotations[ANNO_CA_CERT_GENERATION] == "1"
        assert key_record.annotations[ANNO_CA_KEY_GENERATION] == "1"
        assert set(cert_record.data) == {"ca.crt", "ca.p12", "ca.password"}
        assert set(key_record.data) == {"ca.key", "ca.key.password"}
        assert "ca.key" not in cert_record.data

    @pytest.mark.asyncio
    async def test_round_trip(self, adapter, new_material):
        material = new_material(cert_generation=4, key_generation=2)
        await adapter.save(KEY, material)
        loaded = await adapter.load(KEY)
        assert loaded.certificate == material.certificate
        assert loaded.private_key == material.private_key
        assert loaded.key_password == material.key_password
        assert loaded.truststore_password == material.truststore_password
        assert (loaded.cert_generation, loaded.key_generation) == (4, 2)

    @pytest.mark.asyncio
    async def test_generation_ten_written_as_decimal(self, adapter, memory_store, new_material):
        await adapter.save(KEY, new_material(cert_generation=10, key_generation=10))
        record = await memory_store.get(f"{KEY}-cert")
        assert record.annotations[ANNO_CA_CERT_GENERATION] == "10"

    @pytest.mark.asyncio
    async def test_superseded_round_trip(self, adapter, memory_store, new_material):
        old = new_material()
        superseded = SupersededCertificate(
            certificate=old.certificate,
            cert_generation=1,
            superseded_at=day(10),
            retain_until=day(40),
        )
        await adapter.save(KEY, new_material(cert_generation=2, key_generation=2, superseded=[superseded]))

        record = await memory_store.get(f"{KEY}-cert")
        assert record.data["ca-1.crt"] == old.certificate
        assert json.loads(record.annotations[ANNO_SUPERSEDED_CERTS])[0]["generation"] == 1

        p12 = base64.b64decode(record.data["ca.p12"])
        _, _, certs = pkcs12.load_key_and_certificates(p12, b"trustpass")
        assert len(certs) == 2

        [loaded] = (await adapter.load(KEY)).superseded
        assert loaded == superseded

    @pytest.mark.asyncio
    async def test_preserves_foreign_metadata(self, memory_store, new_material):
        adapter = CaStoreAdapter(memory_store, labels={"app": "clusterca"})
        saved = await adapter.save(KEY, new_material())
        record = await memory_store.get(f"{KEY}-cert")
        record.annotations["team"] = "platform"
        record.labels["tier"] = "gold"
        await memory_store.commit([record])

        material = await adapter.load(KEY)
        await adapter.save(KEY, material.model_copy(update={"cert_generation": saved.cert_generation + 1}))
        record = await memory_store.get(f"{KEY}-cert")
        assert record.annotations["team"] == "platform"
        assert record.labels == {"tier": "gold", "app": "clusterca"}

    @pytest.mark.asyncio
    async def test_stale_material_conflicts(self, adapter, new_material):
        await adapter.save(KEY, new_material())
        first = await adapter.load(KEY)
        second = await adapter.load(KEY)
        await adapter.save(KEY, first.model_copy(update={"cert_generation": 2}))
        with pytest.raises(StoreConflict):
            await adapter.save(KEY, second.model_copy(update={"cert_generation": 2}))
        assert (await adapter.load(KEY)).cert_generation == 2

    @pytest.mark.asyncio
    async def test_concurrent_bootstrap_conflicts(self, adapter, new_material):
        await adapter.save(KEY, new_material())
        with pytest.raises(StoreConflict):
            await adapter.save(KEY, new_material())

    @pytest.mark.asyncio
    async def test_bootstrap_over_orphan_key(self, adapter, memory_store, new_material):
        await memory_store.commit([SecretRecord(name=KEY, data={"ca.key": "stale"})])
        saved = await adapter.save(KEY, new_material())
        assert saved.key_version == "2"


class TestForceAnnotations:
    @pytest.mark.asyncio
    async def test_clear(self, adapter, memory_store, cert_manager):
        await put_external_ca(memory_store, KEY, cert_manager)
        cert_record = await memory_store.get(f"{KEY}-cert")
        key_record = await memory_store.get(KEY)
        cert_record.annotations[ANNO_FORCE_RENEW] = "true"
        key_record.annotations[ANNO_FORCE_REPLACE] = "true"
        await memory_store.commit([cert_record, key_record])

        assert await adapter.clear_force_annotations(KEY, renew=True, replace=False)
        material = await adapter.load(KEY)
        assert not material.force_renew_requested
        assert material.force_replace_requested

        assert await adapter.clear_force_annotations(KEY)
        assert not await adapter.clear_force_annotations(KEY)


class TestTimeouts:
    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            CaStoreAdapter(MemorySecretStore(), timeout_seconds=0)

    @pytest.mark.asyncio
    async def test_slow_read_is_unavailable(self):
        adapter = CaStoreAdapter(_SlowStore(), timeout_seconds=0.05)
        with pytest.raises(StoreUnavailable):
            await adapter.load(KEY)

    @pytest.mark.asyncio
    async def test_per_call_timeout(self):
        adapter = CaStoreAdapter(_SlowStore(), timeout_seconds=60)
        with pytest.raises(StoreUnavailable):
            await adapter.load(KEY, timeout=0.05)

    @pytest.mark.asyncio
    async def test_zero_timeout_is_not_replaced_by_default(self):
        adapter = CaStoreAdapter(_SlowStore(), timeout_seconds=60)
        with pytest.raises(StoreUnavailable):
            await adapter.load(KEY, timeout=0)
