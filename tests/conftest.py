"""
Shared fixtures for clusterca tests.

EC keys keep generation fast; RSA is covered explicitly in test_crypto.
"""

from datetime import datetime, timedelta, timezone

import pytest

from clusterca.ca.crypto import CertManager, certificate_pem, private_key_pem
from clusterca.ca.engine import CaEngine
from clusterca.ca.models import CaKind
from clusterca.config import CaSettings, KeyAlgorithm
from clusterca.storage import CaStoreAdapter, MemorySecretStore, SecretRecord

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def day(n: float) -> datetime:
    """Reference time ``n`` days after T0."""
    return T0 + timedelta(days=n)


@pytest.fixture
def settings():
    return CaSettings(
        ca_key_algorithm=KeyAlgorithm.EC,
        leaf_key_algorithm=KeyAlgorithm.EC,
        trust_grace_period_days=30,
        operation_timeout_seconds=5.0,
    )


@pytest.fixture
def cert_manager(settings):
    return CertManager.from_settings(settings)


@pytest.fixture
async def memory_store():
    """Create and connect a memory secret store."""
    store = MemorySecretStore()
    await store.connect()
    yield store
    await store.disconnect()


@pytest.fixture
def adapter(memory_store):
    return CaStoreAdapter(memory_store, timeout_seconds=5.0)


@pytest.fixture
def engine(adapter, settings, cert_manager):
    """Cluster CA engine over the memory store."""
    engine = CaEngine(CaKind.CLUSTER, adapter, settings=settings, cert_manager=cert_manager)
    yield engine
    engine.close()


async def put_external_ca(store, store_key, cert_manager, not_before=T0, validity_days=365, with_key=True):
    """Write a user-supplied CA the way an administrator would: no generation annotations."""
    key = cert_manager.generate_ca_key()
    cert = cert_manager.self_signed_ca(key, "external-ca", "example", not_before, validity_days)
    records = [SecretRecord(name=f"{store_key}-cert", data={"ca.crt": certificate_pem(cert)})]
    if with_key:
        records.append(SecretRecord(name=store_key, data={"ca.key": private_key_pem(key)}))
    await store.commit(records)
    return cert, key
