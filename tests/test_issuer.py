"""Tests for LeafCertificateIssuer."""

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12

from clusterca.ca.crypto import load_certificate
from clusterca.ca.issuer import LeafCertificateIssuer
from clusterca.config import CaConfig
from clusterca.exceptions import DriftDetected

from conftest import T0, day

KEY = "c1-clients-ca"


@pytest.fixture
def issuer(cert_manager):
    return LeafCertificateIssuer(cert_manager, organization="io.clusterca")


@pytest.fixture
async def ca(engine):
    material, _ = await engine.reconcile(KEY, CaConfig(), T0)
    return material


class TestIssue:
    @pytest.mark.asyncio
    async def test_signed_by_ca(self, issuer, ca):
        leaf = issuer.issue("broker-0", ca, 30, sans=["broker-0.kafka.svc", "10.0.0.7"], now=T0)

        cert = load_certificate(leaf.certificate)
        cert.verify_directly_issued_by(load_certificate(ca.certificate))
        assert leaf.subject == "broker-0"
        assert leaf.signed_by_cert_generation == ca.cert_generation
        assert leaf.signed_by_key_generation == ca.key_generation
        assert leaf.expires_at == day(30)
        assert leaf.sans == ["broker-0.kafka.svc", "10.0.0.7"]
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.DNSName) == ["broker-0.kafka.svc"]

    @pytest.mark.asyncio
    async def test_generation_never_exceeds_ca(self, issuer, ca):
        leaf = issuer.issue("user", ca, 30, now=T0)
        assert leaf.signed_by_cert_generation <= ca.cert_generation

    @pytest.mark.asyncio
    async def test_ca_without_key_is_drift(self, issuer, ca):
        public_only = ca.model_copy(update={"private_key": None, "key_password": None})
        with pytest.raises(DriftDetected):
            issuer.issue("user", public_only, 30)

    @pytest.mark.asyncio
    async def test_unreadable_key_is_drift(self, issuer, ca):
        with pytest.raises(DriftDetected):
            issuer.issue("user", ca.model_copy(update={"key_password": "wrong"}), 30)


class TestReissue:
    @pytest.mark.asyncio
    async def test_missing_is_issued(self, issuer, ca):
        leaf = issuer.reissue_if_needed("user", None, ca, 30, 5, T0)
        assert leaf.subject == "user"

    @pytest.mark.asyncio
    async def test_fresh_is_kept(self, issuer, ca):
        leaf = issuer.issue("user", ca, 30, now=T0)
        assert issuer.reissue_if_needed("user", leaf, ca, 30, 5, day(10)) is leaf

    @pytest.mark.asyncio
    async def test_expiring_is_reissued(self, issuer, ca):
        leaf = issuer.issue("user", ca, 30, now=T0)
        renewed = issuer.reissue_if_needed("user", leaf, ca, 30, 5, day(26))
        assert renewed is not leaf
        assert renewed.expires_at == day(56)

    @pytest.mark.asyncio
    async def test_stale_after_ca_renewal(self, issuer, engine, ca):
        leaf = issuer.issue("user", ca, 30, now=T0)
        renewed_ca, _ = await engine.reconcile(KEY, CaConfig(force_renewal=True), day(1))

        assert issuer.is_stale(leaf, renewed_ca)
        reissued = issuer.reissue_if_needed("user", leaf, renewed_ca, 30, 5, day(1))
        assert reissued.signed_by_cert_generation == 2

    @pytest.mark.asyncio
    async def test_changed_sans_are_reissued(self, issuer, ca):
        leaf = issuer.issue("broker-0", ca, 30, sans=["a.svc"], now=T0)
        assert issuer.reissue_if_needed("broker-0", leaf, ca, 30, 5, day(1), sans=["a.svc"]) is leaf
        reissued = issuer.reissue_if_needed("broker-0", leaf, ca, 30, 5, day(1), sans=["a.svc", "b.svc"])
        assert reissued.sans == ["a.svc", "b.svc"]


class TestStores:
    @pytest.mark.asyncio
    async def test_keystore_holds_chain(self, issuer, ca):
        leaf = issuer.issue("user", ca, 30, now=T0)
        data = issuer.keystore(leaf, "pw", chain=[ca.certificate])
        key, cert, chain = pkcs12.load_key_and_certificates(data, b"pw")
        assert key is not None
        assert cert == load_certificate(leaf.certificate)
        assert chain == [load_certificate(ca.certificate)]

    @pytest.mark.asyncio
    async def test_truststore(self, issuer, ca):
        data = issuer.truststore([ca.certificate], "pw")
        _, _, certs = pkcs12.load_key_and_certificates(data, b"pw")
        assert certs == [load_certificate(ca.certificate)]
