# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Leaf Certificate Issuer

Issues end-entity certificates for cluster components (brokers, controllers,
operators) and client users, signed by the current CA, and decides when an
existing certificate has to be reissued after the CA rotated.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from clusterca.ca.crypto import (
    CertManager,
    as_utc,
    certificate_pem,
    load_certificate,
    load_private_key,
    private_key_pem,
)
from clusterca.ca.models import CaMaterial, LeafCertificate
from clusterca.exceptions import DriftDetected

logger = logging.getLogger(__name__)


class LeafCertificateIssuer:
    """Signs leaf certificates with a CA's current key.

    Args:
        cert_manager: X.509 primitives.
        organization: Organization placed in issued subjects.
    """

    def __init__(
        self,
        cert_manager: Optional[CertManager] = None,
        organization: Optional[str] = None,
    ):
        self.cert_manager = cert_manager or CertManager()
        self.organization = organization

    def issue(
        self,
        identity: str,
        ca_material: CaMaterial,
        validity_days: int,
        sans: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> LeafCertificate:
        """Issue a certificate for ``identity``.

        Args:
            identity: Common name of the subject.
            ca_material: The signing CA; must carry its private key.
            validity_days: Lifetime of the certificate.
            sans: DNS names or IP addresses for the subjectAltName extension.
            now: Start of validity; defaults to the current time.

        Returns:
            The certificate and its unencrypted private key, stamped with the
            CA generations it was signed under.

        Raises:
            DriftDetected: The CA has no usable private key.
        """
        if not ca_material.has_private_key:
            raise DriftDetected(f"Cannot issue certificate for {identity}: CA has no private key")
        try:
            ca_cert = load_certificate(ca_material.certificate)
            ca_key = load_private_key(ca_material.private_key, ca_material.key_password)
        except (ValueError, TypeError) as exc:
            raise DriftDetected(
                f"Cannot issue certificate for {identity}: CA material unusable: {exc}"
            ) from exc

        not_before = as_utc(now) if now else datetime.now(timezone.utc)
        names = list(sans or [])
        key = self.cert_manager.generate_leaf_key()
        csr = self.cert_manager.build_csr(key, identity, self.organization, names)
        cert = self.cert_manager.sign_csr(csr, ca_cert, ca_key, not_before, validity_days)

        logger.debug(
            "Issued certificate for %s under CA cert generation %d",
            identity,
            ca_material.cert_generation,
        )
        return LeafCertificate(
            subject=identity,
            certificate=certificate_pem(cert),
            private_key=private_key_pem(key),
            signed_by_cert_generation=ca_material.cert_generation,
            signed_by_key_generation=ca_material.key_generation,
            expires_at=cert.not_valid_after_utc,
            sans=names,
        )

    @staticmethod
    def is_stale(leaf: LeafCertificate, ca_material: CaMaterial) -> bool:
        """True if ``leaf`` was signed under an older CA certificate or key."""
        return (
            leaf.signed_by_cert_generation < ca_material.cert_generation
            or leaf.signed_by_key_generation < ca_material.key_generation
        )

    def reissue_if_needed(
        self,
        identity: str,
        existing: Optional[LeafCertificate],
        ca_material: CaMaterial,
        validity_days: int,
        renewal_days: int,
        now: datetime,
        sans: Optional[Sequence[str]] = None,
    ) -> LeafCertificate:
        """Return ``existing`` unchanged unless it has to be reissued.

        A certificate is reissued when it is missing, was signed under an
        older CA generation, expires within ``renewal_days`` or no longer
        carries the requested SANs.
        """
        now = as_utc(now)
        reason = None
        if existing is None:
            reason = "no certificate"
        elif self.is_stale(existing, ca_material):
            reason = (
                f"signed under CA cert generation {existing.signed_by_cert_generation}, "
                f"current is {ca_material.cert_generation}"
            )
        elif now >= as_utc(existing.expires_at) - timedelta(days=renewal_days):
            reason = "within renewal period"
        elif sans is not None and sorted(sans) != sorted(existing.sans):
            reason = "subject alternative names changed"

        if reason is None:
            return existing
        logger.info("Reissuing certificate for %s: %s", identity, reason)
        return self.issue(
            identity,
            ca_material,
            validity_days,
            sans=sans if sans is not None else (existing.sans if existing else None),
            now=now,
        )

    def keystore(self, leaf: LeafCertificate, password: str, chain: Sequence[str] = ()) -> bytes:
        """PKCS#12 keystore with the leaf key, its certificate and ``chain``."""
        return self.cert_manager.keystore(leaf.subject, leaf.private_key, leaf.certificate, chain, password)

    def truststore(self, certificates: Sequence[str], password: str) -> bytes:
        return self.cert_manager.truststore(certificates, password)


__all__ = ["LeafCertificateIssuer"]
