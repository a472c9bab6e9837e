# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
X.509 primitives for CA and leaf certificates.

Thin wrapper over the ``cryptography`` library: key pair generation,
self-signed CA certificates, renewal under an existing key, CSR signing,
PEM (de)serialization and PKCS#12 key/trust stores. Every method is
synchronous and CPU-bound; the engine runs them on a worker pool.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from clusterca.config import KeyAlgorithm
from clusterca.exceptions import CryptoGenerationError

logger = logging.getLogger(__name__)

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_certificate(pem: str) -> x509.Certificate:
    """Parse a PEM certificate.

    Raises:
        ValueError: If ``pem`` is not a valid certificate.
    """
    return x509.load_pem_x509_certificate(pem.encode())


def try_load_certificate(pem: Optional[str]) -> Optional[x509.Certificate]:
    """Parse a PEM certificate, returning None when it is missing or corrupt."""
    if not pem:
        return None
    try:
        return load_certificate(pem)
    except ValueError:
        logger.debug("Certificate could not be parsed", exc_info=True)
        return None


def load_private_key(pem: str, password: Optional[str] = None) -> PrivateKey:
    """Parse a PEM private key, encrypted when ``password`` is given.

    Raises:
        ValueError: If the key is malformed or the password is wrong.
        TypeError: If a password is given for an unencrypted key or vice versa.
    """
    key = serialization.load_pem_private_key(
        pem.encode(),
        password=password.encode() if password else None,
    )
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported private key type: {type(key).__name__}")
    return key


def certificate_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def private_key_pem(key: PrivateKey, password: Optional[str] = None) -> str:
    """Serialize a private key as PKCS#8 PEM, encrypted when ``password`` is given."""
    encryption: serialization.KeySerializationEncryption
    if password:
        encryption = serialization.BestAvailableEncryption(password.encode())
    else:
        encryption = serialization.NoEncryption()
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    ).decode()


def public_key_bytes(key: Union[PrivateKey, x509.Certificate]) -> bytes:
    public = key.public_key()
    return public.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_matches_certificate(cert: x509.Certificate, key: PrivateKey) -> bool:
    return public_key_bytes(cert) == public_key_bytes(key)


def _general_names(sans: Sequence[str]) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = []
    for san in sans:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(san)))
        except ValueError:
            names.append(x509.DNSName(san))
    return names


class CertManager:
    """Generates keys and certificates for the CA engine and the leaf issuer.

    Args:
        ca_key_algorithm: Algorithm for CA key pairs.
        leaf_key_algorithm: Algorithm for leaf key pairs.
        rsa_key_size: RSA modulus for CA keys.
        leaf_rsa_key_size: RSA modulus for leaf keys.
    """

    def __init__(
        self,
        ca_key_algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
        leaf_key_algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
        rsa_key_size: int = 4096,
        leaf_rsa_key_size: int = 2048,
    ) -> None:
        self.ca_key_algorithm = ca_key_algorithm
        self.leaf_key_algorithm = leaf_key_algorithm
        self.rsa_key_size = rsa_key_size
        self.leaf_rsa_key_size = leaf_rsa_key_size

    @classmethod
    def from_settings(cls, settings) -> "CertManager":
        return cls(
            ca_key_algorithm=settings.ca_key_algorithm,
            leaf_key_algorithm=settings.leaf_key_algorithm,
            rsa_key_size=settings.rsa_key_size,
            leaf_rsa_key_size=settings.leaf_rsa_key_size,
        )

    # ------------------------------------------------------------------
    # Key pairs
    # ------------------------------------------------------------------

    def generate_key(self, algorithm: KeyAlgorithm, rsa_key_size: int) -> PrivateKey:
        try:
            if algorithm is KeyAlgorithm.EC:
                return ec.generate_private_key(ec.SECP256R1())
            return rsa.generate_private_key(public_exponent=65537, key_size=rsa_key_size)
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoGenerationError(f"Key pair generation failed: {exc}") from exc

    def generate_ca_key(self) -> PrivateKey:
        return self.generate_key(self.ca_key_algorithm, self.rsa_key_size)

    def generate_leaf_key(self) -> PrivateKey:
        return self.generate_key(self.leaf_key_algorithm, self.leaf_rsa_key_size)

    # ------------------------------------------------------------------
    # CA certificates
    # ------------------------------------------------------------------

    def self_signed_ca(
        self,
        key: PrivateKey,
        common_name: str,
        organization: str,
        not_before: datetime,
        validity_days: int,
    ) -> x509.Certificate:
        """Create a self-signed CA certificate for ``key``."""
        subject = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])
        return self._sign_ca(subject, key, not_before, validity_days)

    def renew_ca(
        self,
        current: x509.Certificate,
        key: PrivateKey,
        not_before: datetime,
        validity_days: int,
    ) -> x509.Certificate:
        """Reissue a CA certificate under the same key and subject.

        Leaf certificates signed by the previous certificate keep verifying
        against the new one, since subject and key are unchanged.

        Raises:
            CryptoGenerationError: If ``key`` does not belong to ``current``.
        """
        if not key_matches_certificate(current, key):
            raise CryptoGenerationError("CA key does not match the CA certificate")
        return self._sign_ca(current.subject, key, not_before, validity_days)

    def _sign_ca(
        self,
        subject: x509.Name,
        key: PrivateKey,
        not_before: datetime,
        validity_days: int,
    ) -> x509.Certificate:
        not_before = as_utc(not_before)
        try:
            return (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(not_before)
                .not_valid_after(not_before + timedelta(days=validity_days))
                .add_extension(
                    x509.BasicConstraints(ca=True, path_length=None),
                    critical=True,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        key_cert_sign=True,
                        crl_sign=True,
                        key_encipherment=False,
                        content_commitment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )
        except (ValueError, TypeError) as exc:
            raise CryptoGenerationError(f"CA certificate signing failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Leaf certificates
    # ------------------------------------------------------------------

    def build_csr(
        self,
        key: PrivateKey,
        common_name: str,
        organization: Optional[str] = None,
        sans: Sequence[str] = (),
    ) -> x509.CertificateSigningRequest:
        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
        if organization:
            attributes.insert(0, x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
        builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(attributes))
        if sans:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(_general_names(sans)),
                critical=False,
            )
        try:
            return builder.sign(key, hashes.SHA256())
        except (ValueError, TypeError) as exc:
            raise CryptoGenerationError(f"CSR signing failed: {exc}") from exc

    def sign_csr(
        self,
        csr: x509.CertificateSigningRequest,
        ca_cert: x509.Certificate,
        ca_key: PrivateKey,
        not_before: datetime,
        validity_days: int,
    ) -> x509.Certificate:
        """Sign a CSR with the CA, copying its subject and SANs."""
        if not csr.is_signature_valid:
            raise CryptoGenerationError("CSR signature is invalid")
        not_before = as_utc(not_before)
        public_key = csr.public_key()
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_before + timedelta(days=validity_days))
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    key_encipherment=isinstance(public_key, rsa.RSAPublicKey),
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([
                    ExtendedKeyUsageOID.SERVER_AUTH,
                    ExtendedKeyUsageOID.CLIENT_AUTH,
                ]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
        )
        try:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            builder = builder.add_extension(san.value, critical=san.critical)
        except x509.ExtensionNotFound:
            pass
        try:
            return builder.sign(ca_key, hashes.SHA256())
        except (ValueError, TypeError) as exc:
            raise CryptoGenerationError(f"Leaf certificate signing failed: {exc}") from exc

    # ------------------------------------------------------------------
    # PKCS#12 stores
    # ------------------------------------------------------------------

    @staticmethod
    def truststore(certificates: Sequence[str], password: str) -> bytes:
        """Build a PKCS#12 truststore holding ``certificates``."""
        cas = [load_certificate(pem) for pem in certificates]
        return pkcs12.serialize_key_and_certificates(
            name=None,
            key=None,
            cert=None,
            cas=cas,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
        )

    @staticmethod
    def keystore(
        name: str,
        key_pem: str,
        cert_pem: str,
        chain: Sequence[str],
        password: str,
    ) -> bytes:
        """Build a PKCS#12 keystore with a private key, its certificate and the CA chain."""
        return pkcs12.serialize_key_and_certificates(
            name=name.encode(),
            key=load_private_key(key_pem),
            cert=load_certificate(cert_pem),
            cas=[load_certificate(pem) for pem in chain] or None,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
        )


__all__ = [
    "PrivateKey",
    "as_utc",
    "CertManager",
    "load_certificate",
    "try_load_certificate",
    "load_private_key",
    "certificate_pem",
    "private_key_pem",
    "public_key_bytes",
    "key_matches_certificate",
]
