# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
CA configuration.

Per-pass policy (``CaConfig``) read from the cluster resource, plus
operator-wide settings (``CaSettings``) shared by every engine instance.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from clusterca.exceptions import ConfigurationError

DEFAULT_VALIDITY_DAYS = 365
DEFAULT_RENEWAL_DAYS = 30


class ExpirationPolicy(str, Enum):
    """What to do when a CA certificate enters its renewal window."""

    RENEW_CERTIFICATE = "renew-certificate"
    REPLACE_KEY = "replace-key"


class KeyAlgorithm(str, Enum):
    """Key pair algorithm used for newly generated keys."""

    RSA = "rsa"
    EC = "ec"


class CaConfig(BaseModel):
    """Immutable CA policy for a single reconciliation pass.

    Attributes:
        validity_days: Lifetime of a newly issued CA certificate.
        renewal_days: Days before expiry at which renewal kicks in.
        generate_ca_if_absent: False when the CA is supplied by the user.
        expiration_policy: Renew the certificate or replace the key on expiry.
        force_renewal: Set from the force-renew annotation.
        force_replace: Set from the force-replace annotation.
        maintenance_window_open: When False, time-based renewal is deferred
            until the certificate has actually expired.
    """

    model_config = ConfigDict(frozen=True)

    validity_days: int = Field(default=DEFAULT_VALIDITY_DAYS, ge=1)
    renewal_days: int = Field(default=DEFAULT_RENEWAL_DAYS, ge=0)
    generate_ca_if_absent: bool = True
    expiration_policy: ExpirationPolicy = ExpirationPolicy.RENEW_CERTIFICATE
    force_renewal: bool = False
    force_replace: bool = False
    maintenance_window_open: bool = True

    @model_validator(mode="after")
    def _renewal_within_validity(self) -> "CaConfig":
        if self.renewal_days > self.validity_days:
            raise ValueError(
                f"renewal_days ({self.renewal_days}) must not exceed "
                f"validity_days ({self.validity_days})"
            )
        return self

    @classmethod
    def from_resource(
        cls,
        ca_spec: Optional[dict[str, Any]],
        *,
        force_renewal: bool = False,
        force_replace: bool = False,
        maintenance_window_open: bool = True,
    ) -> "CaConfig":
        """Build the pass configuration from a resource's CA block.

        Args:
            ca_spec: The ``clusterCa`` / ``clientsCa`` block of the cluster
                resource, or None when the user left it out.
            force_renewal: Whether the force-renew annotation is present.
            force_replace: Whether the force-replace annotation is present.
            maintenance_window_open: Whether a maintenance window is open now.

        Raises:
            ConfigurationError: If the block holds invalid values.
        """
        ca_spec = ca_spec or {}
        try:
            return cls(
                validity_days=ca_spec.get("validityDays", DEFAULT_VALIDITY_DAYS),
                renewal_days=ca_spec.get("renewalDays", DEFAULT_RENEWAL_DAYS),
                generate_ca_if_absent=ca_spec.get("generateCertificateAuthority", True),
                expiration_policy=ca_spec.get(
                    "certificateExpirationPolicy", ExpirationPolicy.RENEW_CERTIFICATE
                ),
                force_renewal=force_renewal,
                force_replace=force_replace,
                maintenance_window_open=maintenance_window_open,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid CA configuration: {exc}") from exc


class CaSettings(BaseModel):
    """Operator-wide settings shared by the CA engines.

    Attributes:
        operation_timeout_seconds: Upper bound for every store call.
        trust_grace_period_days: How long a superseded CA certificate stays in
            the trust bundle after its key was replaced.
        ca_key_algorithm: Algorithm for CA key pairs.
        leaf_key_algorithm: Algorithm for leaf key pairs.
        rsa_key_size: RSA modulus size for CA keys.
        leaf_rsa_key_size: RSA modulus size for leaf keys.
        leaf_validity_days: Lifetime of leaf certificates the operator issues
            for itself.
        organization: Organization name placed in CA subjects.
        worker_threads: Size of the crypto worker pool.
    """

    operation_timeout_seconds: float = Field(default=300.0, gt=0)
    trust_grace_period_days: int = Field(default=30, ge=0)
    ca_key_algorithm: KeyAlgorithm = KeyAlgorithm.RSA
    leaf_key_algorithm: KeyAlgorithm = KeyAlgorithm.RSA
    rsa_key_size: int = Field(default=4096, ge=2048)
    leaf_rsa_key_size: int = Field(default=2048, ge=2048)
    leaf_validity_days: int = Field(default=DEFAULT_VALIDITY_DAYS, ge=1)
    organization: str = Field(default="io.clusterca", min_length=1)
    worker_threads: int = Field(default=2, ge=1, le=32)


__all__ = [
    "DEFAULT_VALIDITY_DAYS",
    "DEFAULT_RENEWAL_DAYS",
    "ExpirationPolicy",
    "KeyAlgorithm",
    "CaConfig",
    "CaSettings",
]
