# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
CA data model.

CA material as persisted, the action chosen by the expiration policy, the
change report handed to dependents, and issued leaf certificates.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CaKind(str, Enum):
    """Which of the two cluster CAs an engine instance manages."""

    CLUSTER = "cluster-ca"
    CLIENTS = "clients-ca"


class SupersededCertificate(BaseModel):
    """A previous CA certificate kept in the trust bundle after a key replacement.

    Attributes:
        certificate: PEM-encoded certificate.
        cert_generation: Cert generation the certificate was current at.
        superseded_at: When the replacement happened.
        retain_until: When the certificate drops out of the trust bundle.
    """

    certificate: str
    cert_generation: int = Field(ge=0)
    superseded_at: datetime
    retain_until: datetime


class CaMaterial(BaseModel):
    """Root CA material: certificate, private key and generation counters.

    ``created_at`` and ``expires_at`` mirror the current certificate's
    validity window; both are None when the certificate cannot be parsed.
    ``cert_version`` / ``key_version`` are the store versions observed at
    load time and act as the precondition for the next write.
    """

    certificate: str
    private_key: Optional[str] = None
    key_password: Optional[str] = None
    cert_generation: int = Field(default=0, ge=0)
    key_generation: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    superseded: list[SupersededCertificate] = Field(default_factory=list)
    truststore_password: Optional[str] = None

    cert_version: Optional[str] = None
    key_version: Optional[str] = None
    force_renew_requested: bool = False
    force_replace_requested: bool = False

    @property
    def has_private_key(self) -> bool:
        return bool(self.private_key)

    def trusted_certificates(self, now: datetime) -> list[str]:
        """Current certificate followed by superseded ones still in their grace period."""
        return [self.certificate] + [
            old.certificate for old in self.superseded if old.retain_until > now
        ]

    def expired_superseded(self, now: datetime) -> list[SupersededCertificate]:
        return [old for old in self.superseded if old.retain_until <= now]


class ActionType(str, Enum):
    NOOP = "noop"
    RENEW = "renew"
    REPLACE = "replace"
    FAIL = "fail"


class CaAction(BaseModel):
    """Outcome of the expiration policy for one CA."""

    type: ActionType
    reason: str = ""

    @classmethod
    def noop(cls, reason: str = "") -> "CaAction":
        return cls(type=ActionType.NOOP, reason=reason)

    @classmethod
    def renew(cls, reason: str) -> "CaAction":
        return cls(type=ActionType.RENEW, reason=reason)

    @classmethod
    def replace(cls, reason: str) -> "CaAction":
        return cls(type=ActionType.REPLACE, reason=reason)

    @classmethod
    def fail(cls, reason: str) -> "CaAction":
        return cls(type=ActionType.FAIL, reason=reason)

    def __str__(self) -> str:
        return f"{self.type.value}({self.reason})" if self.reason else self.type.value


class ChangeReport(BaseModel):
    """What a reconciliation pass changed, for dependents to act on.

    Attributes:
        action: The action that was executed.
        cert_changed: The CA certificate changed; dependent leaf certificates
            must be reissued.
        key_changed: An existing CA key was replaced; consumers must trust
            the new certificate, which needs a rolling restart. False on
            bootstrap.
        cert_generation: Cert generation after the pass.
        key_generation: Key generation after the pass.
        force_renew_consumed: The force-renew request was honored and the
            caller should clear the annotation.
        force_replace_consumed: Same for force-replace.
        trust_bundle_changed: Superseded certificates were added or pruned.
    """

    action: CaAction
    cert_changed: bool = False
    key_changed: bool = False
    cert_generation: int = 0
    key_generation: int = 0
    force_renew_consumed: bool = False
    force_replace_consumed: bool = False
    trust_bundle_changed: bool = False

    @property
    def requires_rolling_restart(self) -> bool:
        return self.key_changed


class LeafCertificate(BaseModel):
    """An end-entity certificate issued by a CA for one identity."""

    subject: str
    certificate: str
    private_key: str
    signed_by_cert_generation: int = Field(ge=0)
    signed_by_key_generation: int = Field(default=0, ge=0)
    expires_at: datetime
    sans: list[str] = Field(default_factory=list)


__all__ = [
    "CaKind",
    "SupersededCertificate",
    "CaMaterial",
    "ActionType",
    "CaAction",
    "ChangeReport",
    "LeafCertificate",
]
