# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Certificate authority lifecycle.

The expiration policy, the per-CA engine, the leaf certificate issuer and
the reconciler composing the cluster and clients CAs.
"""

from .models import (
    ActionType,
    CaAction,
    CaKind,
    CaMaterial,
    ChangeReport,
    LeafCertificate,
    SupersededCertificate,
)
from .annotations import (
    format_generation,
    has_ca_cert_generation_changed,
    parse_generation,
)
from .crypto import CertManager
from .passwords import PasswordGenerator
from .policy import evaluate
from .engine import CaEngine, CaReconcileResult
from .issuer import LeafCertificateIssuer
from .reconciler import CaReconciler, CaReconciliationResult

__all__ = [
    "ActionType",
    "CaAction",
    "CaKind",
    "CaMaterial",
    "ChangeReport",
    "LeafCertificate",
    "SupersededCertificate",
    "format_generation",
    "has_ca_cert_generation_changed",
    "parse_generation",
    "CertManager",
    "PasswordGenerator",
    "evaluate",
    "CaEngine",
    "CaReconcileResult",
    "LeafCertificateIssuer",
    "CaReconciler",
    "CaReconciliationResult",
]
