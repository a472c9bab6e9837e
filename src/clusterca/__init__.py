# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
clusterca - Certificate authority lifecycle for clustered services

Keeps a cluster CA and a clients CA valid: bootstraps them, renews or
replaces them ahead of expiry, publishes generation counters that dependents
compare to decide when to reload trust, and issues leaf certificates.

Version: 0.1.0
"""

__version__ = "0.1.0"

from .exceptions import (
    ClusterCaError,
    ConfigurationError,
    CryptoGenerationError,
    DriftDetected,
    StoreConflict,
    StoreError,
    StoreUnavailable,
)
from .config import CaConfig, CaSettings, ExpirationPolicy, KeyAlgorithm
from .reconciliation import Reconciliation, ReconciliationLogger

from .ca import (
    ActionType,
    CaAction,
    CaEngine,
    CaKind,
    CaMaterial,
    CaReconciler,
    CaReconcileResult,
    CaReconciliationResult,
    CertManager,
    ChangeReport,
    LeafCertificate,
    LeafCertificateIssuer,
    PasswordGenerator,
    evaluate,
)
from .storage import (
    AbstractSecretStore,
    CaStoreAdapter,
    MemorySecretStore,
    RedisSecretStore,
    SecretRecord,
    StorageConfig,
)
from .observability import CaMetrics

__all__ = [
    "__version__",
    # Exceptions
    "ClusterCaError",
    "ConfigurationError",
    "CryptoGenerationError",
    "DriftDetected",
    "StoreConflict",
    "StoreError",
    "StoreUnavailable",
    # Configuration
    "CaConfig",
    "CaSettings",
    "ExpirationPolicy",
    "KeyAlgorithm",
    "Reconciliation",
    "ReconciliationLogger",
    # CA lifecycle
    "ActionType",
    "CaAction",
    "CaEngine",
    "CaKind",
    "CaMaterial",
    "CaReconciler",
    "CaReconcileResult",
    "CaReconciliationResult",
    "CertManager",
    "ChangeReport",
    "LeafCertificate",
    "LeafCertificateIssuer",
    "PasswordGenerator",
    "evaluate",
    # Storage
    "AbstractSecretStore",
    "CaStoreAdapter",
    "MemorySecretStore",
    "RedisSecretStore",
    "SecretRecord",
    "StorageConfig",
    # Observability
    "CaMetrics",
]
