# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for clusterca.

All clusterca exceptions inherit from ClusterCaError. Each class carries a
``retryable`` flag so the reconciliation scheduler can decide whether to
re-run the whole pass (conflicts, unavailable store) or report the problem
upward (configuration, crypto, drift).
"""


class ClusterCaError(Exception):
    """Base exception for all clusterca errors."""

    retryable: bool = False


class ConfigurationError(ClusterCaError):
    """Invalid CA configuration (validity/renewal window, unknown policy)."""


class StoreError(ClusterCaError):
    """Errors related to the secret store backing CA material."""


class StoreConflict(StoreError):
    """A conditional write lost against a concurrent writer.

    The caller re-runs the full reconciliation pass.
    """

    retryable = True


class StoreUnavailable(StoreError):
    """The store timed out or could not be reached."""

    retryable = True


class CryptoGenerationError(ClusterCaError):
    """Key or certificate generation failed; the material is left unchanged."""


class DriftDetected(ClusterCaError):
    """CA material does not match what the configuration expects.

    Raised for externally managed CAs that are missing or structurally
    invalid, and when a signing key is required but was never supplied.
    Never auto-corrected.
    """


__all__ = [
    "ClusterCaError",
    "ConfigurationError",
    "StoreError",
    "StoreConflict",
    "StoreUnavailable",
    "CryptoGenerationError",
    "DriftDetected",
]
