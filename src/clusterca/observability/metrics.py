# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""Prometheus metrics for CA reconciliation.

Provides ``CaMetrics``, a facade the CA engines record into after every
pass: what action ran, which errors were raised, and the generation
counters and expiry of each CA.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import start_http_server as _start_http_server

from clusterca.ca.models import CaMaterial


class CaMetrics:
    """Prometheus metrics for the CA engines.

    Metrics exposed:

    * ``ca_reconcile_total`` counter by CA and executed action
    * ``ca_reconcile_errors_total`` counter by CA and error class
    * ``ca_cert_generation`` / ``ca_key_generation`` gauges per CA
    * ``ca_cert_expiry_timestamp_seconds`` gauge per CA
    * ``ca_reconcile_duration_seconds`` histogram per CA

    Args:
        registry: Registry to register with. Defaults to the global one.
        prefix: Metric name prefix. Defaults to ``clusterca``.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        prefix: str = "clusterca",
    ) -> None:
        registry = registry if registry is not None else REGISTRY

        self.reconcile_total = Counter(
            f"{prefix}_ca_reconcile_total",
            "CA reconciliation passes by executed action",
            ["ca", "action"],
            registry=registry,
        )
        self.reconcile_errors_total = Counter(
            f"{prefix}_ca_reconcile_errors_total",
            "CA reconciliation passes that raised",
            ["ca", "error"],
            registry=registry,
        )
        self.cert_generation = Gauge(
            f"{prefix}_ca_cert_generation",
            "Current CA certificate generation",
            ["ca"],
            registry=registry,
        )
        self.key_generation = Gauge(
            f"{prefix}_ca_key_generation",
            "Current CA key generation",
            ["ca"],
            registry=registry,
        )
        self.cert_expiry = Gauge(
            f"{prefix}_ca_cert_expiry_timestamp_seconds",
            "Expiry of the current CA certificate as a Unix timestamp",
            ["ca"],
            registry=registry,
        )
        self.reconcile_duration_seconds = Histogram(
            f"{prefix}_ca_reconcile_duration_seconds",
            "Duration of a CA reconciliation pass in seconds",
            ["ca"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=registry,
        )

    # ------------------------------------------------------------------
    # Recording helpers
    # ------------------------------------------------------------------

    def record_reconcile(
        self,
        ca: str,
        action: str,
        duration_seconds: float,
        material: Optional[CaMaterial] = None,
    ) -> None:
        """Record a completed pass and, if given, the resulting material."""
        self.reconcile_total.labels(ca=ca, action=action).inc()
        self.reconcile_duration_seconds.labels(ca=ca).observe(duration_seconds)
        if material is not None:
            self.set_material(ca, material)

    def record_error(self, ca: str, error: str) -> None:
        self.reconcile_errors_total.labels(ca=ca, error=error).inc()

    def set_material(self, ca: str, material: CaMaterial) -> None:
        self.cert_generation.labels(ca=ca).set(material.cert_generation)
        self.key_generation.labels(ca=ca).set(material.key_generation)
        if material.expires_at is not None:
            self.cert_expiry.labels(ca=ca).set(material.expires_at.timestamp())

    # ------------------------------------------------------------------
    # HTTP server
    # ------------------------------------------------------------------

    @staticmethod
    def start_server(port: int = 9090, registry: Optional[CollectorRegistry] = None) -> None:
        """Start a Prometheus HTTP metrics server on *port*."""
        _start_http_server(port, registry=registry if registry is not None else REGISTRY)


__all__ = ["CaMetrics"]
