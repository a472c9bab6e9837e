# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
CA Reconciler

Drives both CAs of one cluster through a reconciliation pass:

1. build each CA's pass configuration from the cluster resource and the
   force annotations found on its stored records
2. reconcile the cluster CA and the clients CA concurrently
3. clear the force annotations that were honored
4. keep the operator's own client certificate signed by the current cluster CA
5. report why dependents must be restarted

Removing superseded cluster CA certificates once every dependent has rolled
is a separate step, driven by the caller after the restart completed.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping, NamedTuple, Optional

from clusterca.ca.annotations import dependent_cert_generation_annotation, parse_generation
from clusterca.ca.crypto import CertManager, as_utc
from clusterca.ca.engine import CaEngine, CaReconcileResult
from clusterca.ca.issuer import LeafCertificateIssuer
from clusterca.ca.models import CaKind, LeafCertificate
from clusterca.ca.passwords import PasswordGenerator
from clusterca.config import CaConfig, CaSettings
from clusterca.exceptions import ClusterCaError
from clusterca.reconciliation import Reconciliation, ReconciliationLogger

if TYPE_CHECKING:
    from clusterca.observability.metrics import CaMetrics
    from clusterca.storage.ca_store import CaStoreAdapter

logger = logging.getLogger(__name__)

RESTART_REASON_CLUSTER_CA_KEY = "trust new cluster CA certificate signed by new key"
RESTART_REASON_CLIENTS_CA_KEY = "trust new clients CA certificate signed by new key"


class CaReconciliationResult(NamedTuple):
    """Outcome of a pass over both CAs.

    Attributes:
        cluster_ca: Material and report of the cluster CA.
        clients_ca: Material and report of the clients CA.
        restart_reasons: Why dependents need a rolling restart; empty when
            no CA key was replaced.
        operator_certificate: The operator's client certificate, or None when
            the cluster CA has no private key to sign with.
    """

    cluster_ca: CaReconcileResult
    clients_ca: CaReconcileResult
    restart_reasons: list[str]
    operator_certificate: Optional[LeafCertificate]


class CaReconciler:
    """Reconciles the cluster CA and the clients CA of one cluster.

    Args:
        cluster_name: Name of the cluster resource; store keys derive from it.
        namespace: Namespace of the cluster resource.
        store: Adapter persisting CA material.
        settings: Operator-wide settings.
        cert_manager: X.509 primitives; built from ``settings`` when None.
        password_generator: Source of key and truststore passwords.
        metrics: Optional Prometheus metrics shared by both engines.
    """

    def __init__(
        self,
        cluster_name: str,
        namespace: str,
        store: CaStoreAdapter,
        settings: Optional[CaSettings] = None,
        cert_manager: Optional[CertManager] = None,
        password_generator: Optional[PasswordGenerator] = None,
        metrics: Optional[CaMetrics] = None,
    ) -> None:
        self.cluster_name = cluster_name
        self.namespace = namespace
        self.store = store
        self.settings = settings or CaSettings()
        self.cert_manager = cert_manager or CertManager.from_settings(self.settings)
        self.passwords = password_generator or PasswordGenerator()
        self.metrics = metrics
        self.issuer = LeafCertificateIssuer(self.cert_manager, self.settings.organization)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.worker_threads,
            thread_name_prefix=f"{cluster_name}-ca",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def store_key(self, kind: CaKind) -> str:
        """Store key of a CA, e.g. ``my-cluster-cluster-ca``."""
        return f"{self.cluster_name}-{kind.value}"

    @property
    def operator_identity(self) -> str:
        return f"{self.cluster_name}-cluster-operator"

    def _engine(self, kind: CaKind, reconciliation: Reconciliation) -> CaEngine:
        return CaEngine(
            kind,
            self.store,
            settings=self.settings,
            cert_manager=self.cert_manager,
            password_generator=self.passwords,
            executor=self._executor,
            metrics=self.metrics,
            reconciliation=reconciliation,
        )

    async def _config(
        self,
        kind: CaKind,
        ca_spec: Optional[dict[str, Any]],
        maintenance_window_open: bool,
    ) -> CaConfig:
        material = await self.store.load(
            self.store_key(kind), timeout=self.settings.operation_timeout_seconds
        )
        return CaConfig.from_resource(
            ca_spec,
            force_renewal=bool(material and material.force_renew_requested),
            force_replace=bool(material and material.force_replace_requested),
            maintenance_window_open=maintenance_window_open,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        now: datetime,
        cluster_ca_spec: Optional[dict[str, Any]] = None,
        clients_ca_spec: Optional[dict[str, Any]] = None,
        maintenance_window_open: bool = True,
        operator_certificate: Optional[LeafCertificate] = None,
        trigger: str = "timer",
    ) -> CaReconciliationResult:
        """Run one pass over both CAs.

        Args:
            now: Reference time for the pass.
            cluster_ca_spec: ``clusterCa`` block of the cluster resource.
            clients_ca_spec: ``clientsCa`` block of the cluster resource.
            maintenance_window_open: Whether time-based renewals may run now.
            operator_certificate: The operator's current client certificate.
            trigger: What started the pass, for log markers.

        Raises:
            ClusterCaError: The first error raised by either CA. Force
                annotations honored by the other CA are still cleared.
        """
        now = as_utc(now)
        reconciliation = Reconciliation(trigger, "Cluster", self.namespace, self.cluster_name)
        log = ReconciliationLogger(logger, reconciliation)

        cluster_config, clients_config = await asyncio.gather(
            self._config(CaKind.CLUSTER, cluster_ca_spec, maintenance_window_open),
            self._config(CaKind.CLIENTS, clients_ca_spec, maintenance_window_open),
        )
        results = await asyncio.gather(
            self._engine(CaKind.CLUSTER, reconciliation).reconcile(
                self.store_key(CaKind.CLUSTER), cluster_config, now
            ),
            self._engine(CaKind.CLIENTS, reconciliation).reconcile(
                self.store_key(CaKind.CLIENTS), clients_config, now
            ),
            return_exceptions=True,
        )

        failed = any(isinstance(result, BaseException) for result in results)
        for kind, result in zip((CaKind.CLUSTER, CaKind.CLIENTS), results):
            if isinstance(result, BaseException):
                continue
            report = result.report
            if not (report.force_renew_consumed or report.force_replace_consumed):
                continue
            try:
                await self.store.clear_force_annotations(
                    self.store_key(kind),
                    renew=report.force_renew_consumed,
                    replace=report.force_replace_consumed,
                    timeout=self.settings.operation_timeout_seconds,
                )
            except ClusterCaError as exc:
                if not failed:
                    raise
                # The other CA's error is the one reported.
                log.error("Failed to clear force annotations on %s: %s", self.store_key(kind), exc)
        for kind, result in zip((CaKind.CLUSTER, CaKind.CLIENTS), results):
            if isinstance(result, BaseException):
                log.error("Failed to reconcile %s: %s", self.store_key(kind), result)
                raise result

        cluster_result, clients_result = results
        reasons = []
        if cluster_result.report.key_changed:
            reasons.append(RESTART_REASON_CLUSTER_CA_KEY)
        if clients_result.report.key_changed:
            reasons.append(RESTART_REASON_CLIENTS_CA_KEY)
        if reasons:
            log.info("Rolling restart required: %s", ", ".join(reasons))

        operator_certificate = await self._operator_certificate(
            cluster_result, cluster_config, operator_certificate, now
        )
        return CaReconciliationResult(cluster_result, clients_result, reasons, operator_certificate)

    async def _operator_certificate(
        self,
        cluster_ca: CaReconcileResult,
        cluster_config: CaConfig,
        existing: Optional[LeafCertificate],
        now: datetime,
    ) -> Optional[LeafCertificate]:
        if not cluster_ca.material.has_private_key:
            return existing
        validity_days = self.settings.leaf_validity_days
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            lambda: self.issuer.reissue_if_needed(
                self.operator_identity,
                existing,
                cluster_ca.material,
                validity_days,
                min(cluster_config.renewal_days, validity_days),
                now,
            ),
        )

    # ------------------------------------------------------------------
    # Trust bundle cleanup
    # ------------------------------------------------------------------

    async def maybe_remove_old_cluster_ca_certificates(
        self,
        dependent_annotations: Iterable[Mapping[str, str]],
        now: datetime,
        cluster_ca_spec: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Drop superseded cluster CA certificates once every dependent rolled.

        Args:
            dependent_annotations: Annotations of every running dependent.
                A dependent without the cluster CA cert generation annotation
                counts as up to date.
            now: Reference time.
            cluster_ca_spec: ``clusterCa`` block; externally managed CAs are
                never written.

        Returns:
            True if certificates were removed.
        """
        store_key = self.store_key(CaKind.CLUSTER)
        material = await self.store.load(store_key, timeout=self.settings.operation_timeout_seconds)
        if material is None:
            return False

        annotation = dependent_cert_generation_annotation(CaKind.CLUSTER)
        generations = [
            parse_generation(annotations.get(annotation), default=material.cert_generation)
            for annotations in dependent_annotations
        ]
        managed = CaConfig.from_resource(cluster_ca_spec).generate_ca_if_absent
        engine = self._engine(
            CaKind.CLUSTER,
            Reconciliation("cleanup", "Cluster", self.namespace, self.cluster_name),
        )
        return await engine.remove_superseded_certificates(store_key, generations, now, managed=managed)


__all__ = [
    "CaReconciler",
    "CaReconciliationResult",
    "RESTART_REASON_CLUSTER_CA_KEY",
    "RESTART_REASON_CLIENTS_CA_KEY",
]
