# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
CA Engine

Runs the lifecycle of one CA per reconciliation pass: load the persisted
material, ask the expiration policy what to do, generate new material on a
worker pool, commit it through the store adapter and report what changed.

Side effects are strictly ordered. New generations exist only in memory
until the store commit succeeds; a failure at any earlier point leaves the
persisted material, and therefore every externally visible counter, as it
was.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterable, NamedTuple, Optional

from clusterca.ca.crypto import (
    CertManager,
    as_utc,
    certificate_pem,
    load_certificate,
    load_private_key,
    private_key_pem,
    try_load_certificate,
)
from clusterca.ca.models import (
    ActionType,
    CaAction,
    CaKind,
    CaMaterial,
    ChangeReport,
    SupersededCertificate,
)
from clusterca.ca.passwords import PasswordGenerator
from clusterca.ca.policy import evaluate, find_problem
from clusterca.config import CaConfig, CaSettings
from clusterca.exceptions import ClusterCaError, CryptoGenerationError, DriftDetected
from clusterca.reconciliation import Reconciliation, ReconciliationLogger

if TYPE_CHECKING:
    from clusterca.observability.metrics import CaMetrics
    from clusterca.storage.ca_store import CaStoreAdapter

logger = logging.getLogger(__name__)


class CaReconcileResult(NamedTuple):
    """Material after the pass and the report of what changed."""

    material: CaMaterial
    report: ChangeReport


class CaEngine:
    """Lifecycle engine for a single CA.

    One instance manages the cluster CA and another, identically built,
    manages the clients CA; they differ only in ``kind``.

    Args:
        kind: Which CA this engine manages.
        store: Adapter persisting the CA material.
        settings: Operator-wide settings.
        cert_manager: X.509 primitives; built from ``settings`` when None.
        password_generator: Source of key and truststore passwords.
        executor: Worker pool for key and certificate generation. When None
            the engine owns a thread pool sized by ``settings.worker_threads``.
        metrics: Optional Prometheus metrics.
        reconciliation: Marker prefixed to log lines.
    """

    def __init__(
        self,
        kind: CaKind,
        store: CaStoreAdapter,
        settings: Optional[CaSettings] = None,
        cert_manager: Optional[CertManager] = None,
        password_generator: Optional[PasswordGenerator] = None,
        executor: Optional[Executor] = None,
        metrics: Optional[CaMetrics] = None,
        reconciliation: Optional[Reconciliation] = None,
    ) -> None:
        self.kind = kind
        self.store = store
        self.settings = settings or CaSettings()
        self.cert_manager = cert_manager or CertManager.from_settings(self.settings)
        self.passwords = password_generator or PasswordGenerator()
        self.metrics = metrics
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.worker_threads,
            thread_name_prefix=f"{kind.value}-crypto",
        )
        self._log = ReconciliationLogger(logger, reconciliation, kind.value)

    @property
    def name(self) -> str:
        return self.kind.value

    def close(self) -> None:
        """Shut down the worker pool if this engine created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        store_key: str,
        config: CaConfig,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> CaReconcileResult:
        """Bring the CA stored under ``store_key`` in line with ``config`` at ``now``.

        Args:
            store_key: Name of the CA in the store.
            config: Policy for this pass.
            now: Reference time for every expiry decision.
            timeout: Bound for each store call; defaults to
                ``settings.operation_timeout_seconds``.

        Returns:
            The material after the pass and a ChangeReport.

        Raises:
            DriftDetected: The CA is externally managed and missing or invalid,
                or a rotation was requested for an externally managed CA.
            CryptoGenerationError: Generation failed; nothing was written.
            StoreConflict: Another writer got there first; re-run the pass.
            StoreUnavailable: The store timed out or failed; re-run the pass.
        """
        now = as_utc(now)
        if timeout is None:
            timeout = self.settings.operation_timeout_seconds
        started = time.monotonic()
        try:
            result = await self._reconcile(store_key, config, now, timeout)
        except ClusterCaError as exc:
            if self.metrics is not None:
                self.metrics.record_error(self.name, type(exc).__name__)
            raise
        if self.metrics is not None:
            self.metrics.record_reconcile(
                self.name,
                result.report.action.type.value,
                time.monotonic() - started,
                result.material,
            )
        return result

    async def _reconcile(
        self,
        store_key: str,
        config: CaConfig,
        now: datetime,
        timeout: float,
    ) -> CaReconcileResult:
        material = await self.store.load(store_key, timeout=timeout)
        action = evaluate(material, config, now)
        self._log.debug("Policy decision for %s: %s", store_key, action)

        if action.type is ActionType.FAIL:
            self._log.warning("Cannot reconcile %s: %s", store_key, action.reason)
            raise DriftDetected(f"{self.name}: {action.reason}")

        if not config.generate_ca_if_absent and action.type is not ActionType.NOOP:
            self._log.warning("Ignoring %s for externally managed CA %s", action, store_key)
            raise DriftDetected(
                f"{self.name}: {action.reason}, but the CA is externally managed "
                "and must be rotated by its owner"
            )

        if action.type is ActionType.NOOP:
            return await self._no_change(store_key, material, config, action, now, timeout)

        if action.type is ActionType.RENEW:
            problem = find_problem(material, require_key=True)
            if problem:
                action = CaAction.replace(f"{action.reason}; renewal impossible: {problem}")

        if action.type is ActionType.RENEW:
            self._log.info("Renewing CA certificate %s: %s", store_key, action.reason)
            updated = await self._generate(self._renew, material, config, now)
        else:
            self._log.info("Replacing CA key and certificate %s: %s", store_key, action.reason)
            previous_key_generation = 0
            if material is None:
                previous_key_generation = await self.store.orphan_key_generation(store_key, timeout=timeout)
                if previous_key_generation:
                    self._log.warning(
                        "Bootstrapping %s over a key record at key generation %d",
                        store_key,
                        previous_key_generation,
                    )
            updated = await self._generate(
                functools.partial(self._replace, previous_key_generation=previous_key_generation),
                material,
                config,
                now,
            )

        saved = await self.store.save(store_key, updated, timeout=timeout)
        replaced = action.type is ActionType.REPLACE
        # Bootstrap creates a key but replaces none; nobody trusts an older one yet.
        key_changed = replaced and material is not None
        report = ChangeReport(
            action=action,
            cert_changed=True,
            key_changed=key_changed,
            cert_generation=saved.cert_generation,
            key_generation=saved.key_generation,
            force_renew_consumed=config.force_renewal,
            force_replace_consumed=config.force_replace and replaced,
            trust_bundle_changed=key_changed or bool(material and material.expired_superseded(now)),
        )
        self._log.info(
            "CA %s now at cert generation %d, key generation %d",
            store_key,
            saved.cert_generation,
            saved.key_generation,
        )
        return CaReconcileResult(saved, report)

    async def _no_change(
        self,
        store_key: str,
        material: CaMaterial,
        config: CaConfig,
        action: CaAction,
        now: datetime,
        timeout: float,
    ) -> CaReconcileResult:
        expired = material.expired_superseded(now)
        if expired and config.generate_ca_if_absent:
            self._log.info(
                "Removing %d superseded CA certificate(s) past their grace period from %s",
                len(expired),
                store_key,
            )
            material = await self.store.save(
                store_key,
                material.model_copy(update={
                    "superseded": [old for old in material.superseded if old not in expired],
                }),
                timeout=timeout,
            )
        report = ChangeReport(
            action=action,
            cert_generation=material.cert_generation,
            key_generation=material.key_generation,
            trust_bundle_changed=bool(expired) and config.generate_ca_if_absent,
        )
        return CaReconcileResult(material, report)

    async def _generate(
        self,
        fn: Callable[[Optional[CaMaterial], CaConfig, datetime], CaMaterial],
        material: Optional[CaMaterial],
        config: CaConfig,
        now: datetime,
    ) -> CaMaterial:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, material, config, now)

    # ------------------------------------------------------------------
    # Generation (runs on the worker pool)
    # ------------------------------------------------------------------

    def _renew(self, material: CaMaterial, config: CaConfig, now: datetime) -> CaMaterial:
        try:
            current = load_certificate(material.certificate)
            key = load_private_key(material.private_key, material.key_password)
        except (ValueError, TypeError) as exc:
            raise CryptoGenerationError(f"{self.name}: cannot load CA material for renewal: {exc}") from exc

        renewed = self.cert_manager.renew_ca(current, key, now, config.validity_days)
        return material.model_copy(update={
            "certificate": certificate_pem(renewed),
            "cert_generation": material.cert_generation + 1,
            "created_at": renewed.not_valid_before_utc,
            "expires_at": renewed.not_valid_after_utc,
            "superseded": [old for old in material.superseded if old.retain_until > now],
            "truststore_password": self.passwords.generate_password(
                previous=material.truststore_password
            ),
        })

    def _replace(
        self,
        material: Optional[CaMaterial],
        config: CaConfig,
        now: datetime,
        previous_key_generation: int = 0,
    ) -> CaMaterial:
        cert_generation = (material.cert_generation if material else 0) + 1
        key_generation = (material.key_generation if material else previous_key_generation) + 1

        key = self.cert_manager.generate_ca_key()
        cert = self.cert_manager.self_signed_ca(
            key,
            common_name=f"{self.name} v{key_generation}",
            organization=self.settings.organization,
            not_before=now,
            validity_days=config.validity_days,
        )
        key_password = self.passwords.generate_password(
            previous=material.key_password if material else None
        )

        superseded = []
        if material is not None:
            superseded = [old for old in material.superseded if old.retain_until > now]
            previous = try_load_certificate(material.certificate)
            if previous is not None:
                retain_until = min(
                    now + timedelta(days=self.settings.trust_grace_period_days),
                    previous.not_valid_after_utc,
                )
                if retain_until > now:
                    superseded.insert(0, SupersededCertificate(
                        certificate=material.certificate,
                        cert_generation=material.cert_generation,
                        superseded_at=now,
                        retain_until=retain_until,
                    ))

        return CaMaterial(
            certificate=certificate_pem(cert),
            private_key=private_key_pem(key, key_password),
            key_password=key_password,
            cert_generation=cert_generation,
            key_generation=key_generation,
            created_at=cert.not_valid_before_utc,
            expires_at=cert.not_valid_after_utc,
            superseded=superseded,
            truststore_password=self.passwords.generate_password(
                previous=material.truststore_password if material else None
            ),
            cert_version=material.cert_version if material else None,
            key_version=material.key_version if material else None,
            force_renew_requested=material.force_renew_requested if material else False,
            force_replace_requested=material.force_replace_requested if material else False,
        )

    # ------------------------------------------------------------------
    # Trust bundle
    # ------------------------------------------------------------------

    async def remove_superseded_certificates(
        self,
        store_key: str,
        dependent_generations: Iterable[int],
        now: datetime,
        managed: bool = True,
        timeout: Optional[float] = None,
    ) -> bool:
        """Drop superseded certificates once every dependent has rotated.

        Args:
            store_key: Name of the CA in the store.
            dependent_generations: The CA cert generation each dependent
                (pod, deployment) currently runs with.
            now: Reference time.
            managed: False for an externally managed CA, which is never written.
            timeout: Bound for each store call.

        Returns:
            True if certificates were removed and the change committed.
        """
        if timeout is None:
            timeout = self.settings.operation_timeout_seconds
        generations = list(dependent_generations)
        if not managed:
            return False
        if not generations:
            self._log.debug("No dependents yet, keeping superseded certificates of %s", store_key)
            return False

        material = await self.store.load(store_key, timeout=timeout)
        if material is None or not material.superseded:
            return False

        for generation in generations:
            if generation != material.cert_generation:
                self._log.debug(
                    "Dependent still on cert generation %d (current %d), keeping superseded certificates",
                    generation,
                    material.cert_generation,
                )
                return False

        await self.store.save(store_key, material.model_copy(update={"superseded": []}), timeout=timeout)
        self._log.info(
            "Removed %d superseded CA certificate(s) from %s",
            len(material.superseded),
            store_key,
        )
        return True

    def truststore(self, material: CaMaterial, now: datetime) -> tuple[bytes, str]:
        """Return a PKCS#12 truststore of the trust bundle and its password."""
        password = material.truststore_password or self.passwords.generate_password()
        return self.cert_manager.truststore(material.trusted_certificates(as_utc(now)), password), password


__all__ = ["CaEngine", "CaReconcileResult"]
