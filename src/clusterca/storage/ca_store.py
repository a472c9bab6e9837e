# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
CA Store Adapter.

Maps one logical CaMaterial onto two store records:

* ``<store_key>-cert``: the public side. ``ca.crt`` (current certificate),
  ``ca-<generation>.crt`` (superseded certificates still trusted),
  ``ca.p12`` / ``ca.password`` (PKCS#12 truststore) and the
  ``ca-cert-generation`` annotation.
* ``<store_key>``: the private side. ``ca.key`` / ``ca.key.password`` and
  the ``ca-key-generation`` annotation.

Both records are committed together and conditioned on the versions observed
at load time. The commit is the point at which new generations become
visible to anyone else.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from datetime import datetime
from typing import Awaitable, Optional, TypeVar

from clusterca.ca.annotations import (
    ANNO_CA_CERT_GENERATION,
    ANNO_CA_KEY_GENERATION,
    ANNO_FORCE_RENEW,
    ANNO_FORCE_REPLACE,
    ANNO_SUPERSEDED_CERTS,
    format_generation,
    is_flag_set,
    parse_generation,
)
from clusterca.ca.crypto import CertManager, try_load_certificate
from clusterca.ca.models import CaMaterial, SupersededCertificate
from clusterca.exceptions import DriftDetected, StoreConflict, StoreUnavailable
from .provider import AbstractSecretStore, SecretRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

CA_CRT = "ca.crt"
CA_P12 = "ca.p12"
CA_PASSWORD = "ca.password"
CA_KEY = "ca.key"
CA_KEY_PASSWORD = "ca.key.password"

_SUPERSEDED_ENTRY = re.compile(r"ca-(0|[1-9][0-9]*)\.crt")


def cert_record_name(store_key: str) -> str:
    return f"{store_key}-cert"


def key_record_name(store_key: str) -> str:
    return store_key


def superseded_entry_name(cert_generation: int) -> str:
    return f"ca-{format_generation(cert_generation)}.crt"


class CaStoreAdapter:
    """Loads and saves CA material through a secret store.

    Args:
        store: Backend holding the records.
        timeout_seconds: Default bound for each store call. Callers may pass
            their own ``timeout`` per call.
        labels: Labels stamped on both records.
    """

    def __init__(
        self,
        store: AbstractSecretStore,
        timeout_seconds: float = 300.0,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got: {timeout_seconds}")
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.labels = dict(labels or {})

    async def _call(self, awaitable: Awaitable[T], what: str, timeout: Optional[float]) -> T:
        if timeout is None:
            timeout = self.timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"Timed out after {timeout}s trying to {what}") from exc

    async def _read(self, store_key: str, timeout: Optional[float]) -> tuple[Optional[SecretRecord], Optional[SecretRecord]]:
        cert_name = cert_record_name(store_key)
        key_name = key_record_name(store_key)
        cert_record = await self._call(self.store.get(cert_name), f"read {cert_name}", timeout)
        key_record = await self._call(self.store.get(key_name), f"read {key_name}", timeout)
        return cert_record, key_record

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self, store_key: str, timeout: Optional[float] = None) -> Optional[CaMaterial]:
        """Read the CA material stored under ``store_key``.

        Returns:
            None when the certificate record does not exist; a key record on
            its own does not make a CA.

        Raises:
            StoreUnavailable: On timeout or backend failure.
            DriftDetected: If generation annotations are malformed.
        """
        cert_record, key_record = await self._read(store_key, timeout)
        if cert_record is None:
            if key_record is not None:
                logger.warning("Found CA key record %s without a certificate record", key_record.name)
            return None

        cert = try_load_certificate(cert_record.data.get(CA_CRT))
        key_annotations = key_record.annotations if key_record else {}
        key_data = key_record.data if key_record else {}

        return CaMaterial(
            certificate=cert_record.data.get(CA_CRT, ""),
            private_key=key_data.get(CA_KEY) or None,
            key_password=key_data.get(CA_KEY_PASSWORD) or None,
            cert_generation=parse_generation(cert_record.annotations.get(ANNO_CA_CERT_GENERATION)),
            key_generation=parse_generation(key_annotations.get(ANNO_CA_KEY_GENERATION)),
            created_at=cert.not_valid_before_utc if cert else None,
            expires_at=cert.not_valid_after_utc if cert else None,
            superseded=self._load_superseded(cert_record),
            truststore_password=cert_record.data.get(CA_PASSWORD) or None,
            cert_version=cert_record.version,
            key_version=key_record.version if key_record else None,
            force_renew_requested=is_flag_set(cert_record.annotations, ANNO_FORCE_RENEW),
            force_replace_requested=is_flag_set(key_annotations, ANNO_FORCE_REPLACE),
        )

    async def orphan_key_generation(self, store_key: str, timeout: Optional[float] = None) -> int:
        """Key generation recorded on a key record whose certificate record is gone.

        A CA bootstrapped over such a record continues counting from this
        value so that watchers never see the key generation go backwards.

        Returns:
            0 when the certificate record exists or there is no key record.

        Raises:
            DriftDetected: If the key generation annotation is malformed.
        """
        cert_record, key_record = await self._read(store_key, timeout)
        if cert_record is not None or key_record is None:
            return 0
        return parse_generation(key_record.annotations.get(ANNO_CA_KEY_GENERATION))

    @staticmethod
    def _load_superseded(record: SecretRecord) -> list[SupersededCertificate]:
        try:
            metadata = {
                int(entry["generation"]): (
                    datetime.fromisoformat(entry["supersededAt"]),
                    datetime.fromisoformat(entry["retainUntil"]),
                )
                for entry in json.loads(record.annotations.get(ANNO_SUPERSEDED_CERTS, "[]"))
            }
        except (ValueError, KeyError, TypeError) as exc:
            raise DriftDetected(f"Malformed {ANNO_SUPERSEDED_CERTS} annotation on {record.name}") from exc

        superseded = []
        for name, pem in record.data.items():
            match = _SUPERSEDED_ENTRY.fullmatch(name)
            if not match:
                continue
            generation = int(match.group(1))
            if generation in metadata:
                superseded_at, retain_until = metadata[generation]
            else:
                # Added by hand: trust it until the certificate itself expires.
                cert = try_load_certificate(pem)
                if cert is None:
                    raise DriftDetected(f"Superseded certificate {name} in {record.name} cannot be parsed")
                superseded_at = cert.not_valid_before_utc
                retain_until = cert.not_valid_after_utc
            superseded.append(SupersededCertificate(
                certificate=pem,
                cert_generation=generation,
                superseded_at=superseded_at,
                retain_until=retain_until,
            ))
        superseded.sort(key=lambda old: old.cert_generation, reverse=True)
        return superseded

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save(
        self,
        store_key: str,
        material: CaMaterial,
        timeout: Optional[float] = None,
    ) -> CaMaterial:
        """Persist ``material`` conditioned on its observed versions.

        Annotations and labels that this adapter does not own are preserved.
        When the material was never persisted (bootstrap), the certificate
        record must not exist yet; an orphaned key record is overwritten.

        Returns:
            ``material`` carrying the new store versions.

        Raises:
            StoreConflict: If either record changed since ``material`` was loaded.
            StoreUnavailable: On timeout or backend failure.
        """
        current_cert, current_key = await self._read(store_key, timeout)
        current_cert_version = current_cert.version if current_cert else None
        current_key_version = current_key.version if current_key else None

        if current_cert_version != material.cert_version:
            raise StoreConflict(
                f"{cert_record_name(store_key)} changed concurrently "
                f"(expected version {material.cert_version}, found {current_cert_version})"
            )
        if material.cert_version is not None and current_key_version != material.key_version:
            raise StoreConflict(
                f"{key_record_name(store_key)} changed concurrently "
                f"(expected version {material.key_version}, found {current_key_version})"
            )

        cert_record = self._cert_record(store_key, material, current_cert)
        key_record = self._key_record(store_key, material, current_key)
        written = await self._call(
            self.store.commit([cert_record, key_record]),
            f"write CA records for {store_key}",
            timeout,
        )
        logger.info(
            "Committed CA %s (cert generation %d, key generation %d)",
            store_key,
            material.cert_generation,
            material.key_generation,
        )
        return material.model_copy(update={
            "cert_version": written[0].version,
            "key_version": written[1].version,
        })

    def _cert_record(
        self,
        store_key: str,
        material: CaMaterial,
        current: Optional[SecretRecord],
    ) -> SecretRecord:
        annotations = {
            name: value
            for name, value in (current.annotations if current else {}).items()
            if name not in (ANNO_CA_CERT_GENERATION, ANNO_SUPERSEDED_CERTS)
        }
        annotations[ANNO_CA_CERT_GENERATION] = format_generation(material.cert_generation)

        data = {CA_CRT: material.certificate}
        metadata = []
        for old in material.superseded:
            data[superseded_entry_name(old.cert_generation)] = old.certificate
            metadata.append({
                "generation": old.cert_generation,
                "supersededAt": old.superseded_at.isoformat(),
                "retainUntil": old.retain_until.isoformat(),
            })
        if metadata:
            annotations[ANNO_SUPERSEDED_CERTS] = json.dumps(metadata, sort_keys=True)

        if material.truststore_password:
            truststore = CertManager.truststore(
                [material.certificate] + [old.certificate for old in material.superseded],
                material.truststore_password,
            )
            data[CA_P12] = base64.b64encode(truststore).decode()
            data[CA_PASSWORD] = material.truststore_password

        return SecretRecord(
            name=cert_record_name(store_key),
            data=data,
            annotations=annotations,
            labels={**(current.labels if current else {}), **self.labels},
            version=current.version if current else None,
        )

    def _key_record(
        self,
        store_key: str,
        material: CaMaterial,
        current: Optional[SecretRecord],
    ) -> SecretRecord:
        annotations = dict(current.annotations if current else {})
        annotations[ANNO_CA_KEY_GENERATION] = format_generation(material.key_generation)
        data = {}
        if material.private_key:
            data[CA_KEY] = material.private_key
        if material.key_password:
            data[CA_KEY_PASSWORD] = material.key_password
        return SecretRecord(
            name=key_record_name(store_key),
            data=data,
            annotations=annotations,
            labels={**(current.labels if current else {}), **self.labels},
            version=current.version if current else None,
        )

    # ------------------------------------------------------------------
    # Force annotations
    # ------------------------------------------------------------------

    async def clear_force_annotations(
        self,
        store_key: str,
        renew: bool = True,
        replace: bool = True,
        timeout: Optional[float] = None,
    ) -> bool:
        """Remove honored force-renew / force-replace annotations.

        Returns:
            True if any record was changed.
        """
        cert_record, key_record = await self._read(store_key, timeout)
        changed = []
        if renew and cert_record is not None and ANNO_FORCE_RENEW in cert_record.annotations:
            del cert_record.annotations[ANNO_FORCE_RENEW]
            changed.append(cert_record)
        if replace and key_record is not None and ANNO_FORCE_REPLACE in key_record.annotations:
            del key_record.annotations[ANNO_FORCE_REPLACE]
            changed.append(key_record)
        if not changed:
            return False
        await self._call(
            self.store.commit(changed),
            f"clear force annotations on {store_key}",
            timeout,
        )
        logger.info("Cleared force annotations on %s", [r.name for r in changed])
        return True
