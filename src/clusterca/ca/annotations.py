# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Generation annotation contract.

CA records and every dependent resource carry generation counters as
annotations. Unrelated components poll these values and compare them with a
plain numeric ``>``, so the encoding is fixed: base-10 ASCII digits, no sign,
no leading zeros.
"""

import re
from typing import Mapping, Optional

from clusterca.ca.models import CaKind
from clusterca.exceptions import DriftDetected

ANNO_CA_CERT_GENERATION = "clusterca.io/ca-cert-generation"
ANNO_CA_KEY_GENERATION = "clusterca.io/ca-key-generation"
ANNO_FORCE_RENEW = "clusterca.io/force-renew"
ANNO_FORCE_REPLACE = "clusterca.io/force-replace"
ANNO_SUPERSEDED_CERTS = "clusterca.io/superseded-certs"

ANNO_CLUSTER_CA_CERT_GENERATION = "clusterca.io/cluster-ca-cert-generation"
ANNO_CLUSTER_CA_KEY_GENERATION = "clusterca.io/cluster-ca-key-generation"
ANNO_CLIENTS_CA_CERT_GENERATION = "clusterca.io/clients-ca-cert-generation"
ANNO_CLIENTS_CA_KEY_GENERATION = "clusterca.io/clients-ca-key-generation"

_GENERATION = re.compile(r"0|[1-9][0-9]*")


def format_generation(value: int) -> str:
    """Encode a generation counter for an annotation value."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"Generation must be a non-negative integer, got: {value!r}")
    return str(value)


def parse_generation(value: Optional[str], default: int = 0) -> int:
    """Decode a generation annotation value.

    Args:
        value: Raw annotation value, or None when the annotation is missing.
        default: Returned for a missing annotation.

    Raises:
        DriftDetected: If the value is not a canonical base-10 integer.
    """
    if value is None:
        return default
    if not _GENERATION.fullmatch(value):
        raise DriftDetected(f"Malformed generation annotation value: {value!r}")
    return int(value)


def is_flag_set(annotations: Mapping[str, str], name: str) -> bool:
    return annotations.get(name, "").strip().lower() == "true"


def dependent_cert_generation_annotation(kind: CaKind) -> str:
    """Annotation a dependent uses to record the CA cert generation it was built from."""
    if kind is CaKind.CLUSTER:
        return ANNO_CLUSTER_CA_CERT_GENERATION
    return ANNO_CLIENTS_CA_CERT_GENERATION


def dependent_key_generation_annotation(kind: CaKind) -> str:
    if kind is CaKind.CLUSTER:
        return ANNO_CLUSTER_CA_KEY_GENERATION
    return ANNO_CLIENTS_CA_KEY_GENERATION


def has_ca_cert_generation_changed(
    dependent_annotations: Mapping[str, str],
    kind: CaKind,
    current_generation: int,
) -> bool:
    """Return True if a dependent was built from an older CA certificate.

    A dependent without the annotation is treated as outdated.
    """
    raw = dependent_annotations.get(dependent_cert_generation_annotation(kind))
    if raw is None:
        return True
    return current_generation > parse_generation(raw)


__all__ = [
    "ANNO_CA_CERT_GENERATION",
    "ANNO_CA_KEY_GENERATION",
    "ANNO_FORCE_RENEW",
    "ANNO_FORCE_REPLACE",
    "ANNO_SUPERSEDED_CERTS",
    "ANNO_CLUSTER_CA_CERT_GENERATION",
    "ANNO_CLUSTER_CA_KEY_GENERATION",
    "ANNO_CLIENTS_CA_CERT_GENERATION",
    "ANNO_CLIENTS_CA_KEY_GENERATION",
    "format_generation",
    "parse_generation",
    "is_flag_set",
    "dependent_cert_generation_annotation",
    "dependent_key_generation_annotation",
    "has_ca_cert_generation_changed",
]
