# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Reconciliation markers and reconciliation-aware logging.

Every log line emitted while reconciling a cluster carries the marker of the
pass it belongs to, so interleaved passes for different clusters stay
readable in a shared log stream.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, MutableMapping, Optional

_ids = itertools.count(1)


@dataclass(frozen=True)
class Reconciliation:
    """Identifies one reconciliation pass of one cluster resource.

    Attributes:
        trigger: What started the pass (``timer``, ``watch``, ``manual``).
        kind: Resource kind being reconciled.
        namespace: Namespace of the resource.
        name: Name of the resource (the cluster name).
        id: Process-unique, increasing pass number.
    """

    trigger: str
    kind: str
    namespace: str
    name: str
    id: int = field(default_factory=lambda: next(_ids))

    def __str__(self) -> str:
        return f"Reconciliation #{self.id}({self.trigger}) {self.kind}({self.namespace}/{self.name})"


class ReconciliationLogger(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with the reconciliation marker.

    Example:
        >>> log = ReconciliationLogger(logging.getLogger("x"), rec, "cluster-ca")
        >>> log.info("renewing CA certificate")  # doctest: +SKIP
        Reconciliation #3(timer) Kafka(ns/c1): cluster-ca: renewing CA certificate
    """

    def __init__(
        self,
        logger: logging.Logger,
        reconciliation: Optional[Reconciliation] = None,
        scope: Optional[str] = None,
    ) -> None:
        super().__init__(logger, {})
        self.reconciliation = reconciliation
        self.scope = scope

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        parts = []
        if self.reconciliation is not None:
            parts.append(str(self.reconciliation))
        if self.scope:
            parts.append(self.scope)
        if parts:
            msg = f"{': '.join(parts)}: {msg}"
        return msg, kwargs

    def bind(self, reconciliation: Optional[Reconciliation]) -> "ReconciliationLogger":
        """Return a copy of this adapter bound to another reconciliation."""
        return ReconciliationLogger(self.logger, reconciliation, self.scope)


__all__ = ["Reconciliation", "ReconciliationLogger"]
