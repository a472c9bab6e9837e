# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Expiration policy evaluation.

Decides, for one CA and one point in time, whether the CA material is left
alone, renewed under the same key, replaced with a new key, or rejected.
Forced actions requested through annotations win over time-based policy;
externally supplied CAs are never regenerated, only rejected when invalid.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from cryptography import x509

from clusterca.ca.crypto import as_utc, key_matches_certificate, load_private_key, try_load_certificate
from clusterca.ca.models import CaAction, CaMaterial
from clusterca.config import CaConfig, ExpirationPolicy

logger = logging.getLogger(__name__)


def find_problem(material: CaMaterial, require_key: bool) -> Optional[str]:
    """Return a description of what is structurally wrong with ``material``.

    Args:
        material: CA material to inspect.
        require_key: Whether a missing private key counts as a problem.

    Returns:
        None when the material is usable.
    """
    cert = try_load_certificate(material.certificate)
    if cert is None:
        return "CA certificate cannot be parsed"

    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        if not constraints.ca:
            return "certificate is not a CA certificate"
    except x509.ExtensionNotFound:
        return "certificate has no basic constraints"

    if not material.has_private_key:
        return "CA private key is missing" if require_key else None

    try:
        key = load_private_key(material.private_key, material.key_password)
    except (ValueError, TypeError):
        return "CA private key cannot be parsed"
    if not key_matches_certificate(cert, key):
        return "CA private key does not match the CA certificate"
    return None


def evaluate(material: Optional[CaMaterial], config: CaConfig, now: datetime) -> CaAction:
    """Return the action required for ``material`` at ``now``.

    The first matching rule wins:

    1. absent and not operator-managed -> FAIL
    2. absent -> REPLACE (bootstrap)
    3. force-replace requested -> REPLACE
    4. force-renew requested -> RENEW
    5. externally managed -> NOOP, or FAIL when structurally invalid
    6. operator-managed but invalid -> REPLACE
    7. inside the renewal window -> REPLACE or RENEW per expiration policy,
       deferred to NOOP while no maintenance window is open and the
       certificate has not expired yet
    8. otherwise -> NOOP
    """
    now = as_utc(now)

    if material is None:
        if not config.generate_ca_if_absent:
            return CaAction.fail("CA absent and not operator-managed")
        return CaAction.replace("CA absent, generating a new one")

    if config.force_replace:
        return CaAction.replace("CA key replacement requested by annotation")
    if config.force_renewal:
        return CaAction.renew("CA certificate renewal requested by annotation")

    if not config.generate_ca_if_absent:
        problem = find_problem(material, require_key=False)
        if problem:
            return CaAction.fail(f"Invalid externally supplied CA: {problem}")
        return CaAction.noop("CA is externally managed")

    problem = find_problem(material, require_key=True)
    if problem:
        return CaAction.replace(f"CA material is invalid: {problem}")

    cert = try_load_certificate(material.certificate)
    expires_at = cert.not_valid_after_utc
    renew_from = expires_at - timedelta(days=config.renewal_days)
    if now < renew_from:
        return CaAction.noop()

    if not config.maintenance_window_open and now < expires_at:
        logger.warning(
            "CA certificate is inside its renewal window (expires %s) but no maintenance window is open",
            expires_at.isoformat(),
        )
        return CaAction.noop("renewal deferred until the next maintenance window")

    reason = f"Within renewal period for CA certificate (expires on {expires_at.isoformat()})"
    if config.expiration_policy is ExpirationPolicy.REPLACE_KEY:
        return CaAction.replace(reason)
    return CaAction.renew(reason)


__all__ = ["evaluate", "find_problem"]
