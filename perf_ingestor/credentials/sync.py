"""
Mirror ``<SERVICE>_API_KEYS`` from the environment into the credential pool.

Run at start-up (``perf-ingestor sync-credentials``).  An unset or empty
variable is treated as "not configured" and leaves the stored pool alone;
it never empties the table.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from perf_ingestor.config import desired_secrets_from_env, secrets_env_var
from perf_ingestor.credentials.pool import CredentialPool, ReconcileResult

logger = logging.getLogger(__name__)


def sync_credentials_from_env(
    pool: CredentialPool,
    service: str,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[ReconcileResult]:
    """Reconcile ``service``'s pool against its environment variable.

    Args:
        pool: Target pool.
        service: Service name; the variable read is ``<SERVICE>_API_KEYS``.
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        The ``ReconcileResult``, or ``None`` when the variable is unset/empty
        and the sync was skipped.
    """
    desired = desired_secrets_from_env(service, environ)
    if desired is None:
        logger.warning(
            "%s is not set or empty; skipping credential sync for service=%s.",
            secrets_env_var(service), service,
        )
        return None
    return pool.reconcile(service, desired)
