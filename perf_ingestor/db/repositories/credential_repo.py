"""
Repository for rotating API credentials.

Every method assumes the caller holds an open transaction where it matters:
``CredentialPool`` wraps select → (reset → select) → mark_used in a single
``BEGIN IMMEDIATE`` transaction so no other writer can observe or change the
chosen row between selection and increment.

Selectable record:
  ``is_active = 1 AND usage_count < usage_limit``.  Among selectable records
  the least recently used wins; never-used records (``last_used_at IS NULL``)
  count as oldest, and ties fall to the lowest ``credential_id``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from perf_ingestor.db.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


@dataclass
class CredentialRecord:
    """One pooled secret for a named service.

    Attributes:
        credential_id: Auto-assigned DB PK.
        service: Service the secret authenticates against (e.g. ``"gemini"``).
        secret: The API key itself.  Never log this.
        usage_count: Uses in the current quota window.
        last_used_at: UTC time of the last hand-out, ``None`` if never used.
        is_active: Inactive records are never selected or reset.
    """

    credential_id: int
    service: str
    secret: str
    usage_count: int
    last_used_at: Optional[datetime]
    is_active: bool

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(credential_id={self.credential_id}, service={self.service!r}, "
            f"usage_count={self.usage_count}, is_active={self.is_active})"
        )

    @property
    def masked_secret(self) -> str:
        """The secret with all but its last four characters hidden."""
        tail = self.secret[-4:] if len(self.secret) > 8 else ""
        return f"****{tail}"


class CredentialRepository(BaseRepository):
    """Read/write access to the ``api_credentials`` table."""

    def select_available(self, service: str, usage_limit: int) -> Optional[CredentialRecord]:
        """Return the least recently used selectable record, or ``None``."""
        row = self.fetchone(
            """
            SELECT * FROM api_credentials
            WHERE service = ? AND is_active = 1 AND usage_count < ?
            ORDER BY last_used_at IS NOT NULL, last_used_at ASC, credential_id ASC
            LIMIT 1;
            """,
            (service, usage_limit),
        )
        return _row_to_credential(row) if row else None

    def reset_usage(self, service: str) -> int:
        """Zero ``usage_count`` on every active record of ``service``.

        Returns:
            Number of records reset.
        """
        cur = self.execute(
            "UPDATE api_credentials SET usage_count = 0 WHERE service = ? AND is_active = 1;",
            (service,),
        )
        return cur.rowcount

    def mark_used(self, credential_id: int, used_at: datetime) -> None:
        """Increment ``usage_count`` and stamp ``last_used_at``."""
        self.execute(
            """
            UPDATE api_credentials
            SET usage_count = usage_count + 1, last_used_at = ?
            WHERE credential_id = ?;
            """,
            (used_at.isoformat(timespec="microseconds"), credential_id),
        )

    def get_secrets(self, service: str) -> set[str]:
        """Return every stored secret for ``service`` (active or not)."""
        rows = self.fetchall(
            "SELECT secret FROM api_credentials WHERE service = ?;", (service,)
        )
        return {row["secret"] for row in rows}

    def insert_secrets(self, service: str, secrets: Iterable[str]) -> int:
        """Insert new active records with zero usage.

        Returns:
            Number of rows inserted.
        """
        params = [(service, s) for s in secrets]
        if not params:
            return 0
        self.executemany(
            "INSERT INTO api_credentials (service, secret) VALUES (?, ?);", params
        )
        return len(params)

    def delete_secrets(self, service: str, secrets: Iterable[str]) -> int:
        """Delete the given secrets for ``service``.

        Returns:
            Number of rows deleted.
        """
        params = [(service, s) for s in secrets]
        if not params:
            return 0
        cur = self.executemany(
            "DELETE FROM api_credentials WHERE service = ? AND secret = ?;", params
        )
        return cur.rowcount

    def set_active(self, credential_id: int, is_active: bool) -> None:
        """Enable or disable a record without deleting it."""
        self.execute(
            "UPDATE api_credentials SET is_active = ? WHERE credential_id = ?;",
            (int(is_active), credential_id),
        )

    def get_by_service(self, service: str) -> list[CredentialRecord]:
        """Return all records for ``service`` ordered by ``credential_id``."""
        rows = self.fetchall(
            "SELECT * FROM api_credentials WHERE service = ? ORDER BY credential_id;",
            (service,),
        )
        return [_row_to_credential(r) for r in rows]


# ── Private helper ─────────────────────────────────────────────────────────────

def _row_to_credential(row: sqlite3.Row) -> CredentialRecord:
    """Convert a ``sqlite3.Row`` from ``api_credentials`` to a dataclass."""
    return CredentialRecord(
        credential_id=row["credential_id"],
        service=row["service"],
        secret=row["secret"],
        usage_count=row["usage_count"],
        last_used_at=(
            datetime.fromisoformat(row["last_used_at"]) if row["last_used_at"] else None
        ),
        is_active=bool(row["is_active"]),
    )
