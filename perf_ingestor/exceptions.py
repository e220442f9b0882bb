"""
Exception hierarchy for the performance report ingestor.

Everything raised on purpose by this package derives from ``IngestorError``
so the CLI can tell expected failures from programming errors.

Fatality:
  - ``ConfigurationError`` and ``CredentialError`` stop the calling operation
    (and the process, when raised at start-up).
  - ``AuthRefreshError`` and every ``ReportJobError`` are recovered at chunk
    granularity by the batch orchestrator: logged, rolled back, skipped.
"""

from __future__ import annotations

from typing import Any, Optional


class IngestorError(Exception):
    """Base exception for all ingestor errors."""


class ConfigurationError(IngestorError):
    """Required configuration is missing or invalid."""


# ── Credential pool ────────────────────────────────────────────────────────────

class CredentialError(IngestorError):
    """Base for failures handing out pooled API secrets."""

    def __init__(self, message: str, service: str) -> None:
        super().__init__(message)
        self.service = service


class NoActiveCredentialsError(CredentialError):
    """No active credential exists for the service, even after a usage reset."""

    def __init__(self, service: str) -> None:
        super().__init__(
            f"No active API credentials found for service '{service}' after reset.",
            service,
        )


class CredentialUnavailableError(CredentialError):
    """Storage failed while selecting a credential.

    The message names the service only; the storage error itself is logged
    where it happened and is not attached.
    """

    def __init__(self, service: str) -> None:
        super().__init__(
            f"Could not obtain API credential for service '{service}'. "
            "Check the database and credential configuration.",
            service,
        )


# ── Auth ───────────────────────────────────────────────────────────────────────

class AuthRefreshError(IngestorError):
    """The refresh-token exchange failed; the token cache has been cleared."""


# ── Report jobs ────────────────────────────────────────────────────────────────

class ReportJobError(IngestorError):
    """Base for failures while running a single report job."""


class JobSubmissionError(ReportJobError):
    """The report service rejected the create-report request.

    Attributes:
        payload: Upstream error body (``errors`` list or raw text).
        status_code: HTTP status of the rejection, if one was received.
    """

    def __init__(
        self,
        message: str,
        payload: Any = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.payload = payload
        self.status_code = status_code


class JobFailedError(ReportJobError):
    """The job reached a terminal failure status (``CANCELLED`` / ``FATAL``)."""

    def __init__(self, report_id: str, status: str) -> None:
        super().__init__(f"Report {report_id} finished with terminal status {status}.")
        self.report_id = report_id
        self.status = status


class JobTimeoutError(ReportJobError):
    """The job did not reach a terminal status within the poll budget."""

    def __init__(self, report_id: str, attempts: int) -> None:
        super().__init__(
            f"Report {report_id} did not complete after {attempts} poll attempts."
        )
        self.report_id = report_id
        self.attempts = attempts


class ReportRequestError(ReportJobError):
    """A status, document, or download request returned a non-2xx response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ReportParseError(ReportJobError):
    """The downloaded report could not be decoded or a record was malformed."""
