"""
Reports API client — submit, poll, download, parse.

API:   {endpoint}/reports/2021-06-30/
Auth:  ``x-amz-access-token`` header from a shared ``TokenCache``.

Job lifecycle::

    POST /reports                      → {"reportId": "..."}
    GET  /reports/{reportId}           → {"processingStatus": "...", "reportDocumentId": "..."}
         IN_QUEUE / IN_PROGRESS  → sleep poll_interval, poll again
         DONE                    → download
         CANCELLED / FATAL       → JobFailedError (never polled again)
    GET  /documents/{documentId}       → {"url": "...", "compressionAlgorithm": "GZIP"}
    GET  {url}  (presigned, no auth)   → gzip(JSON envelope)

The envelope holds the record list under ``record_field`` (``dataByAsin``);
a missing field means an empty report, not an error.

Retry policy
------------
Transport errors, HTTP 429 and HTTP 5xx are retried up to ``max_retries``
times, sleeping ``min(retry_backoff * 2**attempt, 60)`` seconds between
tries.  Any other non-2xx response fails immediately, and a terminal job
status is never retried.
"""

from __future__ import annotations

import gzip
import json
import logging
import time
from typing import Any, Callable, Optional

import httpx

from perf_ingestor.config import AppConfig
from perf_ingestor.exceptions import (
    JobFailedError,
    JobSubmissionError,
    JobTimeoutError,
    ReportParseError,
    ReportRequestError,
)
from perf_ingestor.ingestion.token_cache import TokenCache
from perf_ingestor.models.report import IngestionRecord, ReportJob, ReportSpec, ReportStatus

logger = logging.getLogger(__name__)

REPORTS_API_PATH = "/reports/2021-06-30"
TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_BACKOFF_SECONDS = 60.0
_GZIP_MAGIC = b"\x1f\x8b"


class ReportJobClient:
    """Runs one report job end to end.

    Args:
        token_cache: Supplies the access token for every authenticated call.
        marketplace_id: Marketplace the reports are requested for.
        endpoint: Regional API base URL.
        report_type: Report type to request.
        report_period: ``reportOptions.reportPeriod`` value.
        record_field: Envelope field holding the record list.
        poll_interval_seconds: Sleep between status polls.
        max_poll_attempts: Polls before giving up with ``JobTimeoutError``.
        timeout: HTTP timeout for every request.
        max_retries: Retries for transient failures, per request.
        retry_backoff_seconds: Base of the exponential backoff.
        http_client: Optional pre-built client; closed by ``close()`` only
            if created here.
        sleep: Sleep function; tests pass a recorder.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        marketplace_id: str,
        endpoint: str = "https://sellingpartnerapi-na.amazon.com",
        report_type: str = "GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT",
        report_period: str = "WEEK",
        record_field: str = "dataByAsin",
        poll_interval_seconds: float = 30.0,
        max_poll_attempts: int = 100,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 2.0,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token_cache = token_cache
        self.marketplace_id = marketplace_id
        self._base_url = endpoint.rstrip("/") + REPORTS_API_PATH
        self.report_type = report_type
        self.report_period = report_period
        self.record_field = record_field
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        token_cache: TokenCache,
        marketplace_id: str,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ReportJobClient":
        rc = config.reports
        return cls(
            token_cache,
            marketplace_id,
            endpoint=rc.endpoint,
            report_type=rc.report_type,
            report_period=rc.report_period,
            record_field=rc.record_field,
            poll_interval_seconds=rc.poll_interval_seconds,
            max_poll_attempts=rc.max_poll_attempts,
            timeout=rc.request_timeout_seconds,
            max_retries=rc.max_request_retries,
            retry_backoff_seconds=rc.retry_backoff_seconds,
            http_client=http_client,
            sleep=sleep,
        )

    def __enter__(self) -> "ReportJobClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ── Job steps ──────────────────────────────────────────────────────────────

    def run(self, spec: ReportSpec) -> list[IngestionRecord]:
        """Submit, wait for, download and parse one report."""
        report_id = self.submit(spec)
        job = self.wait_for_completion(report_id)
        assert job.document_id is not None
        items = self.download(job.document_id)
        records = [IngestionRecord.from_report_item(item, spec.period) for item in items]
        logger.info(
            "Report %s parsed | period=%s | entities=%d | records=%d",
            report_id, spec.period.start, len(spec.entity_ids), len(records),
        )
        return records

    def submit(self, spec: ReportSpec) -> str:
        """Create a report job and return its id.

        Raises:
            JobSubmissionError: Rejected, unreachable, or no ``reportId``.
        """
        body = {
            "reportType": self.report_type,
            "reportOptions": {
                "reportPeriod": self.report_period,
                "asin": " ".join(spec.entity_ids),
            },
            "dataStartTime": spec.period.start.isoformat(),
            "dataEndTime": spec.period.end.isoformat(),
            "marketplaceIds": [self.marketplace_id],
        }
        try:
            resp = self._send("POST", f"{self._base_url}/reports", json=body)
        except httpx.TransportError as exc:
            raise JobSubmissionError(f"Report submission failed: {exc}") from exc

        if resp.is_error:
            payload = _error_payload(resp)
            raise JobSubmissionError(
                f"Report submission rejected with HTTP {resp.status_code}: {payload}",
                payload=payload,
                status_code=resp.status_code,
            )
        report_id = _json_body(resp).get("reportId")
        if not report_id:
            raise JobSubmissionError("Report submission response has no reportId.", payload=resp.text)

        logger.info(
            "Report submitted | report_id=%s | period=%s..%s | entities=%d",
            report_id, spec.period.start, spec.period.end, len(spec.entity_ids),
        )
        return str(report_id)

    def get_status(self, report_id: str) -> ReportJob:
        """Fetch the current status of a job."""
        resp = self._get_checked(f"{self._base_url}/reports/{report_id}", what=f"status of report {report_id}")
        body = _json_body(resp)
        try:
            status = ReportStatus(body.get("processingStatus"))
        except ValueError as exc:
            raise ReportParseError(
                f"Report {report_id} has unknown processingStatus {body.get('processingStatus')!r}."
            ) from exc
        return ReportJob(
            report_id=report_id,
            status=status,
            document_id=body.get("reportDocumentId"),
        )

    def wait_for_completion(self, report_id: str) -> ReportJob:
        """Poll until the job is ``DONE``.

        Raises:
            JobFailedError: The job ended ``CANCELLED`` or ``FATAL``.
            JobTimeoutError: ``max_poll_attempts`` polls without a terminal status.
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            job = self.get_status(report_id)
            logger.debug(
                "Polled report %s | status=%s | attempt=%d/%d",
                report_id, job.status, attempt, self.max_poll_attempts,
            )
            if job.status is ReportStatus.DONE:
                if not job.document_id:
                    raise ReportParseError(f"Report {report_id} is DONE but has no reportDocumentId.")
                return job
            if job.status.is_failure:
                logger.warning("Report %s ended with status %s", report_id, job.status)
                raise JobFailedError(report_id, job.status.value)
            if attempt < self.max_poll_attempts:
                self._sleep(self.poll_interval_seconds)

        raise JobTimeoutError(report_id, self.max_poll_attempts)

    def download(self, document_id: str) -> list[Any]:
        """Fetch a finished report document and return its record list.

        Raises:
            ReportRequestError: Descriptor or payload request failed.
            ReportParseError: Payload is not gzip/UTF-8 JSON, or the record
                field is not a list.
        """
        resp = self._get_checked(
            f"{self._base_url}/documents/{document_id}", what=f"document {document_id}"
        )
        descriptor = _json_body(resp)
        url = descriptor.get("url")
        if not url:
            raise ReportParseError(f"Document {document_id} descriptor has no url.")

        payload = self._get_checked(url, what=f"payload of document {document_id}", authenticated=False)
        raw = payload.content
        try:
            if descriptor.get("compressionAlgorithm") == "GZIP" or raw[:2] == _GZIP_MAGIC:
                raw = gzip.decompress(raw)
            envelope = json.loads(raw.decode("utf-8"))
        except (OSError, EOFError, ValueError) as exc:
            raise ReportParseError(f"Document {document_id} could not be decoded: {exc}") from exc

        if not isinstance(envelope, dict):
            raise ReportParseError(f"Document {document_id} is not a JSON object.")
        records = envelope.get(self.record_field)
        if records is None:
            logger.info("Document %s has no '%s' field; treating as empty.", document_id, self.record_field)
            return []
        if not isinstance(records, list):
            raise ReportParseError(
                f"Document {document_id} field '{self.record_field}' is not a list."
            )
        return records

    # ── HTTP helpers ───────────────────────────────────────────────────────────

    def _get_checked(self, url: str, what: str, authenticated: bool = True) -> httpx.Response:
        try:
            resp = self._send("GET", url, authenticated=authenticated)
        except httpx.TransportError as exc:
            raise ReportRequestError(f"Request for {what} failed: {exc}") from exc
        if resp.is_error:
            payload = _error_payload(resp)
            raise ReportRequestError(
                f"Request for {what} returned HTTP {resp.status_code}: {payload}",
                status_code=resp.status_code,
                payload=payload,
            )
        return resp

    def _send(
        self,
        method: str,
        url: str,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request, retrying transient failures.

        Returns the last response (which may be an error response); raises
        the last ``httpx.TransportError`` once retries are exhausted.
        """
        attempt = 0
        while True:
            headers = {}
            if authenticated:
                headers["x-amz-access-token"] = self._token_cache.get_token()
            try:
                resp = self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise
                reason = f"{type(exc).__name__}: {exc}"
            else:
                if resp.status_code not in TRANSIENT_STATUS_CODES or attempt >= self.max_retries:
                    return resp
                reason = f"HTTP {resp.status_code}"

            delay = min(self.retry_backoff_seconds * 2 ** attempt, MAX_BACKOFF_SECONDS)
            attempt += 1
            logger.warning(
                "%s %s transient failure (%s); retry %d/%d in %.1fs",
                method, _strip_query(url), reason, attempt, self.max_retries, delay,
            )
            self._sleep(delay)


# ── Module helpers ─────────────────────────────────────────────────────────────

def _json_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise ReportParseError(f"Response from {_strip_query(str(resp.request.url))} is not JSON.") from exc
    if not isinstance(body, dict):
        raise ReportParseError("Response body is not a JSON object.")
    return body


def _error_payload(resp: httpx.Response) -> Any:
    """Upstream error detail: the ``errors`` list when present, else the raw text."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and "errors" in body:
        return body["errors"]
    return body


def _strip_query(url: str) -> str:
    # presigned URLs carry credentials in the query string
    return url.split("?", 1)[0]
