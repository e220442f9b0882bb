"""
Login-with-Amazon access-token cache.

Refresh-token grant::

    POST https://api.amazon.com/auth/o2/token
      → Body (form): grant_type=refresh_token, refresh_token, client_id, client_secret
      → Returns:     {"access_token": "...", "expires_in": 3600, ...}

One ``TokenCache`` per auth context is created at start-up and passed to
every client that needs the token.  The cached token is treated as expired
``safety_margin_seconds`` before the service says it is, so a token is never
handed out with only seconds of life left.

Thread safety: the cached-token read is a plain check; the refresh path runs
under a lock and re-checks the slot, so concurrent callers racing an expired
token trigger exactly one refresh.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx

from perf_ingestor.config import AppConfig, ReportCredentials
from perf_ingestor.exceptions import AuthRefreshError
from perf_ingestor.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class TokenCache:
    """Single-slot cache for a short-lived bearer token.

    Args:
        credentials: Client id/secret and refresh token.
        token_url: Auth endpoint for the refresh-token grant.
        safety_margin_seconds: Subtracted from ``expires_in`` when caching.
        timeout: HTTP timeout for the refresh request.
        http_client: Optional pre-built client (tests pass one with a
            ``MockTransport``).  Closed by ``close()`` only if created here.
        clock: Returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        credentials: ReportCredentials,
        token_url: str = "https://api.amazon.com/auth/o2/token",
        safety_margin_seconds: int = 300,
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = credentials
        self._token_url = token_url
        self._margin = timedelta(seconds=safety_margin_seconds)
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        credentials: ReportCredentials,
        http_client: Optional[httpx.Client] = None,
    ) -> "TokenCache":
        return cls(
            credentials,
            token_url=config.auth.token_url,
            safety_margin_seconds=config.auth.safety_margin_seconds,
            timeout=config.auth.timeout_seconds,
            http_client=http_client,
        )

    def get_token(self) -> str:
        """Return a valid access token, refreshing it if needed.

        Raises:
            AuthRefreshError: The refresh exchange failed.  The cache is empty
                afterwards so the next call starts a fresh exchange.
        """
        token = self._cached()
        if token is not None:
            return token

        with self._lock:
            token = self._cached()
            if token is not None:
                return token
            return self._refresh()

    def clear(self) -> None:
        """Drop the cached token."""
        with self._lock:
            self._token = None
            self._expires_at = None

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ── Private helpers ────────────────────────────────────────────────────────

    def _cached(self) -> Optional[str]:
        token, expires_at = self._token, self._expires_at
        if token is not None and expires_at is not None and self._clock() < expires_at:
            return token
        return None

    def _refresh(self) -> str:
        """Run the refresh-token grant; caller holds ``self._lock``."""
        self._token = None
        self._expires_at = None
        requested_at = self._clock()
        try:
            resp = self._client.post(
                self._token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._credentials.refresh_token,
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                },
            )
            resp.raise_for_status()
            body = resp.json()
            token = body["access_token"]
            expires_in = int(body["expires_in"])
        except httpx.HTTPStatusError as exc:
            logger.error("Access token refresh rejected: HTTP %d", exc.response.status_code)
            raise AuthRefreshError(
                f"Token endpoint returned HTTP {exc.response.status_code}."
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Access token refresh failed: %s", exc)
            raise AuthRefreshError(f"Token request failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Access token response malformed: %s", exc)
            raise AuthRefreshError("Token endpoint returned a malformed response.") from exc

        lifetime = max(timedelta(seconds=expires_in) - self._margin, timedelta(0))
        self._token = token
        self._expires_at = requested_at + lifetime
        logger.info("Access token refreshed; valid until %s", self._expires_at.isoformat())
        return token
