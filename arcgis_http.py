"""
ArcGIS FeatureServer HTTP layer.

All ArcGIS layer queries go through this module.  It provides:
- A fresh requests.Session per request (thread-safe, ignores proxy env)
- Retry with backoff on 429, 5xx, timeouts and connection failures
  (2 retries, 1s/2s)
- Detection of ArcGIS error bodies, which arrive with HTTP 200
- tc_trace integration for observability

Responses are not cached: AADT lookups always see the live layers.
Set ARCGIS_TIMEOUT to change the per-request timeout (seconds).
"""

import logging
import os
import time
from typing import Any, Dict, Optional

import requests

from tc_trace import get_trace

logger = logging.getLogger(__name__)


class ArcGISRateLimitError(Exception):
    """Raised when ArcGIS keeps answering 429 after all retries are exhausted."""


class ArcGISQueryError(Exception):
    """Raised when an ArcGIS query fails with a non-retryable error or runs out of retries.

    ``retryable`` is set where the failure is classified (timeouts,
    connection failures, 5xx statuses), never inferred from the message.
    """

    def __init__(self, message: str = "", retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


class ArcGISHTTPClient:
    DEFAULT_TIMEOUT = int(os.environ.get("ARCGIS_TIMEOUT", "20"))  # seconds
    MAX_RETRIES = 2
    RETRY_BACKOFF = [1, 2]  # seconds

    def query(
        self,
        url: str,
        params: Dict[str, Any],
        caller: str = "unknown",
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Run a FeatureServer query and return the parsed JSON body.

        Args:
            url: Full ``.../FeatureServer/<n>/query`` endpoint.
            params: Query string parameters (``f=json`` is expected).
            caller: Identifier for trace attribution (e.g. "stations").
            timeout: HTTP timeout in seconds. Defaults to DEFAULT_TIMEOUT.

        Raises:
            ArcGISRateLimitError: 429 on every attempt.
            ArcGISQueryError: non-retryable failure, or retryable failure
                on every attempt.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT

        for attempt in range(1 + self.MAX_RETRIES):
            try:
                return self._do_request(url, params, caller, timeout, retried=attempt > 0)
            except ArcGISRateLimitError:
                if attempt >= self.MAX_RETRIES:
                    raise
                reason = "rate limited"
            except ArcGISQueryError as e:
                if attempt >= self.MAX_RETRIES or not self._is_retryable_error(e):
                    raise
                reason = "query error"

            sleep_time = self.RETRY_BACKOFF[attempt]
            logger.info(
                "ArcGIS %s (attempt %d/%d), sleeping %ds before retry [caller=%s]",
                reason,
                attempt + 1,
                1 + self.MAX_RETRIES,
                sleep_time,
                caller,
            )
            time.sleep(sleep_time)

        raise ArcGISQueryError(f"ArcGIS query failed after all retries [caller={caller}]")

    def _do_request(
        self,
        url: str,
        params: Dict[str, Any],
        caller: str,
        timeout: int,
        retried: bool = False,
    ) -> Dict[str, Any]:
        """Make a single HTTP request and classify the outcome."""
        start = time.monotonic()
        trace = get_trace()

        def _record(status_code: int, provider_status: str = ""):
            if trace:
                trace.record_api_call(
                    service="arcgis",
                    endpoint=caller,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                    retried=retried,
                )

        try:
            with requests.Session() as session:
                session.trust_env = False
                resp = session.get(url, params=params, timeout=timeout)
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise ArcGISQueryError(
                f"ArcGIS request timeout after {timeout}s [caller={caller}]",
                retryable=True,
            )
        except requests.exceptions.ConnectionError as e:
            _record(0, "connection_error")
            raise ArcGISQueryError(
                f"ArcGIS connection failed: {e} [caller={caller}]",
                retryable=True,
            ) from e
        except requests.exceptions.RequestException as e:
            _record(0, "exception")
            raise ArcGISQueryError(
                f"ArcGIS request failed: {e} [caller={caller}]"
            ) from e

        status_code = resp.status_code
        if status_code == 429:
            _record(429, "rate_limit")
            raise ArcGISRateLimitError(
                f"ArcGIS 429 Too Many Requests [caller={caller}]"
            )
        if status_code >= 400:
            _record(status_code, "http_error")
            raise ArcGISQueryError(
                f"ArcGIS HTTP {status_code} [caller={caller}]",
                retryable=status_code in RETRYABLE_STATUS_CODES,
            )

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise ArcGISQueryError(
                f"ArcGIS returned non-JSON response (HTTP {status_code}) [caller={caller}]"
            )

        # FeatureServer reports most failures as HTTP 200 with an error body.
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            code = error.get("code", 0) if isinstance(error, dict) else 0
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            _record(status_code, "body_error")
            if code == 429:
                raise ArcGISRateLimitError(
                    f"ArcGIS rate limit in response body [caller={caller}]"
                )
            raise ArcGISQueryError(
                f"ArcGIS error {code}: {str(message)[:100]} [caller={caller}]",
                retryable=isinstance(code, int) and code in RETRYABLE_STATUS_CODES,
            )

        _record(status_code)
        return data

    @staticmethod
    def _is_retryable_error(e: ArcGISQueryError) -> bool:
        """5xx errors, timeouts and connection failures are retryable. 4xx are not."""
        return getattr(e, "retryable", False)


# Module-level singleton; the client holds no per-request state
_client = ArcGISHTTPClient()


def arcgis_query(
    url: str,
    params: Dict[str, Any],
    caller: str = "unknown",
    timeout: Optional[int] = None,
) -> Dict[str, Any]:
    """Module-level convenience function. All ArcGIS calls should use this."""
    return _client.query(url, params, caller=caller, timeout=timeout)
