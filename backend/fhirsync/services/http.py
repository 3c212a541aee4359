"""Blocking ``requests`` calls run off the event loop, with bounded retries.

Only transient failures are retried (timeouts, dropped connections, 429 and
5xx gateway responses). Every other response is handed back to the caller
for classification.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from fhirsync.config import settings
from fhirsync.services.errors import ConnectionUnreachable, FhirTimeout

logger = logging.getLogger("fhirsync.http")

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_NON_RETRYABLE_EXCEPTIONS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
)


@dataclass(frozen=True)
class HttpPolicy:
    timeout_seconds: float
    verify_ssl: bool
    max_attempts: int
    backoff_seconds: float
    backoff_max_seconds: float

    @classmethod
    def from_settings(cls) -> "HttpPolicy":
        return cls(
            timeout_seconds=settings.fhir_http_timeout_seconds,
            verify_ssl=settings.fhir_http_verify_ssl,
            max_attempts=max(1, settings.fhir_http_max_attempts),
            backoff_seconds=settings.fhir_http_backoff_seconds,
            backoff_max_seconds=settings.fhir_http_backoff_max_seconds,
        )


def _strip_query(url: str) -> str:
    # Query strings carry patient identifiers.
    return url.split("?", 1)[0]


def _send(
    method: str,
    url: str,
    *,
    headers: Optional[dict[str, str]],
    params: Optional[dict[str, str]],
    json_body: Optional[dict[str, Any]],
    data: Optional[dict[str, str]],
    auth: Optional[tuple[str, str]],
    timeout: float,
    verify: bool,
) -> requests.Response:
    return requests.request(
        method,
        url,
        headers=headers,
        params=params,
        json=json_body,
        data=data,
        auth=auth,
        timeout=timeout,
        verify=verify,
    )


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _retry_after_seconds(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


async def send_request(
    method: str,
    url: str,
    *,
    policy: HttpPolicy,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, str]] = None,
    json_body: Optional[dict[str, Any]] = None,
    data: Optional[dict[str, str]] = None,
    auth: Optional[tuple[str, str]] = None,
) -> requests.Response:
    """Send one logical request, retrying transient failures with exponential backoff."""
    target = _strip_query(url)
    for attempt in range(1, policy.max_attempts + 1):
        retry_after: Optional[float] = None
        try:
            response = await asyncio.to_thread(
                _send,
                method,
                url,
                headers=headers,
                params=params,
                json_body=json_body,
                data=data,
                auth=auth,
                timeout=policy.timeout_seconds,
                verify=policy.verify_ssl,
            )
        except _NON_RETRYABLE_EXCEPTIONS as exc:
            raise ConnectionUnreachable(f"{method} {target} is not a valid request URL") from exc
        except requests.Timeout as exc:
            failure: ConnectionUnreachable = FhirTimeout(
                f"{method} {target} timed out after {policy.timeout_seconds:.0f}s"
            )
            cause: Optional[BaseException] = exc
        except requests.RequestException as exc:
            failure = ConnectionUnreachable(f"{method} {target} failed ({exc.__class__.__name__})")
            cause = exc
        else:
            if response.status_code not in TRANSIENT_STATUS_CODES:
                return response
            failure = ConnectionUnreachable(
                f"{method} {target} returned HTTP {response.status_code}"
            )
            cause = None
            retry_after = _retry_after_seconds(response)

        if attempt >= policy.max_attempts:
            raise failure from cause

        delay_seconds = min(
            max(policy.backoff_seconds * (2 ** (attempt - 1)), retry_after or 0.0),
            policy.backoff_max_seconds,
        )
        logger.warning(
            "%s %s attempt %d/%d failed (%s). Retrying in %.1fs.",
            method,
            target,
            attempt,
            policy.max_attempts,
            failure.message,
            delay_seconds,
        )
        await _sleep(delay_seconds)

    raise ConnectionUnreachable(f"{method} {target} was not attempted")
