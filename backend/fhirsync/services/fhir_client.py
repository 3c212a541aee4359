"""FHIR R4 REST client used by passes, connection tests and patient matching."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional
from urllib.parse import urljoin

import requests

from fhirsync.config import settings
from fhirsync.services.errors import (
    ConnectionUnauthorized,
    FhirRequestError,
    ResourceNotFound,
    SearchTruncated,
)
from fhirsync.services.http import HttpPolicy, send_request

logger = logging.getLogger("fhirsync.fhir_client")

TokenProvider = Callable[[], Awaitable[Optional[str]]]


async def _anonymous() -> Optional[str]:
    return None


def _extract_fhir_bundle_resources(bundle: dict[str, Any], resource_type: str) -> list[dict[str, Any]]:
    entries = bundle.get("entry")
    if not isinstance(entries, list):
        return []
    resources: list[dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        resource = entry.get("resource")
        # Servers may interleave OperationOutcome or _include entries.
        if isinstance(resource, dict) and resource.get("resourceType") == resource_type:
            resources.append(resource)
    return resources


def _extract_bundle_next_url(bundle: dict[str, Any]) -> str | None:
    links = bundle.get("link")
    if not isinstance(links, list):
        return None
    for link in links:
        if not isinstance(link, dict):
            continue
        relation = link.get("relation")
        url = link.get("url")
        if relation == "next" and isinstance(url, str) and url.strip():
            return url.strip()
    return None


def _outcome_codes(payload: Any) -> str:
    if not isinstance(payload, dict) or payload.get("resourceType") != "OperationOutcome":
        return ""
    codes = [
        str(issue.get("code"))
        for issue in payload.get("issue") or []
        if isinstance(issue, dict) and issue.get("code")
    ]
    return f" ({', '.join(codes)})" if codes else ""


def _id_from_location(location: str | None) -> str | None:
    # Location: <base>/<type>/<id>/_history/<vid>
    if not location:
        return None
    parts = [part for part in location.split("?", 1)[0].split("/") if part]
    if "_history" in parts:
        parts = parts[: parts.index("_history")]
    return parts[-1] if parts else None


class FhirClient:
    def __init__(
        self,
        base_url: str,
        *,
        token_provider: TokenProvider = _anonymous,
        policy: Optional[HttpPolicy] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.policy = policy or HttpPolicy.from_settings()
        self.page_size = page_size or settings.fhir_page_size
        self.max_pages = max_pages or settings.fhir_max_pages

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url, *(part.strip("/") for part in parts)])

    async def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/fhir+json, application/json",
            "Content-Type": "application/fhir+json",
        }
        token = await self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, str]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        response = await send_request(
            method,
            url,
            policy=self.policy,
            headers=await self._headers(),
            params=params,
            json_body=json_body,
        )
        self._raise_for_status(method, url, response)
        return response

    @staticmethod
    def _raise_for_status(method: str, url: str, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        target = url.split("?", 1)[0]
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if status in (401, 403):
            raise ConnectionUnauthorized(f"{method} {target} was rejected with HTTP {status}")
        if status in (404, 410):
            raise ResourceNotFound(f"{method} {target} returned HTTP {status}")
        raise FhirRequestError(
            f"{method} {target} returned HTTP {status}{_outcome_codes(payload)}",
            http_status=status,
        )

    @staticmethod
    def _json(method: str, url: str, response: requests.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        target = url.split("?", 1)[0]
        try:
            payload = response.json()
        except ValueError as exc:
            raise FhirRequestError(f"{method} {target} did not return valid JSON") from exc
        if not isinstance(payload, dict):
            raise FhirRequestError(f"{method} {target} did not return a JSON object")
        return payload

    async def capability_statement(self) -> dict[str, Any]:
        url = self._url("metadata")
        return self._json("GET", url, await self._send("GET", url))

    async def smart_configuration(self) -> Optional[dict[str, Any]]:
        """SMART discovery document, or None when the server does not publish one."""
        url = self._url(".well-known", "smart-configuration")
        try:
            return self._json("GET", url, await self._send("GET", url))
        except (ResourceNotFound, FhirRequestError):
            return None

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        url = self._url(resource_type, resource_id)
        return self._json("GET", url, await self._send("GET", url))

    async def search(self, resource_type: str, params: dict[str, str]) -> list[dict[str, Any]]:
        """Run a search and follow ``next`` links until the bundle is exhausted.

        Raises SearchTruncated rather than returning a partial result when the
        server still has pages after ``max_pages``.
        """
        resources: list[dict[str, Any]] = []
        next_url: Optional[str] = self._url(resource_type)
        request_params: Optional[dict[str, str]] = {"_count": str(self.page_size), **params}
        page_count = 0
        while next_url and page_count < self.max_pages:
            bundle = self._json("GET", next_url, await self._send("GET", next_url, params=request_params))
            resources.extend(_extract_fhir_bundle_resources(bundle, resource_type))
            following = _extract_bundle_next_url(bundle)
            next_url = urljoin(f"{self.base_url}/", following) if following else None
            request_params = None
            page_count += 1
        if next_url:
            logger.warning(
                "FHIR %s search stopped at the %d page limit for %s",
                resource_type,
                self.max_pages,
                self.base_url,
            )
            raise SearchTruncated(
                f"{resource_type} search has more than {self.max_pages} pages of {self.page_size}"
            )
        return resources

    async def create(self, resource_type: str, resource: dict[str, Any]) -> dict[str, Any]:
        url = self._url(resource_type)
        response = await self._send("POST", url, json_body=resource)
        payload = self._json("POST", url, response)
        if not payload.get("id"):
            created_id = _id_from_location(response.headers.get("Location"))
            if created_id is None:
                raise FhirRequestError(f"POST {url} did not report the created resource id")
            payload = {**resource, **payload, "id": created_id}
        return payload

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        resource: dict[str, Any],
    ) -> dict[str, Any]:
        url = self._url(resource_type, resource_id)
        body = {**resource, "id": resource_id}
        response = await self._send("PUT", url, json_body=body)
        return self._json("PUT", url, response) or body
