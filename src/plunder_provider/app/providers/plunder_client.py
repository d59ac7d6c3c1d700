"""Async HTTP client for the Plunder provisioning API.

Plunder advertises its operations as named function endpoints; callers
resolve a capability (``dhcp``, ``deployment``, ``task-submit``,
``task-log``) to a path with ``discover_endpoint`` and then exchange JSON
envelopes with ``get``/``post``. Every envelope carries a payload plus an
optional hard ``error`` and an optional ``friendlyError``; either one being
non-empty means the call failed.

Only GETs are retried on transient errors (exponential backoff with
jitter). POSTs create deployments or tasks on the backend and are issued at
most once per call.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import (
    BackendRejectedError,
    BackendUnavailableError,
    EndpointDiscoveryError,
)

logger = logging.getLogger(__name__)

CAPABILITY_DHCP = "dhcp"
CAPABILITY_DEPLOYMENT = "deployment"
CAPABILITY_TASK_SUBMIT = "task-submit"
CAPABILITY_TASK_LOG = "task-log"

# Capabilities whose backend function name differs from the capability.
_BACKEND_FUNCTIONS = {
    CAPABILITY_TASK_SUBMIT: "parlay",
    CAPABILITY_TASK_LOG: "parlayLog",
}

_ENDPOINTS_PATH = "/endpoints"


def backend_function(capability: str) -> str:
    """Function name the backend advertises for ``capability``."""
    return _BACKEND_FUNCTIONS.get(capability, capability)


# Status codes eligible for automatic retry (GET only).
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_DEFAULT_MAX_GET_RETRIES = 2
_DEFAULT_BASE_DELAY = 0.5  # seconds
_DEFAULT_MAX_DELAY = 5.0  # seconds


# ── Wire types ───────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A function endpoint advertised by the backend."""

    name: str
    path: str
    method: str
    description: str = ""


class _EndpointPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    path: str
    method: str
    description: str = ""


class PlunderResponse(BaseModel):
    """Envelope returned by every Plunder API call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    warning: str = ""
    error: str = ""
    friendly_error: str = Field(default="", alias="friendlyError")
    success: bool = False
    payload: Any = None

    @property
    def failed(self) -> bool:
        return bool(self.error or self.friendly_error)

    def raise_for_error(self, operation: str = "") -> PlunderResponse:
        """Raise BackendRejectedError if the envelope reports a failure."""
        if self.failed:
            raise BackendRejectedError(
                self.error or self.friendly_error,
                operation=operation,
                friendly_error=self.friendly_error,
            )
        return self


# ── Client ───────────────────────────────────────────────────────


class PlunderClient:
    """Async HTTP client for the Plunder API server."""

    def __init__(
        self,
        *,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        verify_tls: bool = True,
        max_get_retries: int = _DEFAULT_MAX_GET_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")

        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(verify=verify_tls)
        self._timeout = float(timeout_seconds)
        self._max_get_retries = max_get_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> PlunderClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── Transport ────────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        retries = self._max_get_retries if method == "GET" else 0

        for attempt in range(retries + 1):
            try:
                resp = await self._client.request(
                    method,
                    url,
                    json=json,
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                if attempt < retries:
                    await self._wait_before_retry(method, path, attempt, "timeout")
                    continue
                raise BackendUnavailableError(f"{method} {path} timed out") from e
            except httpx.TransportError as e:
                if attempt < retries:
                    await self._wait_before_retry(method, path, attempt, str(e))
                    continue
                raise BackendUnavailableError(f"{method} {path} failed: {e}") from e

            if resp.status_code in _RETRYABLE_STATUS_CODES and attempt < retries:
                await self._wait_before_retry(
                    method, path, attempt, f"HTTP {resp.status_code}",
                )
                continue
            return resp

        raise BackendUnavailableError(f"{method} {path}: exhausted retries")

    async def _wait_before_retry(
        self, method: str, path: str, attempt: int, reason: str,
    ) -> None:
        delay = self._backoff_delay(attempt)
        logger.warning(
            "Plunder %s %s failed (%s), attempt %d/%d, retrying in %.1fs",
            method,
            path,
            reason,
            attempt + 1,
            self._max_get_retries + 1,
            delay,
        )
        await asyncio.sleep(delay)

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _decode(self, method: str, path: str, resp: httpx.Response) -> PlunderResponse:
        if resp.status_code in _RETRYABLE_STATUS_CODES or resp.status_code >= 500:
            raise BackendUnavailableError(
                f"{method} {path} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            try:
                envelope = PlunderResponse.model_validate(body)
            except ValidationError as e:
                raise BackendRejectedError(
                    f"malformed response envelope: {e.error_count()} errors",
                    operation=f"{method} {path}",
                ) from e
            if resp.status_code >= 400 and not envelope.failed:
                envelope.error = f"HTTP {resp.status_code}"
            return envelope

        if resp.status_code >= 400:
            text = resp.text
            return PlunderResponse(error=text[:200] if text else f"HTTP {resp.status_code}")
        return PlunderResponse(success=True, payload=body)

    # ── Public API ───────────────────────────────────────────────

    async def get(self, path: str) -> PlunderResponse:
        resp = await self._send("GET", path)
        return self._decode("GET", path, resp)

    async def post(self, path: str, body: Any) -> PlunderResponse:
        resp = await self._send("POST", path, json=body)
        return self._decode("POST", path, resp)

    async def list_endpoints(self) -> list[Endpoint]:
        """Fetch every function endpoint the backend advertises."""
        resp = await self._send("GET", _ENDPOINTS_PATH)
        if resp.status_code >= 500:
            raise BackendUnavailableError(
                f"endpoint listing returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise EndpointDiscoveryError(
                "*", "GET", f"endpoint listing returned HTTP {resp.status_code}",
            )
        try:
            raw = resp.json()
        except ValueError as e:
            raise EndpointDiscoveryError("*", "GET", "endpoint listing is not JSON") from e

        if isinstance(raw, dict):
            # Some servers wrap the listing in a response envelope.
            raw = raw.get("payload") or []
        if not isinstance(raw, list):
            raise EndpointDiscoveryError(
                "*", "GET", f"expected endpoint list, got {type(raw).__name__}",
            )

        endpoints: list[Endpoint] = []
        for item in raw:
            try:
                parsed = _EndpointPayload.model_validate(item)
            except ValidationError:
                logger.debug("Skipping malformed endpoint entry: %r", item)
                continue
            endpoints.append(
                Endpoint(
                    name=parsed.name,
                    path=parsed.path,
                    method=parsed.method.upper(),
                    description=parsed.description,
                )
            )
        return endpoints

    async def discover_endpoint(self, capability: str, method: str) -> Endpoint:
        """Resolve a capability + HTTP method to an advertised endpoint.

        Raises EndpointDiscoveryError if the backend does not offer it.
        """
        function_name = backend_function(capability)
        method = method.upper()
        for endpoint in await self.list_endpoints():
            if endpoint.name == function_name and endpoint.method == method:
                return endpoint
        raise EndpointDiscoveryError(capability, method)
