from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from src.alerting.config import BackendConfig

logger = logging.getLogger(__name__)


class KubeApiError(Exception):
    """A Kubernetes API call failed (non-2xx status or transport error)."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"kubernetes api error {status_code}: {message}")


class KubeNotFoundError(KubeApiError):
    pass


def _error_from_response(resp: httpx.Response) -> KubeApiError:
    message = resp.reason_phrase or "request failed"
    try:
        body = resp.json()
        # API errors are returned as a Status object.
        if isinstance(body, dict) and body.get("message"):
            message = str(body["message"])
    except ValueError:
        if resp.text:
            message = resp.text[:500]
    if resp.status_code == 404:
        return KubeNotFoundError(404, message)
    return KubeApiError(resp.status_code, message)


class KubeManager:
    """
    Kubernetes API connection manager.

    - Owns one httpx.AsyncClient bound to the API server with bearer-token auth.
    - Plain calls are bounded by the configured request timeout; watch streams have no read timeout.
    """

    def __init__(self, config: BackendConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def connect(self) -> httpx.AsyncClient:
        """Create the HTTP client if needed and return it."""
        if self._client is not None:
            return self._client

        headers = {"Accept": "application/json"}
        if self._config.kube_token:
            headers["Authorization"] = f"Bearer {self._config.kube_token}"

        verify: Any = self._config.kube_verify_tls
        if verify and self._config.kube_ca_file:
            verify = self._config.kube_ca_file

        self._client = httpx.AsyncClient(
            base_url=self._config.kube_api_url,
            headers=headers,
            verify=verify,
            timeout=float(self._config.kube_request_timeout_sec),
            transport=self._transport,
        )
        return self._client

    # PUBLIC_INTERFACE
    async def ping(self) -> bool:
        """Check connectivity by reading the API server version."""
        try:
            await self.request("GET", "/version")
            return True
        except KubeApiError:
            logger.exception("Kubernetes API ping failed")
            return False

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception:
                logger.exception("Error closing Kubernetes HTTP client")
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one API request and return the decoded JSON body; raises KubeApiError."""
        client = self.connect()
        try:
            resp = await client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise KubeApiError(0, f"{method} {path}: {e}") from e
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        if not resp.content:
            return {}
        return resp.json()

    @asynccontextmanager
    async def stream(self, path: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[httpx.Response]:
        """Open a long-lived streaming GET (used for watches)."""
        client = self.connect()
        timeout = httpx.Timeout(float(self._config.kube_request_timeout_sec), read=None)
        try:
            async with client.stream("GET", path, params=params, timeout=timeout) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise _error_from_response(resp)
                yield resp
        except httpx.HTTPError as e:
            raise KubeApiError(0, f"GET {path} (stream): {e}") from e
