"""Request forwarder: relays an inbound request to the selected backend.

The caller's gateway key never leaves the gateway; the backend's own
secret is substituted in the Authorization header. One attempt per
request, no retries.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass

import httpx

from src.gateway.errors import ForwardError
from src.logging.audit import get_audit_logger
from src.store.models import BackendConfig

# Never copied from the inbound request
_STRIPPED_REQUEST_HEADERS = {"host", "connection", "authorization", "content-length"}

_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

_BODYLESS_METHODS = {"GET", "HEAD"}


def build_upstream_headers(inbound: Mapping[str, str], backend_secret: str) -> dict[str, str]:
    """Copy inbound headers minus host/connection/authorization, then add the backend secret."""
    headers = {
        name: value
        for name, value in inbound.items()
        if name.lower() not in _STRIPPED_REQUEST_HEADERS
        and name.lower() not in _HOP_BY_HOP_HEADERS
    }
    headers["authorization"] = f"Bearer {backend_secret}"
    return headers


def _response_headers(response: httpx.Response, decoded: bool) -> dict[str, str]:
    dropped = _HOP_BY_HOP_HEADERS | {"content-length"}
    if decoded:
        dropped = dropped | {"content-encoding"}
    return {
        name: value
        for name, value in response.headers.items()
        if name.lower() not in dropped
    }


@dataclass
class UpstreamResponse:
    """A fully read (non-streaming) upstream response."""

    status_code: int
    headers: dict[str, str]
    content: bytes

    @property
    def media_type(self) -> str | None:
        return self.headers.get("content-type")


class UpstreamStream:
    """A streamed upstream response whose body is read once, by the client."""

    def __init__(self, response: httpx.Response, backend_id: str):
        self._response = response
        self._backend_id = backend_id
        self.status_code = response.status_code
        self.headers = _response_headers(response, decoded=False)
        self.bytes_relayed = 0

    @property
    def media_type(self) -> str | None:
        return self.headers.get("content-type")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Relay raw chunks as they arrive.

        Closing (exhaustion, error, or cancellation on client disconnect)
        always closes the upstream response.
        """
        try:
            async for chunk in self._response.aiter_raw():
                self.bytes_relayed += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            get_audit_logger().error(
                "Upstream stream interrupted",
                extra={"audit_data": {
                    "backend_id": self._backend_id,
                    "error_type": type(e).__name__,
                    "bytes_relayed": self.bytes_relayed,
                }},
            )
            if (self.media_type or "").startswith("text/event-stream"):
                error_data = json.dumps({"error": {"message": ForwardError.default_message}})
                yield f"data: {error_data}\n\n".encode()
        finally:
            await self._response.aclose()


class Forwarder:
    """Owns the pooled upstream HTTP client.

    httpx timeouts bound each connect/read individually. ``timeout`` is
    also enforced as a deadline on the whole exchange: until the body is
    read for buffered responses, until the headers arrive for streams.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._deadline = timeout
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def forward(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
        backend: BackendConfig,
        query: str = "",
        stream: bool = False,
    ) -> UpstreamResponse | UpstreamStream:
        """Send one request to ``backend.base_url + path``.

        Raises ForwardError on connect/DNS/timeout/transport failures.
        """
        url = f"{backend.base_url}{path}"
        if query:
            url = f"{url}?{query}"
        content = None if method.upper() in _BODYLESS_METHODS else body

        client = await self._get_client()
        request = client.build_request(
            method,
            url,
            headers=build_upstream_headers(headers, backend.backend_secret),
            content=content,
        )

        exchange = self._open_stream if stream else self._read_buffered
        try:
            return await asyncio.wait_for(exchange(client, request, backend), timeout=self._deadline)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            self._log_failure(e, backend, path)
            raise ForwardError() from e

    @staticmethod
    async def _open_stream(
        client: httpx.AsyncClient, request: httpx.Request, backend: BackendConfig,
    ) -> UpstreamStream:
        response = await client.send(request, stream=True)
        return UpstreamStream(response, backend.id)

    @staticmethod
    async def _read_buffered(
        client: httpx.AsyncClient, request: httpx.Request, backend: BackendConfig,
    ) -> UpstreamResponse:
        response = await client.send(request, stream=True)
        try:
            data = await response.aread()
        finally:
            await response.aclose()
        return UpstreamResponse(
            status_code=response.status_code,
            headers=_response_headers(response, decoded=True),
            content=data,
        )

    @staticmethod
    def _log_failure(error: Exception, backend: BackendConfig, path: str) -> None:
        get_audit_logger().error(
            "Upstream request failed",
            extra={"audit_data": {
                "backend_id": backend.id,
                "path": path,
                "error_type": type(error).__name__,
                "timeout": isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)),
                "error": str(error),
            }},
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
