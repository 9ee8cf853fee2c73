"""Proxy pipeline shared by every forwarding route.

Pipeline: Parse body -> Select backend -> Re-check activation -> Forward
-> Return response -> Queue usage accounting
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import Request
from fastapi.responses import Response, StreamingResponse

from src.gateway.errors import BadRequest, GatewayError, InternalError, ModelNotSupported
from src.gateway.resolver import ResolvedKey
from src.gateway.selector import select_backend
from src.gateway.service import Gateway
from src.logging.audit import RequestTimer, get_audit_logger
from src.proxy.forwarder import UpstreamStream
from src.usage.recorder import UsageEvent

_BODYLESS_METHODS = {"GET", "HEAD"}


@contextmanager
def internal_errors(stage: str) -> Iterator[None]:
    """Collapse unexpected failures into a generic 500 (details only in logs)."""
    try:
        yield
    except GatewayError:
        raise
    except Exception as e:
        get_audit_logger().exception(
            "Internal gateway error",
            extra={"audit_data": {"stage": stage}},
        )
        raise InternalError() from e


def parse_request_body(raw: bytes, method: str, strict: bool) -> dict:
    """Decode the JSON body. ``strict`` routes reject unparseable bodies."""
    if method in _BODYLESS_METHODS:
        return {}
    try:
        parsed = json.loads(raw) if raw else None
    except (ValueError, UnicodeDecodeError):
        parsed = None
    if not isinstance(parsed, dict):
        if strict:
            raise BadRequest("Invalid request body. JSON parsing failed.")
        return {}
    return parsed


async def proxy_request(
    request: Request,
    resolved: ResolvedKey,
    gateway: Gateway,
    upstream_path: str,
    *,
    strict_json: bool = False,
    require_model: bool = False,
) -> Response:
    """Forward one authenticated request and queue its accounting."""
    logger = get_audit_logger()
    timer = RequestTimer().start()

    method = request.method.upper()
    raw_body = await request.body()
    body = parse_request_body(raw_body, method, strict_json)

    model = body.get("model") if isinstance(body.get("model"), str) else None
    if require_model and not model:
        raise BadRequest("Model parameter is required.")
    is_stream = body.get("stream") is True

    key = resolved.key
    client_ip = getattr(request.state, "client_ip", None)
    rid = getattr(request.state, "request_id", "")

    try:
        backend = select_backend(resolved.backends, model)
    except ModelNotSupported as e:
        logger.warning("Model not supported", extra={"audit_data": {
            "key_id": key.id,
            "owner_account_id": key.owner_account_id,
            "client_ip": client_ip,
            "model": model,
            "supported_models": e.supported_models,
        }})
        raise

    with internal_errors("confirm_backend"):
        backend = await gateway.resolver.confirm_active(backend)

    with internal_errors("forward"):
        upstream = await gateway.forwarder.forward(
            method=method,
            path=upstream_path,
            headers=request.headers,
            body=raw_body,
            backend=backend,
            query=request.url.query,
            stream=is_stream,
        )

    def usage_event(latency_ms: float, content: bytes | None) -> UsageEvent:
        return UsageEvent(
            key_id=key.id,
            owner_account_id=key.owner_account_id,
            endpoint_path=upstream_path,
            http_status=upstream.status_code,
            latency_ms=latency_ms,
            request_body=body,
            request_bytes=len(raw_body),
            response_content=content,
            streamed=is_stream,
            model=model,
            client_ip=client_ip,
            backend_id=backend.id,
            method=method,
        )

    audit_data = {
        "key_id": key.id,
        "owner_account_id": key.owner_account_id,
        "client_ip": client_ip,
        "backend_id": backend.id,
        "method": method,
        "path": upstream_path,
        "model": model,
        "upstream_status": upstream.status_code,
    }

    if isinstance(upstream, UpstreamStream):
        return _stream_response(upstream, gateway, timer, usage_event, audit_data, rid)

    latency_ms = timer.stop()
    logger.info("Request proxied", extra={"audit_data": {
        **audit_data,
        "stream": False,
        "latency_ms": latency_ms,
        "response_bytes": len(upstream.content),
    }})

    # The client gets the bytes; accounting gets the same immutable bytes.
    gateway.recorder.record(usage_event(latency_ms, upstream.content))

    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=_with_request_id(upstream.headers, rid),
    )


def _with_request_id(headers: dict[str, str], rid: str) -> dict[str, str]:
    # Upstream header names are lower-cased; keep theirs if they sent one
    return {**headers, "x-request-id": headers.get("x-request-id", rid)}


def _stream_response(upstream: UpstreamStream, gateway, timer, usage_event, audit_data, rid) -> StreamingResponse:
    """Pipe upstream chunks through unbuffered; account once the stream closes."""

    async def relay():
        try:
            async for chunk in upstream.iter_bytes():
                yield chunk
        finally:
            latency_ms = timer.stop()
            get_audit_logger().info("Stream completed", extra={"audit_data": {
                **audit_data,
                "stream": True,
                "latency_ms": latency_ms,
                "bytes_relayed": upstream.bytes_relayed,
            }})
            gateway.recorder.record(usage_event(latency_ms, None))

    return StreamingResponse(
        relay(),
        status_code=upstream.status_code,
        headers=_with_request_id(upstream.headers, rid),
    )
