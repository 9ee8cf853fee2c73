"""LLM Key Gateway — FastAPI application entry point.

An OpenAI-compatible reverse proxy: clients authenticate with a
gateway-issued key, requests are routed to one of the account's
configured backends using the backend's own credential, and usage is
accounted in the background.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from src.config.settings import get_settings
from src.gateway.errors import GatewayError
from src.gateway.resolver import ResolvedKey
from src.gateway.selector import find_model, list_models
from src.gateway.service import Gateway, build_gateway, get_gateway
from src.logging.audit import get_audit_logger, setup_logging
from src.proxy.handler import proxy_request
from src.security.auth import verify_client_key

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    settings = get_settings()
    setup_logging(settings)
    gateway = build_gateway(settings)
    await gateway.start()
    app.state.gateway = gateway
    get_audit_logger().info("Gateway started")
    yield
    await gateway.close()
    get_audit_logger().info("Gateway stopped")


app = FastAPI(
    title="LLM Key Gateway",
    description="OpenAI-compatible gateway routing client keys to upstream backends",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_envelope(),
        headers={"X-Request-Id": rid} if rid else None,
    )


@app.get("/health")
async def health(request: Request):
    result = {"status": "healthy", "version": VERSION}
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is not None:
        result["usage_jobs"] = {**gateway.jobs.stats.as_dict(), "pending": gateway.jobs.pending}
    return result


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    resolved: ResolvedKey = Depends(verify_client_key),
    gateway: Gateway = Depends(get_gateway),
):
    """Proxy endpoint mirroring the OpenAI chat completions API."""
    return await proxy_request(
        request, resolved, gateway, "/v1/chat/completions", strict_json=True,
    )


@app.post("/v1/completions")
async def completions(
    request: Request,
    resolved: ResolvedKey = Depends(verify_client_key),
    gateway: Gateway = Depends(get_gateway),
):
    """Legacy completions API; a model is mandatory here."""
    return await proxy_request(
        request, resolved, gateway, "/v1/completions", strict_json=True, require_model=True,
    )


@app.api_route("/v1/models", methods=["GET", "POST"])
async def models(
    resolved: ResolvedKey = Depends(verify_client_key),
    gateway: Gateway = Depends(get_gateway),
):
    """Models advertised by the account's active backends, de-duplicated."""
    payload = list_models(resolved.backends)
    gateway.recorder.touch(resolved.key.id)
    return payload


@app.get("/v1/models/{model:path}")
async def retrieve_model(
    model: str,
    resolved: ResolvedKey = Depends(verify_client_key),
    gateway: Gateway = Depends(get_gateway),
):
    payload = find_model(resolved.backends, model)
    gateway.recorder.touch(resolved.key.id)
    return payload


@app.api_route("/v1/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def passthrough(
    path: str,
    request: Request,
    resolved: ResolvedKey = Depends(verify_client_key),
    gateway: Gateway = Depends(get_gateway),
):
    """Catch-all forwarder for the rest of the OpenAI surface."""
    return await proxy_request(request, resolved, gateway, f"/v1/{path}")
