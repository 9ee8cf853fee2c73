"""Client key authentication.

Validates the ``Authorization: Bearer <key>`` header and resolves the key
to its account's usable backends.
"""

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.gateway.errors import AuthError, InternalError
from src.gateway.resolver import ResolvedKey
from src.gateway.service import Gateway, get_gateway
from src.logging.audit import generate_request_id, get_audit_logger, mask_secret, request_id_var

bearer_scheme = HTTPBearer(auto_error=False)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


async def verify_client_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
    gateway: Gateway = Depends(get_gateway),
) -> ResolvedKey:
    """FastAPI dependency: bearer key -> ResolvedKey, or AuthError (401)."""
    rid = generate_request_id()
    request_id_var.set(rid)
    request.state.request_id = rid
    request.state.client_ip = _client_ip(request)

    logger = get_audit_logger()

    if credentials is None:
        logger.warning("Missing or malformed Authorization header", extra={"audit_data": {
            "client_ip": request.state.client_ip,
            "path": request.url.path,
        }})
        raise AuthError("Authentication failed. Please provide a valid API key.")

    try:
        resolved = await gateway.resolver.resolve(credentials.credentials)
    except Exception as e:
        logger.exception("Key resolution failed", extra={"audit_data": {
            "client_ip": request.state.client_ip,
        }})
        raise InternalError() from e

    if resolved is None:
        logger.warning("Invalid API key", extra={"audit_data": {
            "client_ip": request.state.client_ip,
            "key_hint": mask_secret(credentials.credentials),
            "path": request.url.path,
        }})
        raise AuthError()

    return resolved
