"""Record types stored in the credential store.

Documents coming out of the store are loosely typed dicts. Each record
type validates its document in ``from_document`` and raises
``MalformedDocumentError`` instead of letting missing fields leak
further into the request path.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

CLIENT_KEYS = "client_keys"
BACKEND_CONFIGS = "backend_configs"
USAGE_RECORDS = "usage_records"


class MalformedDocumentError(ValueError):
    """A stored document does not match its record type."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require(doc: dict, name: str, kind: str):
    if name not in doc or doc[name] is None:
        raise MalformedDocumentError(f"{kind} document missing '{name}'")
    return doc[name]


def _as_str(doc: dict, name: str, kind: str) -> str:
    value = _require(doc, name, kind)
    if not isinstance(value, str) or not value:
        raise MalformedDocumentError(f"{kind} field '{name}' must be a non-empty string")
    return value


def _as_bool(doc: dict, name: str, kind: str, default: bool | None = None) -> bool:
    if doc.get(name) is None and default is not None:
        return default
    value = _require(doc, name, kind)
    if not isinstance(value, bool):
        raise MalformedDocumentError(f"{kind} field '{name}' must be a boolean")
    return value


def _as_int(value, name: str, kind: str) -> int:
    # DynamoDB hands numbers back as Decimal
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise MalformedDocumentError(f"{kind} field '{name}' must be a number")
    return int(value)


def _as_datetime(value, name: str, kind: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise MalformedDocumentError(f"{kind} field '{name}' is not an ISO-8601 timestamp")
    else:
        raise MalformedDocumentError(f"{kind} field '{name}' must be a timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class KeyUsage:
    request_count: int = 0
    token_count: int = 0
    last_used_at: datetime | None = None

    @classmethod
    def from_document(cls, doc) -> "KeyUsage":
        if doc is None:
            return cls()
        if not isinstance(doc, dict):
            raise MalformedDocumentError("ClientKey field 'usage' must be a mapping")
        return cls(
            request_count=_as_int(doc.get("request_count", 0), "usage.request_count", "ClientKey"),
            token_count=_as_int(doc.get("token_count", 0), "usage.token_count", "ClientKey"),
            last_used_at=_as_datetime(doc.get("last_used_at"), "usage.last_used_at", "ClientKey"),
        )


@dataclass
class ClientKey:
    id: str
    secret_value: str
    owner_account_id: str
    active: bool = True
    name: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    usage: KeyUsage = field(default_factory=KeyUsage)

    @classmethod
    def from_document(cls, doc: dict) -> "ClientKey":
        kind = "ClientKey"
        return cls(
            id=_as_str(doc, "id", kind),
            secret_value=_as_str(doc, "secret_value", kind),
            owner_account_id=_as_str(doc, "owner_account_id", kind),
            active=_as_bool(doc, "active", kind),
            name=doc.get("name") or "",
            created_at=_as_datetime(doc.get("created_at"), "created_at", kind),
            updated_at=_as_datetime(doc.get("updated_at"), "updated_at", kind),
            usage=KeyUsage.from_document(doc.get("usage")),
        )


@dataclass
class BackendConfig:
    id: str
    owner_account_id: str
    display_name: str
    base_url: str
    backend_secret: str
    active: bool = True
    supported_models: list[str] = field(default_factory=list)  # membership matters, not order
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        self.supported_models = list(dict.fromkeys(self.supported_models))

    def supports(self, model: str) -> bool:
        return model in self.supported_models

    @classmethod
    def from_document(cls, doc: dict) -> "BackendConfig":
        kind = "BackendConfig"
        models = doc.get("supported_models") or []
        # DynamoDB string sets come back as python sets
        if isinstance(models, (set, frozenset)):
            models = sorted(models)
        if not isinstance(models, list) or not all(isinstance(m, str) for m in models):
            raise MalformedDocumentError(f"{kind} field 'supported_models' must be a list of strings")
        backend_id = _as_str(doc, "id", kind)
        return cls(
            id=backend_id,
            owner_account_id=_as_str(doc, "owner_account_id", kind),
            display_name=doc.get("display_name") or backend_id,
            base_url=_as_str(doc, "base_url", kind),
            backend_secret=_as_str(doc, "backend_secret", kind),
            active=_as_bool(doc, "active", kind),
            supported_models=models,
            created_at=_as_datetime(doc.get("created_at"), "created_at", kind),
            updated_at=_as_datetime(doc.get("updated_at"), "updated_at", kind),
        )


@dataclass
class UsageRecord:
    key_id: str
    owner_account_id: str
    endpoint_path: str
    http_status: int
    tokens_input: int = 0
    tokens_output: int | None = None  # None when the response was streamed
    latency_ms: float = 0.0
    model: str | None = None
    client_ip: str | None = None
    backend_id: str | None = None
    method: str = "POST"
    request_bytes: int = 0
    response_bytes: int | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_document(self) -> dict:
        return {
            "key_id": self.key_id,
            "owner_account_id": self.owner_account_id,
            "timestamp": _iso(self.timestamp),
            "endpoint_path": self.endpoint_path,
            "model": self.model,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "latency_ms": self.latency_ms,
            "http_status": self.http_status,
            "client_ip": self.client_ip,
            "backend_id": self.backend_id,
            "method": self.method,
            "request_bytes": self.request_bytes,
            "response_bytes": self.response_bytes,
        }
