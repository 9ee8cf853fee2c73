"""Usage accounting, run as background jobs after the response is dispatched.

Each forwarded request yields two independent store writes: one appended
UsageRecord and one atomic increment of the key's aggregate counters.
Neither is transactional with the other or with the forward itself.
"""

from dataclasses import dataclass, field
from functools import cached_property

from src.logging.audit import get_audit_logger
from src.store.base import DocumentStore
from src.store.models import CLIENT_KEYS, USAGE_RECORDS, UsageRecord, utc_now
from src.usage.jobs import BackgroundJobQueue
from src.usage.tokens import TokenCounts, count_tokens, parse_json_body


@dataclass
class UsageEvent:
    """Everything accounting needs about one forwarded request."""

    key_id: str
    owner_account_id: str
    endpoint_path: str
    http_status: int
    latency_ms: float
    request_body: dict = field(default_factory=dict)
    request_bytes: int = 0
    response_content: bytes | None = None  # independent copy; None when streamed
    streamed: bool = False
    model: str | None = None
    client_ip: str | None = None
    backend_id: str | None = None
    method: str = "POST"

    @cached_property
    def tokens(self) -> TokenCounts:
        response_body = None if self.streamed else parse_json_body(self.response_content)
        return count_tokens(self.request_body, response_body, streamed=self.streamed)

    def to_record(self) -> UsageRecord:
        tokens = self.tokens
        return UsageRecord(
            key_id=self.key_id,
            owner_account_id=self.owner_account_id,
            endpoint_path=self.endpoint_path,
            http_status=self.http_status,
            tokens_input=tokens.input,
            tokens_output=tokens.output,
            latency_ms=self.latency_ms,
            model=self.model,
            client_ip=self.client_ip,
            backend_id=self.backend_id,
            method=self.method,
            request_bytes=self.request_bytes,
            response_bytes=None if self.streamed else len(self.response_content or b""),
        )


class UsageRecorder:

    def __init__(self, store: DocumentStore, jobs: BackgroundJobQueue):
        self._store = store
        self._jobs = jobs

    def record(self, event: UsageEvent) -> None:
        """Queue both writes for ``event``. Never blocks the caller."""
        self._jobs.submit("usage_record", lambda: self.append_record(event))
        self._jobs.submit("key_usage", lambda: self.increment_key_usage(event.key_id, event.tokens.total))

    def touch(self, key_id: str) -> None:
        """Count a request that carries no tokens (model listing)."""
        self._jobs.submit("key_usage", lambda: self.increment_key_usage(key_id, 0))

    async def append_record(self, event: UsageEvent) -> None:
        await self._store.insert_one(USAGE_RECORDS, event.to_record().to_document())

    async def increment_key_usage(self, key_id: str, tokens: int) -> None:
        now = utc_now().isoformat()
        matched = await self._store.update_one(
            CLIENT_KEYS,
            {"id": key_id},
            {
                "$inc": {"usage.request_count": 1, "usage.token_count": tokens},
                "$set": {"usage.last_used_at": now, "updated_at": now},
            },
        )
        if not matched:
            get_audit_logger().warning(
                "Usage increment matched no key",
                extra={"audit_data": {"key_id": key_id}},
            )
