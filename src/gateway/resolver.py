"""Key resolution: presented client key -> key record + usable backends."""

from dataclasses import dataclass

from src.gateway.errors import BackendInactive
from src.logging.audit import get_audit_logger
from src.store.base import DocumentStore
from src.store.models import (
    BACKEND_CONFIGS,
    CLIENT_KEYS,
    BackendConfig,
    ClientKey,
    MalformedDocumentError,
)


@dataclass
class ResolvedKey:
    key: ClientKey
    backends: list[BackendConfig]


class KeyResolver:
    """Read-only lookups against the credential store.

    Nothing is cached: activation changes take effect on the next request.
    """

    def __init__(self, store: DocumentStore):
        self._store = store

    async def resolve(self, presented_key: str) -> ResolvedKey | None:
        """Return the active key and its account's active backends.

        None means the key is unknown, inactive, malformed, or has no
        usable backend.
        """
        logger = get_audit_logger()

        doc = await self._store.find_one(
            CLIENT_KEYS, {"secret_value": presented_key, "active": True}
        )
        if doc is None:
            return None

        try:
            key = ClientKey.from_document(doc)
        except MalformedDocumentError as e:
            logger.error("Malformed client key document", extra={"audit_data": {
                "key_id": doc.get("id"),
                "reason": str(e),
            }})
            return None

        backend_docs = await self._store.find(
            BACKEND_CONFIGS, {"owner_account_id": key.owner_account_id, "active": True}
        )
        backends = []
        for backend_doc in backend_docs:
            try:
                backends.append(BackendConfig.from_document(backend_doc))
            except MalformedDocumentError as e:
                logger.error("Malformed backend config skipped", extra={"audit_data": {
                    "backend_id": backend_doc.get("id"),
                    "owner_account_id": key.owner_account_id,
                    "reason": str(e),
                }})

        if not backends:
            return None

        return ResolvedKey(key=key, backends=backends)

    async def confirm_active(self, backend: BackendConfig) -> BackendConfig:
        """Re-read the backend right before forwarding.

        Raises BackendInactive if it was deactivated or removed after
        resolution.
        """
        doc = await self._store.find_one(BACKEND_CONFIGS, {"id": backend.id})
        if doc is None:
            raise BackendInactive()
        try:
            current = BackendConfig.from_document(doc)
        except MalformedDocumentError:
            raise BackendInactive()
        if not current.active or current.owner_account_id != backend.owner_account_id:
            raise BackendInactive()
        return current
