"""Factory for document store backends."""

from src.config.settings import Settings
from src.store.base import DocumentStore
from src.store.json_store import JSONDocumentStore


def build_store(settings: Settings) -> DocumentStore:
    """Construct the store named by ``settings.store_backend``.

    The caller owns the returned store and must ``close()`` it.
    """
    backend = settings.store_backend

    if backend == "json":
        return JSONDocumentStore(settings.store_path)

    if backend == "dynamodb":
        # Lazy import to avoid boto3 dependency when not needed
        from src.store.dynamodb_store import DynamoDBDocumentStore
        return DynamoDBDocumentStore(
            tables=settings.dynamodb_tables,
            region=settings.aws_region,
        )

    raise ValueError(f"Unknown store backend: {backend}")
