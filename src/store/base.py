"""Document store abstraction shared by the JSON and DynamoDB backends."""

from abc import ABC, abstractmethod

UPDATE_OPERATORS = ("$set", "$inc")

_MISSING = object()


class DocumentStore(ABC):
    """Minimal document store: filters are exact-match on (dotted) field paths.

    Updates take ``{"$set": {...}, "$inc": {...}}``. A single
    ``update_one`` call is atomic, which is all the usage counters need.
    """

    @abstractmethod
    async def find_one(self, collection: str, filter: dict) -> dict | None:
        """Return the first document matching ``filter``, or None."""
        ...

    @abstractmethod
    async def find(self, collection: str, filter: dict) -> list[dict]:
        """Return every document matching ``filter``, in stable order."""
        ...

    @abstractmethod
    async def insert_one(self, collection: str, document: dict) -> str:
        """Append a document and return its id."""
        ...

    @abstractmethod
    async def update_one(self, collection: str, filter: dict, update: dict) -> bool:
        """Apply ``update`` to the first match. Returns False if nothing matched."""
        ...

    async def close(self) -> None:
        """Release connections. Override if the backend holds any."""
        pass


def validate_update(update: dict) -> None:
    unknown = [op for op in update if op not in UPDATE_OPERATORS]
    if unknown:
        raise ValueError(f"Unsupported update operators: {', '.join(unknown)}")
    for value in update.get("$inc", {}).values():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("$inc values must be numbers")


def get_path(doc: dict, path: str):
    """Resolve a dotted field path, returning _MISSING when absent."""
    node = doc
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def matches(doc: dict, filter: dict) -> bool:
    return all(get_path(doc, path) == expected for path, expected in filter.items())

