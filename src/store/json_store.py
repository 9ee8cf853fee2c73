"""File-backed document store. Reloads on mtime change, writes atomically."""

import asyncio
import copy
import json
import os
import uuid

from src.store.base import DocumentStore, matches, validate_update


def apply_update(doc: dict, update: dict) -> None:
    """Apply $set / $inc in place, creating intermediate mappings."""
    for op, fields in update.items():
        for path, value in fields.items():
            *parents, leaf = path.split(".")
            node = doc
            for part in parents:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            if op == "$set":
                node[leaf] = copy.deepcopy(value)
            else:  # $inc
                current = node.get(leaf) or 0
                node[leaf] = current + value


class JSONDocumentStore(DocumentStore):
    """Collections live in one JSON object: ``{"client_keys": [...], ...}``.

    With ``path=None`` the store is purely in memory (handy for tests).
    Writes are serialized by an asyncio lock so ``$inc`` stays atomic
    across concurrent requests. File I/O runs in a worker thread while
    the lock is held, so other requests keep being served.
    """

    def __init__(self, path: str | None = None, data: dict | None = None):
        self._path = path
        self._collections: dict[str, list[dict]] = copy.deepcopy(data) if data else {}
        self._last_mtime: float = 0.0
        self._lock = asyncio.Lock()
        self._load()

    def _stale(self) -> bool:
        if self._path is None:
            return False
        try:
            return os.path.getmtime(self._path) != self._last_mtime
        except OSError:
            return False

    def _load(self) -> None:
        """Load collections from the JSON file if it changed on disk."""
        if not self._stale():
            return
        mtime = os.path.getmtime(self._path)
        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)

        self._collections = {
            name: list(docs) for name, docs in data.items() if isinstance(docs, list)
        }
        self._last_mtime = mtime

    async def _reload(self) -> None:
        """Caller holds the lock."""
        if self._stale():
            await asyncio.to_thread(self._load)

    async def _refresh(self) -> None:
        if self._stale():
            async with self._lock:
                await self._reload()

    def _write_file(self, payload: dict) -> float:
        tmp_path = f"{self._path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
        os.replace(tmp_path, self._path)
        return os.path.getmtime(self._path)

    async def _save(self) -> None:
        """Persist under the caller's lock; no writer mutates meanwhile."""
        if self._path is None:
            return
        self._last_mtime = await asyncio.to_thread(self._write_file, self._collections)

    async def find_one(self, collection: str, filter: dict) -> dict | None:
        await self._refresh()
        for doc in self._collections.get(collection, []):
            if matches(doc, filter):
                return copy.deepcopy(doc)
        return None

    async def find(self, collection: str, filter: dict) -> list[dict]:
        await self._refresh()
        return [
            copy.deepcopy(doc)
            for doc in self._collections.get(collection, [])
            if matches(doc, filter)
        ]

    async def insert_one(self, collection: str, document: dict) -> str:
        doc = copy.deepcopy(document)
        doc.setdefault("id", uuid.uuid4().hex)
        async with self._lock:
            await self._reload()
            self._collections.setdefault(collection, []).append(doc)
            await self._save()
        return doc["id"]

    async def update_one(self, collection: str, filter: dict, update: dict) -> bool:
        validate_update(update)
        async with self._lock:
            await self._reload()
            for doc in self._collections.get(collection, []):
                if matches(doc, filter):
                    apply_update(doc, update)
                    await self._save()
                    return True
        return False
