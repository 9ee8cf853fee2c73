"""Gateway container: the explicitly constructed, process-wide components.

Built once in the application lifespan, closed on shutdown, and handed to
route handlers through ``get_gateway``.
"""

from dataclasses import dataclass

import httpx
from fastapi import Request

from src.config.settings import Settings
from src.gateway.resolver import KeyResolver
from src.proxy.forwarder import Forwarder
from src.store.base import DocumentStore
from src.store.factory import build_store
from src.usage.jobs import BackgroundJobQueue
from src.usage.recorder import UsageRecorder


@dataclass
class Gateway:
    store: DocumentStore
    resolver: KeyResolver
    forwarder: Forwarder
    jobs: BackgroundJobQueue
    recorder: UsageRecorder

    async def start(self) -> None:
        self.jobs.start()

    async def close(self) -> None:
        """Drain accounting first; it still needs the store."""
        await self.jobs.stop()
        await self.forwarder.close()
        await self.store.close()


def build_gateway(
    settings: Settings,
    store: DocumentStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Gateway:
    store = store if store is not None else build_store(settings)
    jobs = BackgroundJobQueue(
        maxsize=settings.usage_queue_size,
        workers=settings.usage_workers,
    )
    return Gateway(
        store=store,
        resolver=KeyResolver(store),
        forwarder=Forwarder(
            timeout=settings.upstream_timeout_seconds,
            connect_timeout=settings.upstream_connect_timeout_seconds,
            transport=transport,
        ),
        jobs=jobs,
        recorder=UsageRecorder(store, jobs),
    )


def get_gateway(request: Request) -> Gateway:
    """FastAPI dependency returning the running gateway."""
    return request.app.state.gateway
