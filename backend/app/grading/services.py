import logging
from dataclasses import dataclass

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .db import GradingStore
from .queue_manager import GradingQueue
from .rate_limiter import RateLimiter
from .sandbox_runner import SandboxExecutor

logger = logging.getLogger(__name__)


@dataclass
class GradingServices:
    """Everything the routers need, built once at startup and passed around."""
    settings: Settings
    store: GradingStore
    executor: SandboxExecutor
    queue: GradingQueue
    rate_limiter: RateLimiter

    @classmethod
    def from_settings(cls, settings: Settings) -> "GradingServices":
        store = GradingStore.from_url(settings.database_url)
        executor = SandboxExecutor(
            memory_limit=settings.sandbox_memory_limit,
            nano_cpus=settings.sandbox_nano_cpus,
        )
        return cls(
            settings=settings,
            store=store,
            executor=executor,
            queue=GradingQueue(store, executor, settings),
            rate_limiter=RateLimiter(3),
        )

    async def start(self):
        self.store.create_schema()
        removed = await run_in_threadpool(self.executor.cleanup_orphans)
        if removed:
            logger.info(f"Removed {removed} orphaned sandbox container(s).")
        await self.queue.start()

    async def stop(self):
        await self.queue.shutdown()
        self.store.dispose()


def get_services(request: Request) -> GradingServices:
    return request.app.state.services
