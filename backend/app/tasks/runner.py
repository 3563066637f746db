import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


CoroFactory = Callable[[], Awaitable[None]]


class BackgroundRunner:
    """Runs detached fire-and-forget tasks (cache writes) within the FastAPI process."""

    def __init__(self, max_parallel: int = 4) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._max_parallel = max(1, max_parallel)
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._semaphore = asyncio.Semaphore(self._max_parallel)
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._semaphore = None
        self._loop = None

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def submit(self, coro_factory: CoroFactory) -> None:
        if not self._running or self._loop is None or self._semaphore is None:
            raise RuntimeError("BackgroundRunner not running")
        semaphore = self._semaphore

        async def wrapper() -> None:
            async with semaphore:
                try:
                    await coro_factory()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Unhandled error in background task")

        task = self._loop.create_task(wrapper())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
