import asyncio
from typing import Coroutine, Optional, Set

from ..utils.logger import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """
    Per-session cancellation signal shared by every task the session spawns.

    Tasks started through ``spawn`` are tracked so that ``cancel`` reaches all
    of them and ``drain`` can wait for their teardown within a grace period.
    """

    def __init__(self, grace_period: float = 2.0):
        self.grace_period = grace_period
        self._cancelled = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def outstanding(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError()

    def spawn(self, coro: Coroutine, *, name: Optional[str] = None) -> asyncio.Task:
        if self._cancelled:
            coro.close()
            raise asyncio.CancelledError()

        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for spawned tasks to finish; True when none are left running."""
        current = asyncio.current_task()
        pending = [t for t in self._tasks if not t.done() and t is not current]
        if not pending:
            return True

        _, still_running = await asyncio.wait(
            pending, timeout=self.grace_period if timeout is None else timeout
        )
        if still_running:
            logger.warning(
                f"{len(still_running)} task(s) still running after cancellation grace period"
            )
        return not still_running
