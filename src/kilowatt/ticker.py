"""Recurring background jobs."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .logging_utils import log_error

logger = logging.getLogger(__name__)


class Ticker:
    """
    Runs ``callback`` every ``interval`` seconds in its own task.

    A failing callback is logged and the schedule continues. Changing ``interval``
    takes effect after the current sleep.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.run_immediately = run_immediately
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"ticker-{self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.callback()
            except Exception as e:
                log_error(logger, "ticker_error", f"{self.name} tick failed: {e}", exc_info=e)
            await asyncio.sleep(self.interval)
