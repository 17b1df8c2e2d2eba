"""Background task runner with a shared busy indicator and a single alert slot."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Optional, Set

from vmkeeper.exceptions import DownloadCancelledError
from vmkeeper.models import AlertMessage
from vmkeeper.utils import log


class TaskRunner:
    """Runs long operations off the caller's path.

    ``busy`` stays true while at least one ``run_busy`` operation is in flight.
    A failure of any operation becomes the pending alert, replacing one that
    has not been acknowledged yet.
    """

    def __init__(self) -> None:
        self._busy_count = 0
        self.alert: Optional[AlertMessage] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._busy_count > 0

    def run_busy(self, work: Any) -> asyncio.Task:
        return self._schedule(work, busy=True)

    def run(self, work: Any) -> asyncio.Task:
        return self._schedule(work, busy=False)

    def _schedule(self, work: Any, busy: bool) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._execute(work, busy))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _execute(self, work: Any, busy: bool) -> None:
        if busy:
            self._busy_count += 1
        try:
            await self._invoke(work)
        except DownloadCancelledError as exc:
            log("INFO", str(exc))
        except Exception as exc:  # noqa: BLE001
            log("ERROR", str(exc))
            self.show_alert(str(exc) or exc.__class__.__name__)
        finally:
            if busy:
                self._busy_count -= 1

    @staticmethod
    async def _invoke(work: Any) -> Any:
        if inspect.isawaitable(work):
            return await work
        if inspect.iscoroutinefunction(work):
            return await work()
        if not callable(work):
            raise TypeError(f"Cannot run {work!r}")
        result = await asyncio.to_thread(work)
        if inspect.isawaitable(result):
            return await result
        return result

    def show_alert(self, message: str) -> None:
        self.alert = AlertMessage(message)

    def acknowledge_alert(self) -> Optional[AlertMessage]:
        alert, self.alert = self.alert, None
        return alert

    async def drain(self) -> None:
        """Wait until every scheduled operation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
