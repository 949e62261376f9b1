from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from futures_gateway.errors import KeepAliveError


log = logging.getLogger(__name__)

RenewFn = Callable[[], Awaitable[bool]]
FailureFn = Callable[[KeepAliveError], "Awaitable[None] | None"]


class KeepAliveTimer:
    """Runs ``renew_fn`` once per interval until stopped.

    A failed renewal (``renew_fn`` returns False or raises) is fatal: the
    timer records a ``KeepAliveError``, hands it to ``on_failure`` and
    stops scheduling. ``wait()`` re-raises it.
    """

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self.error: KeepAliveError | None = None
        self.renewals = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float, renew_fn: RenewFn, *, on_failure: FailureFn | None = None) -> None:
        if interval <= 0:
            raise ValueError(f"keep-alive interval must be positive, got {interval}")
        if self.running:
            raise RuntimeError("keep-alive timer already running")
        self.error = None
        self.renewals = 0
        self._task = asyncio.create_task(self._run(interval, renew_fn, on_failure), name="listen-key-keepalive")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def wait(self) -> None:
        """Block until the timer ends; raise the recorded ``KeepAliveError`` if it failed."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        if self.error is not None:
            raise self.error

    async def _run(self, interval: float, renew_fn: RenewFn, on_failure: FailureFn | None) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                ok = await renew_fn()
            except Exception as e:
                failure = KeepAliveError(f"listen key renewal failed: {e}")
                failure.__cause__ = e
            else:
                if ok:
                    self.renewals += 1
                    log.debug("listen key renewed (%d)", self.renewals)
                    continue
                failure = KeepAliveError("listen key renewal rejected by exchange")

            self.error = failure
            log.error("%s; user data stream will go stale", failure)
            if on_failure is not None:
                result = on_failure(failure)
                if inspect.isawaitable(result):
                    await result
            return
