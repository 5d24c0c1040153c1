"""One-shot startup synchronization.

A StartupGate belongs to a single ``start()`` call. It settles exactly once:
with the engine's port when readiness is reported, with StartupTimeoutError
when the timer fires first, or with whatever error the supervisor
hands to ``fail()``. Later outcomes are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sidecar.errors import EngineError, StartupTimeoutError

logger = logging.getLogger(__name__)


class StartupGate:
    def __init__(
        self,
        timeout: float,
        on_timeout: Callable[[], None] | None = None,
    ) -> None:
        self.timeout = timeout
        self.on_timeout = on_timeout
        self._future: asyncio.Future[int] | None = None
        self._timer: asyncio.TimerHandle | None = None

    def arm(self) -> None:
        """Create the future and start the timeout clock on the running loop."""
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._timer = loop.call_later(self.timeout, self._expire)

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def resolve(self, port: int) -> bool:
        """Settle with the engine port. Returns False if already settled."""
        if not self._settle():
            return False
        self._future.set_result(port)
        return True

    def fail(self, error: EngineError) -> bool:
        """Settle with an error. Returns False if already settled."""
        if not self._settle():
            return False
        self._future.set_exception(error)
        return True

    async def wait(self) -> int:
        """Wait for the outcome. Raises the failure if startup did not succeed."""
        if self._future is None:
            raise RuntimeError("StartupGate.wait() called before arm()")
        return await self._future

    def cancel(self) -> None:
        """Drop the timer and cancel the future if nobody settled it."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._future is not None and not self._future.done():
            self._future.cancel()

    def _settle(self) -> bool:
        if self._future is None or self._future.done():
            return False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return True

    def _expire(self) -> None:
        self._timer = None
        if self._future is None or self._future.done():
            return
        logger.error("Engine did not report readiness within %.3gs", self.timeout)
        self._future.set_exception(StartupTimeoutError(self.timeout))
        if self.on_timeout is not None:
            self.on_timeout()
