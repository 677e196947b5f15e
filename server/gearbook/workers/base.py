"""Base class for periodic maintenance jobs over the reservation store."""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.database import async_session_factory
from ..core.observability import get_logger


class BaseWorker(ABC):
    """
    Periodic job that opens a fresh session for every sweep.

    ``run_once`` performs a single sweep and keeps bookkeeping for the
    readiness endpoint; ``start`` schedules it every ``interval_seconds``
    on the event loop. A failing sweep is logged and retried after a full
    interval.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
        clock: Clock = system_clock,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self.clock = clock
        self.log = get_logger(f"worker.{name}")

        self.sweeps = 0
        self.failures = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def process(self, db: AsyncSession) -> Any:
        """Do one sweep inside ``db``; the return value is handed back by ``run_once``."""

    async def run_once(self) -> Any:
        self.last_run_at = self.clock.now()
        try:
            async with self.session_factory() as db:
                result = await self.process(db)
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            raise
        self.sweeps += 1
        self.last_error = None
        return result

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "sweeps": self.sweeps,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() + "Z" if self.last_run_at else None,
            "last_error": self.last_error,
        }

    async def start(self) -> None:
        if self._running:
            self.log.warning("worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        self.log.info("worker_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.log.info("worker_stopped", sweeps=self.sweeps, failures=self.failures)

    async def _loop(self) -> None:
        while self._running:
            started = time.perf_counter()
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                self.log.exception("worker_sweep_failed")
                await asyncio.sleep(self.interval_seconds)
                continue

            elapsed = time.perf_counter() - started
            self.log.debug("worker_sweep_completed", duration_seconds=round(elapsed, 3))
            await asyncio.sleep(max(0.0, self.interval_seconds - elapsed))
