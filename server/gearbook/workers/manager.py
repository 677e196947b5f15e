"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Dict

from ..core.config import settings
from .base import BaseWorker
from .offer_expiry_worker import OfferExpiryWorker
from .transfer_worker import TransferWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Manages background workers for the application.

    Coordinates starting, stopping, and monitoring of all background workers.
    """

    def __init__(self):
        self.workers: Dict[str, BaseWorker] = {}
        self._setup_workers()

    def _setup_workers(self) -> None:
        self.workers["offer_expiry"] = OfferExpiryWorker(interval_seconds=settings.offer_expiry_interval_seconds)
        self.workers["transfer"] = TransferWorker(interval_seconds=settings.transfer_interval_seconds)

        logger.info(f"Initialized {len(self.workers)} workers")

    async def start_all(self) -> None:
        """Start all workers."""
        for name, worker in self.workers.items():
            try:
                await worker.start()
            except Exception as e:
                logger.error(f"Failed to start worker {name}: {e!s}", exc_info=True)

        logger.info(f"Started {len(self.workers)} workers")

    async def stop_all(self) -> None:
        """Stop all running workers gracefully."""
        running = {name: worker for name, worker in self.workers.items() if worker.is_running}
        results = await asyncio.gather(*(w.stop() for w in running.values()), return_exceptions=True)

        for name, result in zip(running, results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping worker {name}: {result!s}")

        logger.info("All workers stopped")

    def get_worker_status(self) -> Dict[str, dict]:
        """Per-worker running flag, sweep counters and last error."""
        return {name: worker.status() for name, worker in self.workers.items()}


# Global worker manager instance
worker_manager = WorkerManager()
