"""Delivery worker — polls the delivery queue and runs due attempts.

Many workers (in one or many processes) may share the same queue: claiming
is atomic, so each due notification is handed to exactly one worker.  Every
``sweep_interval`` seconds a worker also re-drives notifications left in
`sending` by a worker that died mid-attempt.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

from herald.application.services.orchestrator import DeliveryOrchestrator
from herald.ports.outbound import DeliveryQueue
from herald.shared.observability.metrics import QUEUE_DEPTH

logger = structlog.get_logger(__name__)


class DeliveryWorker:
    def __init__(
        self,
        orchestrator: DeliveryOrchestrator,
        queue: DeliveryQueue,
        *,
        concurrency: int = 10,
        poll_interval: float = 0.5,
        claim_batch: int = 20,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._orchestrator = orchestrator
        self._queue = queue
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._claim_batch = claim_batch
        self._sweep_interval = sweep_interval
        self._last_sweep: float | None = None
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> int:
        """Claim due notifications and process them; returns how many were claimed."""
        claimed = await self._queue.claim_due(self._clock(), self._claim_batch)
        if not claimed:
            return 0

        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(notification_id: str) -> None:
            async with semaphore:
                try:
                    await self._orchestrator.process(notification_id)
                except Exception as exc:
                    logger.exception("worker_process_failed", notification_id=notification_id, error=str(exc))

        await asyncio.gather(*(run(nid) for nid in claimed))
        QUEUE_DEPTH.set(await self._queue.size())
        return len(claimed)

    async def sweep(self) -> int:
        """Recover stalled `sending` notifications; returns how many were settled."""
        self._last_sweep = self._clock()
        return await self._orchestrator.sweep_stalled(self._claim_batch)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("delivery_worker_started", concurrency=self._concurrency, poll_interval=self._poll_interval)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                processed = await self.run_once()
            except Exception as exc:
                logger.warning("delivery_worker_poll_error", error=str(exc))
                processed = 0
            if self._last_sweep is None or self._clock() - self._last_sweep >= self._sweep_interval:
                try:
                    await self.sweep()
                except Exception as exc:
                    logger.warning("delivery_worker_sweep_error", error=str(exc))
            # Keep draining while a full batch came back
            if processed < self._claim_batch:
                await asyncio.sleep(self._poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("delivery_worker_stopped")
