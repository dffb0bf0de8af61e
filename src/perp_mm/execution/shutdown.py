"""ShutdownController: the forced cleanup path on termination.

Sequence:

1. Request stop on the context and stop every service (no new cycles).
2. Drain in-flight submissions.
3. Wait one full engine interval so transactions already sent can land.
4. Best-effort fresh snapshot.
5. One cancel-all per instrument, batched, submitted and awaited.

Only after step 5 returns may the process exit.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from perp_mm.core.context import EngineContext
from perp_mm.core.models import Instrument
from perp_mm.state.synchronizer import StateSynchronizer

from .batcher import ExecutionBatcher, SubmissionOutcome
from .instructions import CancelAllOrders

logger = logging.getLogger(__name__)


class Stoppable(Protocol):
    async def stop(self) -> None: ...


class ShutdownController:
    """Cancels every resting order across all instruments.

    Parameters
    ----------
    context:
        Engine context whose stop flag is raised first.
    batcher:
        Submits the cancel-all transactions.
    synchronizer:
        Reloads one fresh snapshot before cancelling.
    instruments:
        Every quoted instrument.
    wait_interval:
        Seconds to wait after draining, normally the engine interval.
    """

    def __init__(
        self,
        context: EngineContext,
        batcher: ExecutionBatcher,
        synchronizer: StateSynchronizer,
        instruments: list[Instrument],
        wait_interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._context = context
        self._batcher = batcher
        self._synchronizer = synchronizer
        self._instruments = instruments
        self._wait_interval = wait_interval
        self._sleep = sleep
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    async def cancel_all(self, reason: str = "shutdown") -> list[SubmissionOutcome]:
        """Submit one cancel-all per instrument and await every result."""
        for inst in self._instruments:
            self._batcher.add(
                inst.name,
                [CancelAllOrders(instrument=inst.name, market_index=inst.market_index)],
            )
        self._batcher.flush()
        outcomes = await self._batcher.drain()
        failed = [o for o in outcomes if not o.ok]
        if failed:
            logger.error(
                "Cancel-all (%s) failed for %s",
                reason,
                [name for o in failed for name in o.transaction.instruments],
            )
        else:
            logger.info("Cancel-all (%s) submitted for %d instruments", reason, len(self._instruments))
        return outcomes

    async def shutdown(self, services: list[Stoppable]) -> list[SubmissionOutcome]:
        if self._done:
            logger.warning("Shutdown already completed")
            return []

        logger.info("Shutting down: stopping %d services", len(services))
        self._context.request_stop()
        for service in services:
            try:
                await service.stop()
            except Exception:
                logger.exception("Error stopping %s", type(service).__name__)

        drained = await self._batcher.drain()
        if drained:
            logger.info("Drained %d in-flight submissions", len(drained))

        logger.info("Waiting %.1fs for in-flight transactions to land", self._wait_interval)
        await self._sleep(self._wait_interval)

        try:
            snapshot = await self._synchronizer.poll_once()
        except Exception:
            logger.exception("Failed to reload state before cancel-all")
            snapshot = None
        if snapshot is not None:
            logger.info("%d resting orders before cancel-all", len(snapshot.account.open_orders))

        outcomes = await self.cancel_all()
        self._done = True
        return outcomes
