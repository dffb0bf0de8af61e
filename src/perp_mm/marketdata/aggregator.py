"""BookAggregator: fans reference subscriptions out to listener units and
publishes their merged quotes into the engine context.

The aggregator is the single writer of ``EngineContext.quotes``. Units talk
to it only through channels: ``QuoteUpdate`` messages in, ``EquityUpdate``
pushes out.
"""

from __future__ import annotations

import asyncio
import logging

from perp_mm.core.config import InstrumentConfig
from perp_mm.core.context import EngineContext
from perp_mm.core.events import EquityUpdate, QuoteUpdate
from perp_mm.core.interfaces import IBookFeed
from perp_mm.core.models import AggregatedQuote

from .listener import ListenerUnit, listener_groups

logger = logging.getLogger(__name__)


class BookAggregator:
    """Runs listener units and forwards their quotes to the engine.

    Parameters
    ----------
    context:
        Engine context receiving ``AggregatedQuote`` values.
    feed:
        Book-change stream provider shared by all units.
    instruments:
        Every quoted instrument.
    venues:
        Reference venues to subscribe to.
    groups:
        Instrument name groups; each group gets its own unit and leftover
        instruments share one more.
    resubscribe_backoff, max_resubscribe_backoff:
        Passed to every unit.
    """

    def __init__(
        self,
        context: EngineContext,
        feed: IBookFeed,
        instruments: list[InstrumentConfig],
        venues: list[str],
        groups: list[list[str]] | None = None,
        resubscribe_backoff: float = 1.0,
        max_resubscribe_backoff: float = 30.0,
    ) -> None:
        self._context = context
        self._channel: asyncio.Queue[QuoteUpdate] = asyncio.Queue()
        self._forward_task: asyncio.Task[None] | None = None

        by_name = {inst.name: inst for inst in instruments}
        self.units: list[ListenerUnit] = [
            ListenerUnit(
                name=f"unit-{i}",
                instruments=[by_name[n] for n in group],
                venues=venues,
                feed=feed,
                outbox=self._channel,
                resubscribe_backoff=resubscribe_backoff,
                max_resubscribe_backoff=max_resubscribe_backoff,
            )
            for i, group in enumerate(listener_groups(groups or [], list(by_name)))
        ]

    async def start(self) -> None:
        for unit in self.units:
            await unit.start()
        self._forward_task = asyncio.create_task(self._forward(), name="aggregator:forward")
        logger.info("BookAggregator started with %d listener units", len(self.units))

    async def stop(self) -> None:
        for unit in self.units:
            await unit.stop()
        if self._forward_task is not None:
            self._forward_task.cancel()
            await asyncio.gather(self._forward_task, return_exceptions=True)
            self._forward_task = None
        logger.info("BookAggregator stopped")

    def push_equity(self, equity: float) -> None:
        """Broadcast current equity to every unit."""
        message = EquityUpdate(equity=equity)
        for unit in self.units:
            unit.send_equity(message)

    async def _forward(self) -> None:
        while True:
            update = await self._channel.get()
            try:
                self.apply(update)
            except Exception:
                logger.exception("Failed to apply quote update for %s", update.instrument)

    def drain_pending(self) -> int:
        """Apply every queued update without waiting. Returns the count."""
        count = 0
        while not self._channel.empty():
            self.apply(self._channel.get_nowait())
            count += 1
        return count

    def apply(self, update: QuoteUpdate) -> AggregatedQuote:
        bid, ask = update.agg_bid, update.agg_ask
        if bid is not None and ask is not None and bid > ask:
            logger.warning(
                "Crossed aggregate for %s (bid=%s ask=%s); publishing undefined",
                update.instrument,
                bid,
                ask,
            )
            bid = ask = None
        quote = AggregatedQuote(
            instrument=update.instrument,
            bid=bid,
            ask=ask,
            updated_at=update.timestamp,
        )
        self._context.publish_quote(quote)
        return quote
