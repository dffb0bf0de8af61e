"""Listener unit: streams reference books for a group of instruments.

Architecture
------------
* One asyncio task per venue. Each task consumes the venue's lazy
  ``BookDelta`` stream and keeps one ``ReferenceBook`` per instrument.
* After every delta the unit recomputes the instrument's worst-case
  depth-weighted bid/ask across all venues and emits a ``QuoteUpdate`` on
  its outbound channel.
* Equity arrives through ``send_equity`` (last write wins) and sizes the
  depth queries.
* A venue stream that fails or ends is logged and its books are cleared so
  they stop contributing; the other venues keep delivering. The venue is
  resubscribed with capped exponential backoff while the unit runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from perp_mm.core.config import InstrumentConfig
from perp_mm.core.events import BookDelta, EquityUpdate, QuoteUpdate
from perp_mm.core.interfaces import IBookFeed
from perp_mm.observability.metrics import record_venue_resubscription

from .reference_book import ReferenceBook

logger = logging.getLogger(__name__)


def list_min(values: Iterable[float | None]) -> float | None:
    defined = [v for v in values if v is not None]
    return min(defined) if defined else None


def list_max(values: Iterable[float | None]) -> float | None:
    defined = [v for v in values if v is not None]
    return max(defined) if defined else None


def listener_groups(groups: list[list[str]], names: list[str]) -> list[list[str]]:
    """Configured groups plus one group for every instrument left over."""
    grouped = {name for group in groups for name in group}
    result = [list(group) for group in groups if group]
    rest = [name for name in names if name not in grouped]
    if rest:
        result.append(rest)
    return result


class ListenerUnit:
    """Owns the reference books of one instrument group.

    Parameters
    ----------
    name:
        Label used in logs and task names.
    instruments:
        Instruments handled by this unit.
    venues:
        Venues to subscribe to. An instrument is subscribed on a venue only
        if it has a native symbol for it.
    feed:
        Book-change stream provider.
    outbox:
        Channel receiving one ``QuoteUpdate`` per book update.
    resubscribe_backoff:
        Delay before the first resubscription of a failed venue, doubled
        per consecutive failure.
    max_resubscribe_backoff:
        Cap on that delay.
    """

    def __init__(
        self,
        name: str,
        instruments: list[InstrumentConfig],
        venues: list[str],
        feed: IBookFeed,
        outbox: asyncio.Queue[QuoteUpdate],
        resubscribe_backoff: float = 1.0,
        max_resubscribe_backoff: float = 30.0,
    ) -> None:
        self.name = name
        self._resubscribe_backoff = resubscribe_backoff
        self._max_resubscribe_backoff = max_resubscribe_backoff
        self._running = False
        self._instruments = {inst.name: inst for inst in instruments}
        self._feed = feed
        self._outbox = outbox
        self._equity = 0.0
        self._tasks: list[asyncio.Task[None]] = []
        # Venues down since their last failure, until the next delta arrives.
        self.failed_venues: set[str] = set()

        # venue -> native symbol -> instrument name
        self._symbol_map: dict[str, dict[str, str]] = {}
        # instrument -> venue -> book
        self._books: dict[str, dict[str, ReferenceBook]] = {n: {} for n in self._instruments}
        for venue in venues:
            mapping = {
                inst.venue_symbols[venue]: inst.name
                for inst in instruments
                if venue in inst.venue_symbols
            }
            if not mapping:
                continue
            self._symbol_map[venue] = mapping
            for inst_name in mapping.values():
                self._books[inst_name][venue] = ReferenceBook()

    @property
    def equity(self) -> float:
        return self._equity

    @property
    def instruments(self) -> list[str]:
        return list(self._instruments)

    def send_equity(self, update: EquityUpdate) -> None:
        self._equity = update.equity

    def book(self, instrument: str, venue: str) -> ReferenceBook | None:
        return self._books.get(instrument, {}).get(venue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        for venue in self._symbol_map:
            task = asyncio.create_task(self._run_venue(venue), name=f"listener:{self.name}:{venue}")
            self._tasks.append(task)
        logger.info(
            "ListenerUnit %s started: instruments=%s venues=%s",
            self.name,
            list(self._instruments),
            list(self._symbol_map),
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Stream processing
    # ------------------------------------------------------------------

    async def _run_venue(self, venue: str) -> None:
        symbols = list(self._symbol_map[venue])
        attempts = 0
        while self._running:
            try:
                async for delta in self._feed.stream(venue, symbols):
                    attempts = 0
                    self.failed_venues.discard(venue)
                    update = self.on_delta(delta)
                    if update is not None:
                        self._outbox.put_nowait(update)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Venue stream %s failed in unit %s; other venues continue", venue, self.name)
            else:
                logger.warning("Venue stream %s ended in unit %s", venue, self.name)
            self._clear_venue(venue)

            attempts += 1
            backoff = min(self._resubscribe_backoff * (2 ** (attempts - 1)), self._max_resubscribe_backoff)
            logger.info(
                "Resubscribing to %s in unit %s in %.1fs (attempt %d)",
                venue,
                self.name,
                backoff,
                attempts,
            )
            await asyncio.sleep(backoff)
            record_venue_resubscription(venue)

    def _clear_venue(self, venue: str) -> None:
        self.failed_venues.add(venue)
        for inst_name in self._symbol_map.get(venue, {}).values():
            self._books[inst_name][venue] = ReferenceBook()
            self._outbox.put_nowait(self.aggregate(inst_name))

    def on_delta(self, delta: BookDelta) -> QuoteUpdate | None:
        """Apply one delta and return the instrument's new aggregate."""
        inst_name = self._symbol_map.get(delta.venue, {}).get(delta.symbol)
        if inst_name is None:
            logger.debug("Ignoring delta for unmapped symbol %s on %s", delta.symbol, delta.venue)
            return None
        self._books[inst_name][delta.venue].update(delta)
        return self.aggregate(inst_name)

    def quote_size(self, instrument: str) -> float:
        inst = self._instruments[instrument]
        if inst.reference_depth_quote:
            return inst.reference_depth_quote
        return self._equity * inst.size_fraction

    def aggregate(self, instrument: str) -> QuoteUpdate:
        """Worst bid (min) and worst ask (max) across venues."""
        books = self._books[instrument].values()
        size = self.quote_size(instrument)
        return QuoteUpdate(
            instrument=instrument,
            agg_bid=list_min(book.depth_weighted_bid(size) for book in books),
            agg_ask=list_max(book.depth_weighted_ask(size) for book in books),
            timestamp=max((book.updated_at for book in books), default=0.0),
        )
