"""EngineContext: the shared state passed to every long-lived task.

Each published value has exactly one writer:

- ``snapshot`` and ``equity``: StateSynchronizer
- ``quotes``: BookAggregator
- the stop flag: ShutdownController / signal handlers

Values are replaced as a unit, never patched in place, so readers need no
locks within the single event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from types import MappingProxyType
from typing import Mapping

from .clock import IClock, WallClock
from .models import AccountSnapshot, AggregatedQuote


class EngineContext:
    """Published values plus the cooperative stop flag."""

    def __init__(self, clock: IClock | None = None) -> None:
        self.clock: IClock = clock or WallClock()
        self._snapshot: AccountSnapshot | None = None
        self._equity: float = 0.0
        self._quotes: dict[str, AggregatedQuote] = {}
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Account state (writer: StateSynchronizer)
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> AccountSnapshot | None:
        return self._snapshot

    @property
    def equity(self) -> float:
        return self._equity

    def publish_snapshot(self, snapshot: AccountSnapshot) -> None:
        self._snapshot = snapshot
        self._equity = snapshot.equity

    # ------------------------------------------------------------------
    # Reference quotes (writer: BookAggregator)
    # ------------------------------------------------------------------

    @property
    def quotes(self) -> Mapping[str, AggregatedQuote]:
        return MappingProxyType(self._quotes)

    def quote(self, instrument: str) -> AggregatedQuote | None:
        return self._quotes.get(instrument)

    def publish_quote(self, quote: AggregatedQuote) -> None:
        self._quotes[quote.instrument] = quote

    # ------------------------------------------------------------------
    # Cooperative stop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    async def wait_stopped(self) -> None:
        await self._stop.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep that returns early once a stop has been requested."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
