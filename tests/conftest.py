"""Shared fixtures for the perp market maker test suite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence

import pytest

from perp_mm.core.clock import SimClock
from perp_mm.core.config import InstrumentConfig, Settings
from perp_mm.core.context import EngineContext
from perp_mm.core.enums import BookSideType, Side
from perp_mm.core.events import BookDelta, PriceLevel
from perp_mm.core.models import (
    AccountSnapshot,
    AggregatedQuote,
    BookLevel,
    Instrument,
    OnChainBookSide,
    PortfolioAccount,
    PriceCache,
    RestingOrder,
)
from perp_mm.execution.sequence import SequenceFence
from perp_mm.ledger.paper import PaperLedger

OWNER = "Owner11111111111111111111111111111111111111"
ACCOUNT = "Account1111111111111111111111111111111111111"
CACHE = "Cache111111111111111111111111111111111111111"
PROGRAM_ID = "FThcgpaJM8WiEbK5rw3i31Ptb8Hm4rQ27TrhfzeR1uUy"


# ---------------------------------------------------------------------------
# Instruments
# ---------------------------------------------------------------------------

def make_instrument_config(
    name: str = "BTC-PERP",
    market_index: int = 0,
    **overrides,
) -> InstrumentConfig:
    """Instrument with 0.01 ticks, 0.001 lots and a 10% size fraction."""
    fields = dict(
        name=name,
        market_index=market_index,
        market=f"{name}-market",
        bids=f"{name}-bids",
        asks=f"{name}-asks",
        tick_size=0.01,
        lot_size=0.001,
        size_fraction=0.1,
        venue_symbols={"venue-a": f"{name}-A", "venue-b": f"{name}-B"},
    )
    fields.update(overrides)
    return InstrumentConfig(**fields)


def make_instrument(name: str = "BTC-PERP", market_index: int = 0, tif: float | None = None, **overrides) -> Instrument:
    return Instrument(config=make_instrument_config(name, market_index, **overrides), time_in_force=tif)


@pytest.fixture
def instrument() -> Instrument:
    return make_instrument()


# ---------------------------------------------------------------------------
# Snapshots and quotes
# ---------------------------------------------------------------------------

def make_snapshot(
    fetched_at: float,
    equity: float = 10_000.0,
    positions: dict[int, float] | None = None,
    orders: Sequence[RestingOrder] = (),
    books: dict[str, tuple[list[tuple[int, int]], list[tuple[int, int]]]] | None = None,
) -> AccountSnapshot:
    """Snapshot with ``books`` as instrument -> (bid levels, ask levels) in lots."""
    bids: dict[str, OnChainBookSide] = {}
    asks: dict[str, OnChainBookSide] = {}
    for name, (bid_levels, ask_levels) in (books or {}).items():
        bids[name] = OnChainBookSide(BookSideType.BID, tuple(BookLevel(p, s) for p, s in bid_levels))
        asks[name] = OnChainBookSide(BookSideType.ASK, tuple(BookLevel(p, s) for p, s in ask_levels))
    return AccountSnapshot(
        fetched_at=fetched_at,
        cache=PriceCache(address=CACHE),
        account=PortfolioAccount(
            address=ACCOUNT,
            owner=OWNER,
            base_positions=dict(positions or {}),
            open_orders=tuple(orders),
        ),
        bids=bids,
        asks=asks,
        equity=equity,
    )


def make_quote(instrument: str, bid: float | None, ask: float | None, updated_at: float) -> AggregatedQuote:
    return AggregatedQuote(instrument=instrument, bid=bid, ask=ask, updated_at=updated_at)


def resting(market_index: int, side: Side, price_lots: int, size_lots: int = 100) -> RestingOrder:
    return RestingOrder(market_index=market_index, side=side, price_lots=price_lots, size_lots=size_lots)


# ---------------------------------------------------------------------------
# Clock, context, ledger
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    return SimClock(start=1_700_000_000.0)


@pytest.fixture
def context(sim_clock) -> EngineContext:
    return EngineContext(sim_clock)


@pytest.fixture
def paper_ledger() -> PaperLedger:
    return PaperLedger(account=ACCOUNT)


@pytest.fixture
def fence(paper_ledger, sim_clock) -> SequenceFence:
    return SequenceFence(
        ledger=paper_ledger,
        owner=OWNER,
        program_id=PROGRAM_ID,
        clock=sim_clock,
        instruments=["BTC-PERP", "ETH-PERP"],
        backoff=0.001,
        max_backoff=0.004,
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def make_settings(**overrides) -> Settings:
    data = dict(
        ledger={"cluster": "testnet", "owner": OWNER, "account": ACCOUNT, "cache": CACHE},
        engine={"interval": 0.05, "state_refresh_interval": 0.01, "batch": 2, "freshness_margin": 2.0},
        listeners={"venues": ["venue-a", "venue-b"]},
        instruments=[
            make_instrument_config("BTC-PERP", 0).model_dump(),
            make_instrument_config("ETH-PERP", 1).model_dump(),
        ],
    )
    data.update(overrides)
    return Settings(**data)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Book feed
# ---------------------------------------------------------------------------

class FakeBookFeed:
    """``IBookFeed`` driven by the test through per-venue queues."""

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[BookDelta | Exception]] = {}
        self.subscriptions: dict[str, list[str]] = {}

    def _queue(self, venue: str) -> asyncio.Queue[BookDelta | Exception]:
        return self._queues.setdefault(venue, asyncio.Queue())

    def push(self, delta: BookDelta) -> None:
        self._queue(delta.venue).put_nowait(delta)

    def fail(self, venue: str, exc: Exception) -> None:
        self._queue(venue).put_nowait(exc)

    async def stream(self, venue: str, symbols: Sequence[str]) -> AsyncIterator[BookDelta]:
        self.subscriptions[venue] = list(symbols)
        queue = self._queue(venue)
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                raise item
            yield item


def side_snapshot(
    venue: str,
    symbol: str,
    side: BookSideType,
    levels: list[tuple[float, float]],
    timestamp: float = 1_700_000_000.0,
) -> BookDelta:
    return BookDelta(
        venue=venue,
        symbol=symbol,
        side=side,
        levels=[PriceLevel(price=p, amount=a) for p, a in levels],
        timestamp=timestamp,
        is_snapshot=True,
    )


@pytest.fixture
def book_feed() -> FakeBookFeed:
    return FakeBookFeed()


async def settle(rounds: int = 5) -> None:
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
