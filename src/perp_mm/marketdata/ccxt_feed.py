"""Reference book feed built on CCXT Pro.

One watcher task per symbol awaits ``exchange.watch_order_book`` and turns
every update into a pair of side snapshots (``is_snapshot=True``). CCXT Pro
keeps the local book in sync and handles WebSocket reconnects internally.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

import ccxt.pro as ccxtpro

from perp_mm.core.enums import BookSideType
from perp_mm.core.events import BookDelta, PriceLevel

if TYPE_CHECKING:
    from perp_mm.core.config import Settings

logger = logging.getLogger(__name__)

# Venue name -> (CCXT Pro exchange id, exchange options)
VENUES: dict[str, tuple[str, dict[str, Any]]] = {
    "binance-futures": ("binanceusdm", {}),
    "bybit": ("bybit", {"defaultType": "swap"}),
    "okex-swap": ("okx", {"defaultType": "swap"}),
}


def _build_exchange(venue: str) -> Any:
    try:
        exchange_id, options = VENUES[venue]
    except KeyError:
        raise ValueError(f"Unsupported reference venue: {venue}") from None
    cls = getattr(ccxtpro, exchange_id)
    return cls({"enableRateLimit": True, "options": dict(options)})


def book_to_deltas(venue: str, symbol: str, book: dict[str, Any]) -> list[BookDelta]:
    """Normalize a CCXT order book into one snapshot delta per side."""
    ts_ms = book.get("timestamp")
    timestamp = ts_ms / 1000 if ts_ms else time.time()
    return [
        BookDelta(
            venue=venue,
            symbol=symbol,
            side=side,
            levels=[PriceLevel(price=float(p), amount=float(a)) for p, a, *_ in book.get(key, [])],
            timestamp=timestamp,
            is_snapshot=True,
        )
        for side, key in ((BookSideType.BID, "bids"), (BookSideType.ASK, "asks"))
    ]


class CcxtBookFeed:
    """``IBookFeed`` over CCXT Pro order-book subscriptions.

    Parameters
    ----------
    depth:
        Levels requested per side.
    max_consecutive_errors:
        A symbol watcher gives up after this many failures in a row. Only
        that symbol stops; the venue stream ends once every watcher has.
    base_backoff:
        First retry delay in seconds, doubled per consecutive failure.
    """

    def __init__(self, depth: int = 50, max_consecutive_errors: int = 20, base_backoff: float = 1.0) -> None:
        self._depth = depth
        self._max_consecutive_errors = max_consecutive_errors
        self._base_backoff = base_backoff

    @classmethod
    def from_settings(cls, settings: Settings) -> CcxtBookFeed:
        return cls()

    async def stream(self, venue: str, symbols: Sequence[str]) -> AsyncIterator[BookDelta]:
        exchange = _build_exchange(venue)
        # ``None`` marks a watcher that gave up on its symbol.
        queue: asyncio.Queue[list[BookDelta] | None] = asyncio.Queue()
        tasks = [
            asyncio.create_task(self._watch(exchange, venue, symbol, queue), name=f"ccxt:{venue}:{symbol}")
            for symbol in symbols
        ]
        logger.info("Streaming %s books from %s", list(symbols), venue)
        active = len(tasks)
        try:
            while active:
                item = await queue.get()
                if item is None:
                    active -= 1
                    continue
                for delta in item:
                    yield delta
            logger.warning("All %s watchers stopped; ending stream", venue)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            try:
                await exchange.close()
            except Exception:
                logger.exception("Error closing %s connection", venue)

    async def _watch(
        self,
        exchange: Any,
        venue: str,
        symbol: str,
        queue: asyncio.Queue[list[BookDelta] | None],
    ) -> None:
        consecutive_errors = 0
        base_backoff = self._base_backoff
        max_backoff = 60.0
        while True:
            try:
                book = await exchange.watch_order_book(symbol, self._depth)
                consecutive_errors = 0
                queue.put_nowait(book_to_deltas(venue, symbol, book))
            except asyncio.CancelledError:
                raise
            except Exception:
                consecutive_errors += 1
                backoff = min(base_backoff * (2 ** (consecutive_errors - 1)), max_backoff)
                logger.exception(
                    "Error watching %s %s (attempt %d/%d, backoff %.1fs)",
                    venue,
                    symbol,
                    consecutive_errors,
                    self._max_consecutive_errors,
                    backoff,
                )
                if consecutive_errors >= self._max_consecutive_errors:
                    logger.critical(
                        "Watcher %s %s exceeded max errors (%d); stopping.",
                        venue,
                        symbol,
                        self._max_consecutive_errors,
                    )
                    queue.put_nowait(None)
                    return
                await asyncio.sleep(backoff)
