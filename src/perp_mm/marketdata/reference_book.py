"""Full-depth order book of one instrument on one reference venue.

Prices are kept in sorted lists (``bisect``) next to a price -> amount map,
so best-price lookups are O(1) and depth walks never re-sort.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterator

from perp_mm.core.enums import BookSideType
from perp_mm.core.events import BookDelta, PriceLevel


class _Ladder:
    """One side of the book. ``descending`` is True for bids."""

    def __init__(self, descending: bool) -> None:
        self._descending = descending
        self._prices: list[float] = []  # Ascending
        self._amounts: dict[float, float] = {}

    def __len__(self) -> int:
        return len(self._prices)

    def clear(self) -> None:
        self._prices.clear()
        self._amounts.clear()

    def set(self, price: float, amount: float) -> None:
        if amount <= 0:
            if price in self._amounts:
                del self._amounts[price]
                self._prices.pop(bisect.bisect_left(self._prices, price))
            return
        if price not in self._amounts:
            bisect.insort(self._prices, price)
        self._amounts[price] = amount

    def best(self) -> PriceLevel | None:
        if not self._prices:
            return None
        price = self._prices[-1] if self._descending else self._prices[0]
        return PriceLevel(price=price, amount=self._amounts[price])

    def levels(self) -> Iterator[tuple[float, float]]:
        """Walk from the best price outward."""
        prices = reversed(self._prices) if self._descending else iter(self._prices)
        for price in prices:
            yield price, self._amounts[price]

    def depth_weighted(self, quote_size: float) -> float | None:
        remaining = quote_size
        for price, amount in self.levels():
            remaining -= amount * price
            if remaining <= 0:
                return price
        return None


class ReferenceBook:
    """Depth-aware book fed by ``BookDelta`` events.

    Usage::

        book = ReferenceBook()
        book.update(delta)
        book.depth_weighted_bid(50_000.0)
    """

    def __init__(self) -> None:
        self._bids = _Ladder(descending=True)
        self._asks = _Ladder(descending=False)
        self.updated_at: float = 0.0

    def update(self, delta: BookDelta) -> None:
        ladder = self._bids if delta.side == BookSideType.BID else self._asks
        if delta.is_snapshot:
            ladder.clear()
        for level in delta.levels:
            ladder.set(level.price, level.amount)
        self.updated_at = max(self.updated_at, delta.timestamp)

    def best_bid(self) -> PriceLevel | None:
        return self._bids.best()

    def best_ask(self) -> PriceLevel | None:
        return self._asks.best()

    def mid(self) -> float | None:
        bid, ask = self.best_bid(), self.best_ask()
        if bid is None or ask is None:
            return None
        return (bid.price + ask.price) / 2

    def bids(self) -> Iterator[tuple[float, float]]:
        return self._bids.levels()

    def asks(self) -> Iterator[tuple[float, float]]:
        return self._asks.levels()

    def depth_weighted_bid(self, quote_size: float) -> float | None:
        """Bid price reached after accumulating ``quote_size`` of notional.

        Returns ``None`` when the whole side holds less notional than requested.
        """
        return self._bids.depth_weighted(quote_size)

    def depth_weighted_ask(self, quote_size: float) -> float | None:
        """Ask counterpart of :meth:`depth_weighted_bid`."""
        return self._asks.depth_weighted(quote_size)
