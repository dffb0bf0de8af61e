"""Core domain models used across the market maker.

Snapshot types are immutable (``frozen=True``). A new ``AccountSnapshot`` is
built on every successful poll and replaces the previous one as a unit, so a
reader holding a reference always sees book sides and account state from the
same poll cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .config import InstrumentConfig
from .enums import BookSideType, Side


# ---------------------------------------------------------------------------
# Instrument
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instrument:
    """A tradable perpetual market plus its immutable risk parameters."""

    config: InstrumentConfig
    time_in_force: float | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def market_index(self) -> int:
        return self.config.market_index

    def price_to_lots(self, price: float) -> int:
        return round(price / self.config.tick_size)

    def size_to_lots(self, size: float) -> int:
        return round(size / self.config.lot_size)


# ---------------------------------------------------------------------------
# On-chain book
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BookLevel:
    price_lots: int
    size_lots: int


@dataclass(frozen=True)
class OnChainBookSide:
    """One decoded side of an on-chain order book, best level first."""

    side: BookSideType
    levels: tuple[BookLevel, ...] = ()

    def best(self) -> BookLevel | None:
        return self.levels[0] if self.levels else None


@dataclass(frozen=True)
class RestingOrder:
    """An open order of our own account as recorded in the portfolio account."""

    market_index: int
    side: Side
    price_lots: int
    size_lots: int
    client_order_id: int = 0


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceCache:
    """Decoded oracle/price cache. Contents are decoder-specific."""

    address: str
    prices: tuple[float, ...] = ()
    data: Any = None


@dataclass(frozen=True)
class SubAccount:
    """An in-basket sub-account (open orders on a spot market)."""

    address: str
    data: Any = None


@dataclass(frozen=True)
class PortfolioAccount:
    """Decoded portfolio account of the owner."""

    address: str
    owner: str
    base_positions: dict[int, float] = field(default_factory=dict)  # market_index -> base units
    open_orders: tuple[RestingOrder, ...] = ()
    sub_account_keys: tuple[str, ...] = ()  # In-basket, non-empty keys only
    sub_accounts: dict[str, SubAccount] = field(default_factory=dict)
    delegate: str | None = None
    data: Any = None

    def base_position(self, market_index: int) -> float:
        return self.base_positions.get(market_index, 0.0)

    def orders_for(self, market_index: int) -> list[RestingOrder]:
        return [o for o in self.open_orders if o.market_index == market_index]

    def is_controlled_by(self, signer: str) -> bool:
        return signer == self.owner or (self.delegate is not None and signer == self.delegate)


@dataclass(frozen=True)
class AccountSnapshot:
    """Consistent on-chain state as of ``fetched_at`` (unix seconds)."""

    fetched_at: float
    cache: PriceCache
    account: PortfolioAccount
    bids: dict[str, OnChainBookSide]
    asks: dict[str, OnChainBookSide]
    equity: float

    def best_bid(self, instrument: str) -> BookLevel | None:
        side = self.bids.get(instrument)
        return side.best() if side is not None else None

    def best_ask(self, instrument: str) -> BookLevel | None:
        side = self.asks.get(instrument)
        return side.best() if side is not None else None


# ---------------------------------------------------------------------------
# Reference prices and quoting
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AggregatedQuote:
    """Worst-case depth-weighted bid/ask across reference venues."""

    instrument: str
    bid: float | None
    ask: float | None
    updated_at: float  # Unix seconds of the latest contributing book update

    @property
    def is_defined(self) -> bool:
        return self.bid is not None and self.ask is not None

    @property
    def mid(self) -> float | None:
        if self.bid is None or self.ask is None:
            return None
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class PortfolioState:
    """Derived per cycle from the snapshot and reference quotes."""

    equity: float
    position_value: float  # Sum of position * reference price


@dataclass(frozen=True)
class TakeOrder:
    side: Side
    price_lots: int
    size_lots: int = 1


@dataclass(frozen=True)
class OrderIntent:
    """Target quotes for one instrument in one cycle. Never persisted."""

    bid_price_lots: int
    bid_size_lots: int
    ask_price_lots: int
    ask_size_lots: int
    replace: bool
    take: TakeOrder | None = None
