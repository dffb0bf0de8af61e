"""Message schemas exchanged between the feed, listener units and engine.

All messages are Pydantic models.
"""

from __future__ import annotations

import time

from pydantic import BaseModel, Field

from .enums import BookSideType


class PriceLevel(BaseModel):
    price: float
    amount: float  # 0 removes the level


class BookDelta(BaseModel):
    """One book change from a reference venue, keyed by native symbol.

    ``is_snapshot`` replaces the whole side instead of patching it.
    """

    venue: str
    symbol: str
    side: BookSideType
    levels: list[PriceLevel] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)  # Unix seconds
    is_snapshot: bool = False


class QuoteUpdate(BaseModel):
    """Listener unit -> engine, one per book update."""

    instrument: str
    agg_bid: float | None = None
    agg_ask: float | None = None
    timestamp: float = Field(default_factory=time.time)


class EquityUpdate(BaseModel):
    """Engine -> listener unit. Last write wins, no acknowledgement."""

    equity: float
