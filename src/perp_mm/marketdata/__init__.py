"""Reference market data: per-venue books and cross-venue aggregation."""

from perp_mm.marketdata.aggregator import BookAggregator
from perp_mm.marketdata.listener import ListenerUnit, listener_groups
from perp_mm.marketdata.reference_book import ReferenceBook

__all__ = [
    "BookAggregator",
    "ListenerUnit",
    "ReferenceBook",
    "listener_groups",
]
