"""Tests for listener units and the BookAggregator."""

from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import make_instrument_config, settle, side_snapshot
from perp_mm.core.enums import BookSideType
from perp_mm.core.events import EquityUpdate, QuoteUpdate
from perp_mm.marketdata import BookAggregator, ListenerUnit, listener_groups
from perp_mm.marketdata.listener import list_max, list_min
from perp_mm.observability.metrics import VENUE_RESUBSCRIPTIONS

BID, ASK = BookSideType.BID, BookSideType.ASK


def _feed_book(target, venue, symbol, bids, asks, timestamp=1.0):
    """Apply both sides through ``on_delta`` and return the last update."""
    target.on_delta(side_snapshot(venue, symbol, BID, bids, timestamp))
    return target.on_delta(side_snapshot(venue, symbol, ASK, asks, timestamp))


@pytest.fixture
def unit(book_feed) -> ListenerUnit:
    return ListenerUnit(
        name="unit-0",
        instruments=[make_instrument_config("BTC-PERP", 0, reference_depth_quote=500.0)],
        venues=["venue-a", "venue-b"],
        feed=book_feed,
        outbox=asyncio.Queue(),
    )


class TestHelpers:
    def test_list_min_max_ignore_none(self):
        assert list_min([None, 3.0, 2.0]) == 2.0
        assert list_max([None, 3.0, 2.0]) == 3.0
        assert list_min([None, None]) is None
        assert list_max([]) is None

    def test_listener_groups_adds_leftovers(self):
        groups = listener_groups([["A"], ["B", "C"]], ["A", "B", "C", "D", "E"])
        assert groups == [["A"], ["B", "C"], ["D", "E"]]

    def test_listener_groups_default_single_unit(self):
        assert listener_groups([], ["A", "B"]) == [["A", "B"]]


class TestListenerUnit:
    def test_aggregate_takes_worst_prices(self, unit):
        _feed_book(unit, "venue-a", "BTC-PERP-A", [(100.0, 10.0)], [(101.0, 10.0)])
        update = _feed_book(unit, "venue-b", "BTC-PERP-B", [(99.5, 10.0)], [(101.5, 10.0)])
        assert update.instrument == "BTC-PERP"
        assert update.agg_bid == 99.5
        assert update.agg_ask == 101.5

    def test_undefined_venue_is_ignored(self, unit):
        _feed_book(unit, "venue-a", "BTC-PERP-A", [(100.0, 10.0)], [(101.0, 10.0)])
        # venue-b lacks depth for 500 of notional
        update = _feed_book(unit, "venue-b", "BTC-PERP-B", [(99.0, 1.0)], [(102.0, 1.0)])
        assert update.agg_bid == 100.0
        assert update.agg_ask == 101.0

    def test_no_depth_anywhere_is_undefined(self, unit):
        update = _feed_book(unit, "venue-a", "BTC-PERP-A", [(100.0, 1.0)], [(101.0, 1.0)])
        assert update.agg_bid is None
        assert update.agg_ask is None

    def test_timestamp_is_latest_contributing_update(self, unit):
        _feed_book(unit, "venue-a", "BTC-PERP-A", [(100.0, 10.0)], [(101.0, 10.0)], timestamp=10.0)
        update = _feed_book(unit, "venue-b", "BTC-PERP-B", [(100.0, 10.0)], [(101.0, 10.0)], timestamp=7.0)
        assert update.timestamp == 10.0

    def test_unmapped_symbol_ignored(self, unit):
        assert unit.on_delta(side_snapshot("venue-a", "DOGE", BID, [(1.0, 1.0)])) is None

    def test_equity_sizes_depth_query(self, book_feed):
        unit = ListenerUnit(
            name="u",
            instruments=[make_instrument_config("BTC-PERP", 0, size_fraction=0.1)],
            venues=["venue-a"],
            feed=book_feed,
            outbox=asyncio.Queue(),
        )
        bids = [(100.0, 1.0), (99.0, 10.0)]
        asks = [(101.0, 1.0), (102.0, 10.0)]
        unit.send_equity(EquityUpdate(equity=500.0))  # 50 of notional: first level
        assert _feed_book(unit, "venue-a", "BTC-PERP-A", bids, asks).agg_bid == 100.0
        unit.send_equity(EquityUpdate(equity=5_000.0))  # 500 of notional: second level
        update = unit.aggregate("BTC-PERP")
        assert update.agg_bid == 99.0
        assert update.agg_ask == 102.0

    def test_instrument_only_subscribed_where_listed(self, book_feed):
        unit = ListenerUnit(
            name="u",
            instruments=[make_instrument_config("SOL-PERP", 2, venue_symbols={"venue-a": "SOL-A"})],
            venues=["venue-a", "venue-b"],
            feed=book_feed,
            outbox=asyncio.Queue(),
        )
        assert unit.book("SOL-PERP", "venue-a") is not None
        assert unit.book("SOL-PERP", "venue-b") is None

    async def test_streams_emit_updates(self, unit, book_feed):
        await unit.start()
        try:
            book_feed.push(side_snapshot("venue-a", "BTC-PERP-A", BID, [(100.0, 10.0)]))
            await settle()
            update = unit._outbox.get_nowait()
            assert isinstance(update, QuoteUpdate)
            assert book_feed.subscriptions == {"venue-a": ["BTC-PERP-A"], "venue-b": ["BTC-PERP-B"]}
        finally:
            await unit.stop()

    async def test_failed_venue_stops_contributing(self, unit, book_feed, caplog):
        await unit.start()
        try:
            for venue, px in (("venue-a", 100.0), ("venue-b", 99.0)):
                book_feed.push(side_snapshot(venue, f"BTC-PERP-{venue[-1].upper()}", BID, [(px, 10.0)]))
            await settle()
            with caplog.at_level(logging.ERROR):
                book_feed.fail("venue-b", ConnectionError("socket closed"))
                await settle()
            assert "venue-b" in unit.failed_venues
            assert "Venue stream venue-b failed" in caplog.text

            book_feed.push(side_snapshot("venue-a", "BTC-PERP-A", BID, [(100.5, 10.0)]))
            await settle()
            updates = []
            while not unit._outbox.empty():
                updates.append(unit._outbox.get_nowait())
            assert updates[-1].agg_bid == 100.5
        finally:
            await unit.stop()

    async def test_failed_venue_is_resubscribed(self, book_feed, caplog):
        outbox: asyncio.Queue[QuoteUpdate] = asyncio.Queue()
        unit = ListenerUnit(
            name="u",
            instruments=[
                make_instrument_config(
                    "SOL-PERP", 2, venue_symbols={"venue-a": "SOL-A"}, reference_depth_quote=500.0
                )
            ],
            venues=["venue-a"],
            feed=book_feed,
            outbox=outbox,
            resubscribe_backoff=0.01,
        )
        before = VENUE_RESUBSCRIPTIONS.labels(venue="venue-a")._value.get()
        await unit.start()
        try:
            with caplog.at_level(logging.INFO):
                book_feed.fail("venue-a", ConnectionError("socket closed"))
                await settle()
                assert "venue-a" in unit.failed_venues
                await asyncio.sleep(0.05)

            book_feed.push(side_snapshot("venue-a", "SOL-A", BID, [(100.0, 10.0)], timestamp=5.0))
            book_feed.push(side_snapshot("venue-a", "SOL-A", ASK, [(101.0, 10.0)], timestamp=5.0))
            await settle()

            updates = []
            while not outbox.empty():
                updates.append(outbox.get_nowait())
            assert (updates[-1].agg_bid, updates[-1].agg_ask) == (100.0, 101.0)
            assert updates[-1].timestamp == 5.0
            assert unit.failed_venues == set()
            assert VENUE_RESUBSCRIPTIONS.labels(venue="venue-a")._value.get() == before + 1
            assert "Resubscribing to venue-a" in caplog.text
        finally:
            await unit.stop()

    async def test_stop_ends_resubscription_loop(self, book_feed):
        unit = ListenerUnit(
            name="u",
            instruments=[make_instrument_config("BTC-PERP", 0)],
            venues=["venue-a"],
            feed=book_feed,
            outbox=asyncio.Queue(),
            resubscribe_backoff=60.0,
        )
        await unit.start()
        book_feed.fail("venue-a", ConnectionError("socket closed"))
        await settle()
        await asyncio.wait_for(unit.stop(), timeout=1.0)
        assert unit._tasks == []


class TestBookAggregator:
    @pytest.fixture
    def aggregator(self, context, book_feed) -> BookAggregator:
        return BookAggregator(
            context=context,
            feed=book_feed,
            instruments=[
                make_instrument_config("BTC-PERP", 0, reference_depth_quote=500.0),
                make_instrument_config("ETH-PERP", 1, reference_depth_quote=500.0),
            ],
            venues=["venue-a", "venue-b"],
            groups=[["ETH-PERP"]],
        )

    def test_units_per_group(self, aggregator):
        assert [u.instruments for u in aggregator.units] == [["ETH-PERP"], ["BTC-PERP"]]

    def test_apply_publishes_quote(self, aggregator, context):
        quote = aggregator.apply(QuoteUpdate(instrument="BTC-PERP", agg_bid=100.0, agg_ask=101.0, timestamp=3.0))
        assert context.quote("BTC-PERP") == quote
        assert quote.mid == 100.5
        assert quote.updated_at == 3.0

    def test_crossed_aggregate_published_undefined(self, aggregator, context, caplog):
        with caplog.at_level(logging.WARNING):
            quote = aggregator.apply(QuoteUpdate(instrument="BTC-PERP", agg_bid=102.0, agg_ask=101.0))
        assert not quote.is_defined
        assert context.quote("BTC-PERP").bid is None
        assert "Crossed aggregate" in caplog.text

    def test_push_equity_reaches_every_unit(self, aggregator):
        aggregator.push_equity(1234.0)
        assert all(u.equity == 1234.0 for u in aggregator.units)

    async def test_forwards_updates_into_context(self, aggregator, context, book_feed):
        await aggregator.start()
        try:
            book_feed.push(side_snapshot("venue-a", "ETH-PERP-A", BID, [(50.0, 100.0)]))
            book_feed.push(side_snapshot("venue-a", "ETH-PERP-A", ASK, [(51.0, 100.0)]))
            await settle(10)
            quote = context.quote("ETH-PERP")
            assert quote is not None
            assert (quote.bid, quote.ask) == (50.0, 51.0)
        finally:
            await aggregator.stop()

    def test_drain_pending(self, aggregator, context):
        aggregator._channel.put_nowait(QuoteUpdate(instrument="BTC-PERP", agg_bid=100.0, agg_ask=None))
        assert aggregator.drain_pending() == 1
        assert context.quote("BTC-PERP").bid == 100.0
