"""Property test: reference book depth walks.

A deeper query can only reach a worse price, and a query larger than the
side's total notional is undefined.
"""

from hypothesis import given, settings, strategies as st

from conftest import side_snapshot
from perp_mm.core.enums import BookSideType
from perp_mm.marketdata.reference_book import ReferenceBook

levels_st = st.dictionaries(
    keys=st.integers(min_value=1, max_value=1_000),
    values=st.integers(min_value=1, max_value=50),
    min_size=1,
    max_size=30,
)


def _book(bids: dict[int, int], asks: dict[int, int]) -> ReferenceBook:
    book = ReferenceBook()
    book.update(side_snapshot("v", "S", BookSideType.BID, [(float(p), float(a)) for p, a in bids.items()]))
    book.update(side_snapshot("v", "S", BookSideType.ASK, [(float(p), float(a)) for p, a in asks.items()]))
    return book


@given(bids=levels_st, sizes=st.lists(st.integers(min_value=1, max_value=60_000), min_size=2, max_size=5))
@settings(max_examples=100)
def test_deeper_bid_is_never_better(bids, sizes):
    book = _book(bids, {})
    total = sum(p * a for p, a in bids.items())
    previous = None
    for size in sorted(sizes):
        price = book.depth_weighted_bid(float(size))
        if size > total:
            assert price is None
            continue
        assert price is not None
        assert price <= max(bids)
        if previous is not None:
            assert price <= previous
        previous = price


@given(asks=levels_st, sizes=st.lists(st.integers(min_value=1, max_value=60_000), min_size=2, max_size=5))
@settings(max_examples=100)
def test_deeper_ask_is_never_better(asks, sizes):
    book = _book({}, asks)
    total = sum(p * a for p, a in asks.items())
    previous = None
    for size in sorted(sizes):
        price = book.depth_weighted_ask(float(size))
        if size > total:
            assert price is None
            continue
        assert price is not None
        assert price >= min(asks)
        if previous is not None:
            assert price >= previous
        previous = price


@given(
    updates=st.lists(
        st.tuples(st.integers(min_value=1, max_value=20), st.integers(min_value=0, max_value=5)),
        max_size=60,
    )
)
@settings(max_examples=100)
def test_incremental_updates_match_a_plain_dict(updates):
    book = ReferenceBook()
    expected: dict[float, float] = {}
    for price, amount in updates:
        delta = side_snapshot("v", "S", BookSideType.BID, [(float(price), float(amount))])
        book.update(delta.model_copy(update={"is_snapshot": False}))
        if amount == 0:
            expected.pop(float(price), None)
        else:
            expected[float(price)] = float(amount)

    assert list(book.bids()) == sorted(expected.items(), reverse=True)
    best = book.best_bid()
    if expected:
        assert best.price == max(expected)
    else:
        assert best is None
