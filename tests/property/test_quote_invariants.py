"""Property test: quote engine invariants.

Quotes never cross, clamped quotes never cross the on-chain book, and
requote instruction sets always start with the fence check.
"""

from hypothesis import assume, given, settings, strategies as st

from conftest import make_instrument, make_quote, make_snapshot
from perp_mm.core.clock import SimClock
from perp_mm.core.enums import QuoteDecision, Side
from perp_mm.core.models import BookLevel, PortfolioState
from perp_mm.execution.instructions import CancelAllOrders, CheckAndSetSequence, PlaceOrder
from perp_mm.execution.quote_engine import QuoteEngine, clamp_to_book, compute_targets
from perp_mm.execution.sequence import SequenceFence
from perp_mm.ledger.paper import PaperLedger


@given(
    bid=st.floats(min_value=1.0, max_value=100_000.0),
    spread=st.floats(min_value=0.0, max_value=0.05),
    equity=st.floats(min_value=10.0, max_value=1e7),
    position=st.floats(min_value=-1_000.0, max_value=1_000.0),
    position_value=st.floats(min_value=-1e7, max_value=1e7),
    charge=st.floats(min_value=1e-5, max_value=0.05),
    lean_coeff=st.floats(min_value=0.0, max_value=0.01),
)
@settings(max_examples=200)
def test_model_bid_below_model_ask(bid, spread, equity, position, position_value, charge, lean_coeff):
    ask = bid * (1 + spread)
    targets = compute_targets(
        bid,
        ask,
        equity,
        position,
        position_value,
        size_fraction=0.1,
        base_charge=charge,
        lean_coeff=lean_coeff,
        bias=0.0,
        portfolio_lean_coeff=0.001,
    )
    assert targets.bid_price < targets.ask_price
    assert targets.charge >= charge
    assert targets.size > 0


@given(
    model_bid=st.integers(min_value=1, max_value=1_000_000),
    width=st.integers(min_value=1, max_value=10_000),
    best_bid=st.integers(min_value=1, max_value=1_000_000),
    book_width=st.integers(min_value=1, max_value=10_000),
)
@settings(max_examples=200)
def test_clamped_quotes_never_cross_the_book(model_bid, width, best_bid, book_width):
    best_ask = best_bid + book_width
    bid, ask = clamp_to_book(model_bid, model_bid + width, BookLevel(best_bid, 1), BookLevel(best_ask, 1))
    assert bid < best_ask
    assert ask > best_bid
    assert bid <= model_bid
    assert ask >= model_bid + width


@given(
    mid=st.floats(min_value=10.0, max_value=10_000.0),
    position=st.floats(min_value=-5.0, max_value=5.0),
    steps=st.integers(min_value=1, max_value=5),
)
@settings(max_examples=50)
def test_every_nonempty_set_starts_with_fence_check(mid, position, steps):
    clock = SimClock()
    fence = SequenceFence(
        ledger=PaperLedger(),
        owner="owner",
        program_id="program",
        clock=clock,
        instruments=["BTC-PERP"],
    )
    engine = QuoteEngine(fence=fence, clock=clock)
    inst = make_instrument("BTC-PERP", 0, lean_coeff=0.001)
    quote = make_quote("BTC-PERP", mid, mid * 1.001, clock.time())
    last_counter = 0
    for _ in range(steps):
        clock.advance(10.0)
        snapshot = make_snapshot(fetched_at=clock.time(), positions={0: position})
        portfolio = PortfolioState(equity=snapshot.equity, position_value=position * mid)
        assume(snapshot.equity > 0)
        result = engine.update(inst, snapshot, quote, portfolio)
        if result.decision == QuoteDecision.REQUOTE:
            check, cancel, *places = result.instructions
            assert isinstance(check, CheckAndSetSequence)
            assert check.sequence_number > last_counter
            last_counter = check.sequence_number
            assert isinstance(cancel, CancelAllOrders)
            assert all(isinstance(ix, PlaceOrder) for ix in places)
            sides = [ix.side for ix in places]
            assert sides in ([Side.BUY, Side.SELL], [Side.BUY], [Side.SELL])
        else:
            assert result.instructions == []
