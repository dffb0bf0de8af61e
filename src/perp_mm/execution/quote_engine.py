"""Quote engine: turns reference prices and inventory into order instructions.

Per instrument and cycle:

1. Skip when the aggregated reference quote is undefined or stale.
2. Fair value is the reference mid; the one-sided charge is the base charge
   plus half the reference spread.
3. Order size is a fraction of equity. Inventory and portfolio leans shift
   both quotes together to work the position back toward flat.
4. Targets are clamped so a resting order never crosses the on-chain book.
5. The requote decision compares targets to either the resting orders seen
   on-chain or the last prices we sent, depending on which is fresher.
6. One-lot orders sitting at an outsized edge against the model are taken
   with an immediate-or-cancel order before any requote.
7. Requotes cancel everything on the instrument and place a fresh bid and
   ask, unless inventory already sits at the configured multiple.

Every non-empty instruction set starts with a sequence fence check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from perp_mm.core.clock import IClock
from perp_mm.core.enums import OrderType, QuoteDecision, Side
from perp_mm.core.models import (
    AccountSnapshot,
    AggregatedQuote,
    BookLevel,
    Instrument,
    OrderIntent,
    PortfolioState,
    TakeOrder,
)

from .instructions import CancelAllOrders, Instruction, PlaceOrder
from .sequence import SequenceFence

logger = logging.getLogger(__name__)


@dataclass
class QuoteState:
    """What this process last sent for one instrument. Owned by the engine."""

    sent_bid_lots: int = 0
    sent_ask_lots: int = 0
    last_order_update: float = 0.0
    last_fair_value: float | None = None


@dataclass(frozen=True)
class QuoteResult:
    instrument: str
    decision: QuoteDecision
    instructions: list[Instruction] = field(default_factory=list)
    intent: OrderIntent | None = None
    reason: str = ""


@dataclass(frozen=True)
class Targets:
    fair_value: float
    charge: float
    size: float
    bid_price: float
    ask_price: float


def compute_targets(
    bid: float,
    ask: float,
    equity: float,
    base_position: float,
    position_value: float,
    *,
    size_fraction: float,
    base_charge: float,
    lean_coeff: float,
    bias: float,
    portfolio_lean_coeff: float,
) -> Targets:
    """Model bid/ask before conversion to lots and clamping."""
    fair_value = (bid + ask) / 2
    reference_spread = (ask - bid) / fair_value
    charge = base_charge + reference_spread / 2
    size = equity * size_fraction / fair_value
    lean = -lean_coeff * base_position / size
    portfolio_lean = -(position_value / equity) * portfolio_lean_coeff
    shift = lean + bias + portfolio_lean
    return Targets(
        fair_value=fair_value,
        charge=charge,
        size=size,
        bid_price=fair_value * (1 - charge + shift),
        ask_price=fair_value * (1 + charge + shift),
    )


def clamp_to_book(
    model_bid: int,
    model_ask: int,
    best_bid: BookLevel | None,
    best_ask: BookLevel | None,
) -> tuple[int, int]:
    """Keep the bid one tick under the best ask and the ask one tick over the best bid."""
    bid = min(best_ask.price_lots - 1, model_bid) if best_ask is not None else model_bid
    ask = max(best_bid.price_lots + 1, model_ask) if best_bid is not None else model_ask
    return bid, ask


def _deviates(price_lots: int, ref_lots: int, threshold: float) -> bool:
    if ref_lots <= 0:
        return True
    return abs(price_lots / ref_lots - 1) > threshold


class QuoteEngine:
    """Computes per-instrument instruction sets.

    Parameters
    ----------
    fence:
        Supplies the fence-check instruction prefixing every set.
    clock:
        Time source for order expiry and freshness comparisons.
    portfolio_lean_coeff:
        Price shift applied when portfolio position value equals equity.
    freshness_margin:
        Seconds the on-chain book must lead our last order update before
        resting orders are trusted over the prices we last sent.
    take_epsilon:
        Fixed edge added to the spammer-taking threshold.
    max_quote_age:
        Reference quotes older than this many seconds count as missing.
    """

    def __init__(
        self,
        fence: SequenceFence,
        clock: IClock,
        portfolio_lean_coeff: float = 0.001,
        freshness_margin: float = 2.0,
        take_epsilon: float = 0.0005,
        max_quote_age: float | None = None,
    ) -> None:
        self._fence = fence
        self._clock = clock
        self._portfolio_lean_coeff = portfolio_lean_coeff
        self._freshness_margin = freshness_margin
        self._take_epsilon = take_epsilon
        self._max_quote_age = max_quote_age
        self._states: dict[str, QuoteState] = {}

    def state(self, instrument: str) -> QuoteState:
        return self._states.setdefault(instrument, QuoteState())

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    def reference_price(self, instrument: str, quote: AggregatedQuote | None) -> float | None:
        """Current reference mid, falling back to the last fair value used.

        A stale quote is treated like a missing one, as in ``update``.
        """
        if quote is not None and quote.mid is not None and not self._is_stale(quote, self._clock.time()):
            return quote.mid
        return self.state(instrument).last_fair_value

    def portfolio_state(
        self,
        snapshot: AccountSnapshot,
        instruments: list[Instrument],
        quotes: Mapping[str, AggregatedQuote],
    ) -> PortfolioState | None:
        """Equity and position value, or None while a held position has no price."""
        position_value = 0.0
        for inst in instruments:
            position = snapshot.account.base_position(inst.market_index)
            if position == 0:
                continue
            price = self.reference_price(inst.name, quotes.get(inst.name))
            if price is None:
                logger.info("Portfolio value unavailable: no reference price for %s", inst.name)
                return None
            position_value += position * price
        return PortfolioState(equity=snapshot.equity, position_value=position_value)

    # ------------------------------------------------------------------
    # Per-instrument update
    # ------------------------------------------------------------------

    def _is_stale(self, quote: AggregatedQuote, now: float) -> bool:
        return self._max_quote_age is not None and now - quote.updated_at > self._max_quote_age

    def update(
        self,
        inst: Instrument,
        snapshot: AccountSnapshot,
        quote: AggregatedQuote | None,
        portfolio: PortfolioState,
    ) -> QuoteResult:
        """Compute this cycle's instructions for one instrument."""
        now = self._clock.time()
        name = inst.name
        cfg = inst.config

        if quote is None or not quote.is_defined or self._is_stale(quote, now):
            logger.info("%s no reference price; skipping", name, extra={"instrument": name, "decision": "skip"})
            return QuoteResult(name, QuoteDecision.SKIP, reason="no reference price")
        if portfolio.equity <= 0:
            logger.info("%s no equity; skipping", name, extra={"instrument": name, "decision": "skip"})
            return QuoteResult(name, QuoteDecision.SKIP, reason="no equity")

        assert quote.bid is not None and quote.ask is not None
        base_position = snapshot.account.base_position(inst.market_index)
        targets = compute_targets(
            quote.bid,
            quote.ask,
            portfolio.equity,
            base_position,
            portfolio.position_value,
            size_fraction=cfg.size_fraction,
            base_charge=cfg.charge,
            lean_coeff=cfg.lean_coeff,
            bias=cfg.bias,
            portfolio_lean_coeff=self._portfolio_lean_coeff,
        )
        state = self.state(name)
        state.last_fair_value = targets.fair_value

        size_lots = inst.size_to_lots(targets.size)
        if size_lots <= 0:
            logger.info("%s order size below one lot; skipping", name, extra={"instrument": name, "decision": "skip"})
            return QuoteResult(name, QuoteDecision.SKIP, reason="size below one lot")

        model_bid = inst.price_to_lots(targets.bid_price)
        model_ask = inst.price_to_lots(targets.ask_price)
        best_bid = snapshot.best_bid(name)
        best_ask = snapshot.best_ask(name)
        bid_lots, ask_lots = clamp_to_book(model_bid, model_ask, best_bid, best_ask)

        replace = self._should_requote(inst, snapshot, state, bid_lots, ask_lots, now)
        take = self._spammer_take(inst, targets.charge, model_bid, model_ask, best_bid, best_ask)
        intent = OrderIntent(
            bid_price_lots=bid_lots,
            bid_size_lots=size_lots,
            ask_price_lots=ask_lots,
            ask_size_lots=size_lots,
            replace=replace,
            take=take,
        )

        body: list[Instruction] = []
        client_order_id = self._clock.now_ms()
        if take is not None:
            logger.info(
                "%s taking best %s spammer at %d",
                name,
                "bid" if take.side == Side.SELL else "ask",
                take.price_lots,
                extra={"instrument": name, "decision": "take"},
            )
            body.append(
                PlaceOrder(
                    instrument=name,
                    market_index=inst.market_index,
                    side=take.side,
                    price_lots=take.price_lots,
                    size_lots=take.size_lots,
                    order_type=OrderType.IOC,
                    client_order_id=client_order_id,
                )
            )

        if replace:
            body.extend(self._requote_instructions(inst, intent, base_position, targets.size, client_order_id, now))
            logger.info(
                "%s requoting sentBid=%s newBid=%s sentAsk=%s newAsk=%s pfLean=%.1fbps aggBid=%s aggAsk=%s",
                name,
                state.sent_bid_lots,
                bid_lots,
                state.sent_ask_lots,
                ask_lots,
                -(portfolio.position_value / portfolio.equity) * self._portfolio_lean_coeff * 10_000,
                quote.bid,
                quote.ask,
                extra={"instrument": name, "decision": "requote"},
            )
            state.sent_bid_lots = bid_lots
            state.sent_ask_lots = ask_lots
            state.last_order_update = now

        if not body:
            logger.debug("%s no need to move orders", name, extra={"instrument": name, "decision": "no_op"})
            return QuoteResult(name, QuoteDecision.NO_OP, intent=intent)

        if take is not None and replace:
            decision = QuoteDecision.TAKE_AND_REQUOTE
        elif take is not None:
            decision = QuoteDecision.TAKE
        else:
            decision = QuoteDecision.REQUOTE
        instructions: list[Instruction] = [self._fence.check_instruction(name), *body]
        return QuoteResult(name, decision, instructions=instructions, intent=intent)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _should_requote(
        self,
        inst: Instrument,
        snapshot: AccountSnapshot,
        state: QuoteState,
        bid_lots: int,
        ask_lots: int,
        now: float,
    ) -> bool:
        threshold = inst.config.requote_threshold
        tif = inst.time_in_force
        expired = tif is not None and state.last_order_update + tif < now

        if snapshot.fetched_at >= state.last_order_update + self._freshness_margin:
            # The book was read after our last orders had time to land, so the
            # account's open orders reflect them.
            orders = snapshot.account.orders_for(inst.market_index)
            if len(orders) != 2 or {o.side for o in orders} != {Side.BUY, Side.SELL}:
                return True
            for order in orders:
                ref = bid_lots if order.side == Side.BUY else ask_lots
                if _deviates(order.price_lots, ref, threshold):
                    return True
            return expired

        # Our last orders are newer than the book; assume they executed as sent.
        # This is an approximation when both land within one polling interval.
        return (
            _deviates(state.sent_bid_lots, bid_lots, threshold)
            or _deviates(state.sent_ask_lots, ask_lots, threshold)
            or expired
        )

    def _spammer_take(
        self,
        inst: Instrument,
        charge: float,
        model_bid: int,
        model_ask: int,
        best_bid: BookLevel | None,
        best_ask: BookLevel | None,
    ) -> TakeOrder | None:
        cfg = inst.config
        if not cfg.take_spammers:
            return None
        edge = cfg.spammer_charge * charge + self._take_epsilon
        if (
            best_bid is not None
            and best_bid.size_lots == 1
            and model_ask > 0
            and best_bid.price_lots / model_ask - 1 > edge
        ):
            return TakeOrder(side=Side.SELL, price_lots=best_bid.price_lots)
        if (
            best_ask is not None
            and best_ask.size_lots == 1
            and best_ask.price_lots > 0
            and model_bid / best_ask.price_lots - 1 > edge
        ):
            return TakeOrder(side=Side.BUY, price_lots=best_ask.price_lots)
        return None

    def _requote_instructions(
        self,
        inst: Instrument,
        intent: OrderIntent,
        base_position: float,
        size: float,
        client_order_id: int,
        now: float,
    ) -> list[Instruction]:
        cfg = inst.config
        tif = inst.time_in_force
        expiry = int(now + tif) if tif is not None else 0
        instructions: list[Instruction] = [
            CancelAllOrders(instrument=inst.name, market_index=inst.market_index)
        ]

        position_in_sizes = base_position / size
        if position_in_sizes < cfg.max_long_multiple:
            instructions.append(
                PlaceOrder(
                    instrument=inst.name,
                    market_index=inst.market_index,
                    side=Side.BUY,
                    price_lots=intent.bid_price_lots,
                    size_lots=intent.bid_size_lots,
                    order_type=OrderType.POST_ONLY_SLIDE,
                    client_order_id=client_order_id,
                    expiry_timestamp=expiry,
                )
            )
        else:
            logger.info("%s long inventory cap reached; not bidding", inst.name, extra={"instrument": inst.name})
        if position_in_sizes > -cfg.max_short_multiple:
            instructions.append(
                PlaceOrder(
                    instrument=inst.name,
                    market_index=inst.market_index,
                    side=Side.SELL,
                    price_lots=intent.ask_price_lots,
                    size_lots=intent.ask_size_lots,
                    order_type=OrderType.POST_ONLY_SLIDE,
                    client_order_id=client_order_id,
                    expiry_timestamp=expiry,
                )
            )
        else:
            logger.info("%s short inventory cap reached; not offering", inst.name, extra={"instrument": inst.name})
        return instructions
