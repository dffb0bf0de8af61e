"""MarketMaker: the main quoting loop.

Every ``engine.interval`` seconds:

1. Take the latest published snapshot and reference quotes.
2. Derive the portfolio state (equity, marked position value).
3. Run the quote engine for each instrument; a failure in one instrument is
   logged and the others still quote.
4. Hand every non-empty instruction set to the batcher and flush.
"""

from __future__ import annotations

import logging

from perp_mm.core.context import EngineContext
from perp_mm.core.models import Instrument
from perp_mm.core.service import PeriodicService
from perp_mm.execution.batcher import ExecutionBatcher
from perp_mm.execution.quote_engine import QuoteEngine, QuoteResult
from perp_mm.observability.logger import new_cycle_id, set_cycle_id
from perp_mm.observability.metrics import record_cycle, record_decision

logger = logging.getLogger(__name__)


class MarketMaker(PeriodicService):
    """Runs quoting cycles against the published engine state."""

    def __init__(
        self,
        context: EngineContext,
        engine: QuoteEngine,
        batcher: ExecutionBatcher,
        instruments: list[Instrument],
        interval: float = 10.0,
    ) -> None:
        super().__init__(context, interval)
        self._engine = engine
        self._batcher = batcher
        self._instruments = instruments

    async def _work(self) -> None:
        await self.run_cycle()

    async def run_cycle(self) -> list[QuoteResult]:
        snapshot = self._context.snapshot
        if snapshot is None:
            record_cycle("skipped")
            logger.info("No account snapshot yet; skipping cycle")
            return []

        cycle_id = new_cycle_id()
        try:
            quotes = self._context.quotes
            portfolio = self._engine.portfolio_state(snapshot, self._instruments, quotes)
            if portfolio is None:
                record_cycle("skipped")
                return []

            results: list[QuoteResult] = []
            for inst in self._instruments:
                try:
                    result = self._engine.update(inst, snapshot, quotes.get(inst.name), portfolio)
                except Exception:
                    logger.exception("Quote update failed for %s", inst.name, extra={"instrument": inst.name})
                    continue
                record_decision(inst.name, result.decision.value)
                results.append(result)
                self._batcher.add(inst.name, result.instructions)
            self._batcher.flush()

            record_cycle("run")
            logger.debug(
                "Cycle %s done: equity=%.2f positionValue=%.2f",
                cycle_id,
                portfolio.equity,
                portfolio.position_value,
            )
            return results
        finally:
            set_cycle_id("")
