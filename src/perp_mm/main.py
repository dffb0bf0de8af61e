"""Application bootstrap.

Wires the collaborators and components together and runs the engine until
SIGINT/SIGTERM, then hands control to the shutdown path.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal
from dataclasses import dataclass
from typing import Any

from .core.clock import IClock, WallClock
from .core.config import Settings, load_settings
from .core.context import EngineContext
from .core.errors import ConfigError
from .core.interfaces import IAccountDecoder, IBookFeed, ILedgerClient
from .core.models import Instrument
from .execution.batcher import ExecutionBatcher, SubmissionOutcome
from .execution.quote_engine import QuoteEngine
from .execution.sequence import SequenceFence, resolve_program_id
from .execution.shutdown import ShutdownController
from .market_maker import MarketMaker
from .marketdata.aggregator import BookAggregator
from .observability.logger import setup_logging
from .observability.metrics import start_metrics_server
from .state.synchronizer import StateSynchronizer

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    context: EngineContext
    instruments: list[Instrument]
    ledger: ILedgerClient
    fence: SequenceFence
    aggregator: BookAggregator
    synchronizer: StateSynchronizer
    engine: QuoteEngine
    batcher: ExecutionBatcher
    market_maker: MarketMaker
    shutdown: ShutdownController


def load_factory(path: str) -> Any:
    """Resolve ``package.module:attr.sub`` to an object."""
    module_name, _, attr_path = path.partition(":")
    if not module_name or not attr_path:
        raise ConfigError(f"Invalid import path {path!r}; expected 'module:attr'")
    try:
        obj: Any = importlib.import_module(module_name)
        for attr in attr_path.split("."):
            obj = getattr(obj, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Cannot load {path!r}: {exc}") from exc
    return obj


def load_collaborators(settings: Settings) -> tuple[ILedgerClient, IAccountDecoder, IBookFeed]:
    cfg = settings.collaborators
    ledger = load_factory(cfg.ledger)(settings)
    decoder = load_factory(cfg.decoder)(settings)
    feed = load_factory(cfg.feed)(settings)
    return ledger, decoder, feed


def build_components(
    settings: Settings,
    ledger: ILedgerClient,
    decoder: IAccountDecoder,
    feed: IBookFeed,
    clock: IClock | None = None,
) -> Components:
    context = EngineContext(clock or WallClock())
    engine_cfg = settings.engine
    instruments = [
        Instrument(config=cfg, time_in_force=settings.time_in_force(cfg))
        for cfg in settings.instruments
    ]
    names = [inst.name for inst in instruments]

    fence = SequenceFence(
        ledger=ledger,
        owner=settings.ledger.owner,
        program_id=resolve_program_id(settings.ledger.cluster, settings.ledger.sequence_program_id),
        clock=context.clock,
        instruments=names,
        backoff=engine_cfg.sequence_init_backoff,
        max_backoff=engine_cfg.sequence_init_max_backoff,
    )
    aggregator = BookAggregator(
        context=context,
        feed=feed,
        instruments=settings.instruments,
        venues=settings.listeners.venues,
        groups=settings.listeners.groups,
        resubscribe_backoff=settings.listeners.resubscribe_backoff,
        max_resubscribe_backoff=settings.listeners.max_resubscribe_backoff,
    )
    synchronizer = StateSynchronizer(
        context=context,
        ledger=ledger,
        decoder=decoder,
        instruments=instruments,
        owner=settings.ledger.owner,
        account=settings.ledger.account,
        cache=settings.ledger.cache,
        interval=engine_cfg.state_refresh_interval,
    )
    synchronizer.add_equity_sink(aggregator.push_equity)

    engine = QuoteEngine(
        fence=fence,
        clock=context.clock,
        portfolio_lean_coeff=engine_cfg.portfolio_lean_coeff,
        freshness_margin=engine_cfg.freshness_margin,
        take_epsilon=engine_cfg.take_epsilon,
        max_quote_age=engine_cfg.max_quote_age,
    )
    batcher = ExecutionBatcher(ledger, batch_size=engine_cfg.batch)
    market_maker = MarketMaker(context, engine, batcher, instruments, interval=engine_cfg.interval)
    shutdown = ShutdownController(
        context=context,
        batcher=batcher,
        synchronizer=synchronizer,
        instruments=instruments,
        wait_interval=engine_cfg.interval,
    )
    return Components(
        settings=settings,
        context=context,
        instruments=instruments,
        ledger=ledger,
        fence=fence,
        aggregator=aggregator,
        synchronizer=synchronizer,
        engine=engine,
        batcher=batcher,
        market_maker=market_maker,
        shutdown=shutdown,
    )


async def start_components(c: Components) -> bool:
    """Startup sequence after bootstrap. Returns False if a stop arrived first."""
    if not await c.fence.initialize(context=c.context):
        return False

    if c.settings.engine.cancel_on_start:
        await c.shutdown.cancel_all(reason="startup")

    await c.aggregator.start()
    await c.synchronizer.start()
    await c.market_maker.start()
    return True


async def stop_components(c: Components) -> list[SubmissionOutcome]:
    return await c.shutdown.shutdown([c.market_maker, c.synchronizer, c.aggregator])


async def run(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Main entry point. Load config, validate, wire modules, run."""

    # 1. Load settings
    settings = load_settings(config_path=config_path, overrides=overrides)
    settings.validate_startup()

    # 2. Set up logging
    setup_logging(settings.observability.log_level, settings.observability.log_format)

    logger.info(
        "Starting perp market maker",
        extra={
            "cluster": settings.ledger.cluster.value,
            "instruments": [i.name for i in settings.instruments],
            "venues": settings.listeners.venues,
        },
    )

    if settings.observability.metrics_enabled:
        metrics_port = settings.observability.metrics_port
        try:
            start_metrics_server(port=metrics_port, cluster=settings.ledger.cluster.value)
            logger.info("Prometheus metrics server started on port %d", metrics_port)
        except OSError:
            logger.warning("Failed to start metrics server", exc_info=True)

    # 3. Wire
    ledger, decoder, feed = load_collaborators(settings)
    components = build_components(settings, ledger, decoder, feed)

    # 4. Graceful shutdown on signals
    def _signal_handler() -> None:
        logger.info("Received shutdown signal")
        components.context.request_stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    # 5. Fatal account problems surface before anything is sent
    await components.synchronizer.bootstrap()

    # 6. Run until stopped, then always cancel everything
    try:
        if await start_components(components):
            logger.info("Market maker running. Press Ctrl+C to stop.")
            await components.context.wait_stopped()
    finally:
        await stop_components(components)
        logger.info("Shutdown complete")


async def cancel_all(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> list[SubmissionOutcome]:
    """One-shot cancel of every configured instrument's resting orders."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    settings.validate_startup()
    setup_logging(settings.observability.log_level, settings.observability.log_format)

    ledger, decoder, feed = load_collaborators(settings)
    components = build_components(settings, ledger, decoder, feed)
    await components.synchronizer.bootstrap()
    return await components.shutdown.cancel_all(reason="manual")
