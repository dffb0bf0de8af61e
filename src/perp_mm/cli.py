"""CLI entry point for the market maker."""

from __future__ import annotations

import click


@click.group()
def main() -> None:
    """Perpetual futures market maker."""


@main.command()
@click.option("--config", default="configs/paper.toml", help="Config file path")
@click.option("--instruments", default=None, help="Comma-separated subset of instruments to quote")
def run(config: str, instruments: str | None) -> None:
    """Run the market maker until SIGINT/SIGTERM."""
    import asyncio

    from .core.errors import ConfigError
    from .main import run as run_engine

    try:
        overrides = _instrument_overrides(config, instruments)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        raise SystemExit(1)
    asyncio.run(run_engine(config_path=config, overrides=overrides))


@main.command("cancel-all")
@click.option("--config", default="configs/paper.toml", help="Config file path")
def cancel_all(config: str) -> None:
    """Cancel every resting order on every configured instrument."""
    import asyncio

    from .main import cancel_all as cancel_all_orders

    outcomes = asyncio.run(cancel_all_orders(config_path=config))
    failed = [o for o in outcomes if not o.ok]
    for outcome in outcomes:
        status = "ok" if outcome.ok else f"FAILED: {outcome.error}"
        click.echo(f"{', '.join(outcome.transaction.instruments):<30} {status}")
    if failed:
        raise SystemExit(1)


@main.command("check-config")
@click.option("--config", default="configs/paper.toml", help="Config file path")
def check_config(config: str) -> None:
    """Validate the configuration and print the instrument table."""
    from .core.config import load_settings
    from .core.errors import ConfigError
    from .execution.sequence import resolve_program_id

    try:
        settings = load_settings(config_path=config)
        settings.validate_startup()
        program_id = resolve_program_id(settings.ledger.cluster, settings.ledger.sequence_program_id)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        raise SystemExit(1)

    click.echo(f"Cluster:          {settings.ledger.cluster.value}")
    click.echo(f"Sequence program: {program_id}")
    click.echo(f"Venues:           {', '.join(settings.listeners.venues)}")
    click.echo()
    click.echo(
        f"{'Instrument':<14} {'Index':>5} {'Size':>7} {'Charge':>8} {'Lean':>7} "
        f"{'Thresh':>8} {'TIF':>6} {'Spammers':>8}"
    )
    click.echo("-" * 72)
    for inst in settings.instruments:
        tif = settings.time_in_force(inst)
        click.echo(
            f"{inst.name:<14} {inst.market_index:>5} {inst.size_fraction:>7.4f} "
            f"{inst.charge:>8.4f} {inst.lean_coeff:>7.4f} {inst.requote_threshold:>8.4f} "
            f"{tif if tif is not None else '-':>6} {'yes' if inst.take_spammers else 'no':>8}"
        )


def _instrument_overrides(config: str, instruments: str | None) -> dict | None:
    if not instruments:
        return None
    from .core.config import load_settings

    settings = load_settings(config_path=config)
    names = [n.strip() for n in instruments.split(",") if n.strip()]
    # Unknown names raise UnknownInstrumentError.
    selected = [settings.instrument(name) for name in dict.fromkeys(names)]
    wanted = {inst.name for inst in selected}
    groups = [[n for n in g if n in wanted] for g in settings.listeners.groups]
    listeners = settings.listeners.model_dump()
    listeners["groups"] = [g for g in groups if g]
    return {
        "instruments": [inst.model_dump() for inst in selected],
        "listeners": listeners,
    }


if __name__ == "__main__":
    main()
