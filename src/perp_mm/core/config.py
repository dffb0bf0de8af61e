"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
The configuration is validated once at startup and is immutable afterwards.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from .enums import Cluster


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class InstrumentConfig(BaseModel):
    """One perpetual market and its risk parameters."""

    model_config = ConfigDict(frozen=True)

    name: str  # e.g. "BTC-PERP"
    market_index: int = Field(ge=0)  # Index into portfolio-level arrays

    # On-chain addresses
    market: str
    bids: str
    asks: str
    event_queue: str = ""

    # Market units
    tick_size: float = Field(gt=0)  # Price of one price lot
    lot_size: float = Field(gt=0)  # Base units in one size lot

    # Risk parameters
    size_fraction: float = Field(gt=0, le=1)  # Order notional as fraction of equity
    lean_coeff: float = 0.0  # Inventory lean per order-size of position
    charge: float = Field(default=0.0015, ge=0)  # Base one-sided spread charge
    bias: float = 0.0  # Directional price bias
    requote_threshold: float = Field(default=0.0005, gt=0)
    time_in_force: float | None = None  # Seconds; falls back to engine default
    take_spammers: bool = False
    spammer_charge: float = 2.0
    max_long_multiple: float = 15.0  # Position/size at which bids stop
    max_short_multiple: float = 15.0  # -Position/size at which asks stop

    # Reference data
    venue_symbols: dict[str, str] = Field(default_factory=dict)  # venue -> native symbol
    reference_depth_quote: float | None = None  # Fixed depth instead of equity * size_fraction


class LedgerConfig(BaseModel):
    cluster: Cluster = Cluster.MAINNET
    owner: str = ""  # Signer public key
    account: str = ""  # Portfolio account address
    cache: str = ""  # Price cache account address
    sequence_program_id: str | None = None  # Overrides the cluster default
    paper_balance: float = 10_000.0  # Quote balance seeded by the paper ledger


class EngineConfig(BaseModel):
    interval: float = Field(default=10.0, gt=0)  # Seconds between quoting cycles
    state_refresh_interval: float = Field(default=0.5, gt=0)
    batch: int = Field(default=2, ge=1)  # Instruments per transaction
    portfolio_lean_coeff: float = 0.001  # Shift when portfolio value equals equity
    freshness_margin: float = 2.0  # Seconds the book must lead the last order update
    take_epsilon: float = 0.0005
    time_in_force: float | None = None  # Default order expiry in seconds
    cancel_on_start: bool = True
    sequence_init_backoff: float = 1.0
    sequence_init_max_backoff: float = 30.0
    max_quote_age: float | None = None  # Seconds before a reference quote is stale


class ListenerConfig(BaseModel):
    venues: list[str] = Field(default_factory=lambda: ["binance-futures"])
    groups: list[list[str]] = Field(default_factory=list)  # Instrument names per unit
    resubscribe_backoff: float = Field(default=1.0, gt=0)  # seconds, doubled per failure
    max_resubscribe_backoff: float = Field(default=30.0, gt=0)


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"
    metrics_port: int = 9090
    metrics_enabled: bool = True


class CollaboratorConfig(BaseModel):
    """Import paths (``module:attr``) of factories taking ``Settings``."""

    ledger: str = "perp_mm.ledger.paper:PaperLedger.from_settings"
    decoder: str = "perp_mm.ledger.decoder:JsonAccountDecoder.from_settings"
    feed: str = "perp_mm.marketdata.ccxt_feed:CcxtBookFeed.from_settings"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level application settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    listeners: ListenerConfig = Field(default_factory=ListenerConfig)
    instruments: list[InstrumentConfig] = Field(default_factory=list)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    collaborators: CollaboratorConfig = Field(default_factory=CollaboratorConfig)

    model_config = {"env_prefix": "PERP_MM_", "env_nested_delimiter": "__"}

    @model_validator(mode="after")
    def _check_instruments(self) -> "Settings":
        names = [i.name for i in self.instruments]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate instrument names: {sorted(duplicates)}")

        indexes = [i.market_index for i in self.instruments]
        if len(set(indexes)) != len(indexes):
            raise ValueError("Duplicate market_index values")

        venues = set(self.listeners.venues)
        for inst in self.instruments:
            if not venues.intersection(inst.venue_symbols):
                raise ValueError(
                    f"{inst.name} has no symbol on any configured venue {sorted(venues)}"
                )

        known = set(names)
        for group in self.listeners.groups:
            unknown = [n for n in group if n not in known]
            if unknown:
                raise ValueError(f"Listener group references unknown instruments: {unknown}")
        return self

    def instrument(self, name: str) -> InstrumentConfig:
        """Look up an instrument by name. Raises UnknownInstrumentError."""
        from .errors import UnknownInstrumentError

        for inst in self.instruments:
            if inst.name == name:
                return inst
        raise UnknownInstrumentError(f"Instrument {name} is not configured")

    def time_in_force(self, inst: InstrumentConfig) -> float | None:
        return inst.time_in_force if inst.time_in_force is not None else self.engine.time_in_force

    def validate_startup(self) -> None:
        """Checks that only matter when actually trading."""
        from .errors import ConfigError

        if not self.instruments:
            raise ConfigError("No instruments configured")
        if not self.ledger.owner or not self.ledger.account or not self.ledger.cache:
            raise ConfigError("ledger.owner, ledger.account and ledger.cache are required")


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.

    Raises:
        ConfigError: if the file is missing or the content does not validate.
    """
    from .errors import ConfigError

    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        import tomli

        with open(path, "rb") as f:
            data = tomli.load(f)

    if overrides:
        data.update(overrides)

    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
