"""Sequence fencing: at most one "latest" instruction stream per instrument.

Every quoting transaction starts with a check-and-set instruction carrying a
counter. The on-chain sequence program accepts only counters strictly above
the last accepted one and otherwise fails the whole transaction, so a
delayed transaction from an older cycle can never land after a newer one
together with its stale orders.

Counters are wall-clock milliseconds, bumped to stay strictly above the last
value issued by this process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from perp_mm.core.clock import IClock
from perp_mm.core.context import EngineContext
from perp_mm.core.enums import Cluster
from perp_mm.core.errors import ConfigError, UnknownInstrumentError
from perp_mm.core.interfaces import ILedgerClient

from .instructions import CheckAndSetSequence, InitSequence

logger = logging.getLogger(__name__)

SEQUENCE_PROGRAM_IDS: dict[Cluster, str | None] = {
    Cluster.DEVNET: None,
    Cluster.TESTNET: "FThcgpaJM8WiEbK5rw3i31Ptb8Hm4rQ27TrhfzeR1uUy",
    Cluster.MAINNET: "GDDMwNyyx8uB6zrqwBFHjLLG3TBYk2F8Az4yrQC5RzMp",
}


def resolve_program_id(cluster: Cluster, override: str | None = None) -> str:
    program_id = override or SEQUENCE_PROGRAM_IDS.get(cluster)
    if not program_id:
        raise ConfigError(f"No sequence program deployed on {cluster.value}; set ledger.sequence_program_id")
    return program_id


@dataclass
class SequenceState:
    instrument: str
    address: str
    bump: int
    last_submitted: int = 0
    initialized: bool = False


class SequenceFence:
    """Per-instrument fencing tokens.

    Parameters
    ----------
    ledger:
        Used to derive sequence account addresses and send initialization.
    owner:
        Signer public key; part of every sequence account's seeds.
    program_id:
        Sequence program address.
    clock:
        Source of the wall-clock counter values.
    instruments:
        Names of the fenced instruments.
    """

    def __init__(
        self,
        ledger: ILedgerClient,
        owner: str,
        program_id: str,
        clock: IClock,
        instruments: list[str],
        backoff: float = 1.0,
        max_backoff: float = 30.0,
    ) -> None:
        self._ledger = ledger
        self._owner = owner
        self._program_id = program_id
        self._clock = clock
        self._backoff = backoff
        self._max_backoff = max_backoff
        self._states: dict[str, SequenceState] = {}
        for name in instruments:
            # Seeds: instrument name bytes, then the owner public key.
            address, bump = ledger.find_program_address([name.encode("utf-8"), owner], program_id)
            self._states[name] = SequenceState(instrument=name, address=address, bump=bump)

    @property
    def program_id(self) -> str:
        return self._program_id

    def state(self, instrument: str) -> SequenceState:
        try:
            return self._states[instrument]
        except KeyError:
            raise UnknownInstrumentError(f"No sequence account for {instrument}") from None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def init_instruction(self, instrument: str) -> InitSequence:
        state = self.state(instrument)
        return InitSequence(
            instrument=instrument,
            program_id=self._program_id,
            sequence_account=state.address,
            owner=self._owner,
            bump=state.bump,
        )

    async def initialize(
        self,
        instruments: list[str] | None = None,
        context: EngineContext | None = None,
    ) -> bool:
        """Send the idempotent initialize instruction, retrying until it lands.

        Returns False only if a stop was requested before it succeeded.
        """
        names = instruments if instruments is not None else list(self._states)
        instructions = [self.init_instruction(n) for n in names]
        if not instructions:
            return True

        attempt = 0
        while context is None or context.running:
            try:
                signature = await self._ledger.send_transaction(instructions)
            except asyncio.CancelledError:
                raise
            except Exception:
                attempt += 1
                delay = min(self._backoff * (2 ** (attempt - 1)), self._max_backoff)
                logger.exception(
                    "Failed to initialize sequence accounts %s (attempt %d, backoff %.1fs)",
                    names,
                    attempt,
                    delay,
                )
                if context is not None:
                    await context.sleep(delay)
                else:
                    await asyncio.sleep(delay)
                continue

            for name in names:
                self._states[name].initialized = True
            logger.info("Sequence accounts initialized for %s (sig=%s)", names, signature)
            return True
        return False

    # ------------------------------------------------------------------
    # Fencing
    # ------------------------------------------------------------------

    def next_value(self, instrument: str) -> int:
        state = self.state(instrument)
        value = max(self._clock.now_ms(), state.last_submitted + 1)
        state.last_submitted = value
        return value

    def check_instruction(self, instrument: str) -> CheckAndSetSequence:
        """Fence-check instruction carrying a fresh, strictly increasing counter."""
        state = self.state(instrument)
        return CheckAndSetSequence(
            instrument=instrument,
            program_id=self._program_id,
            sequence_account=state.address,
            owner=self._owner,
            sequence_number=self.next_value(instrument),
        )
