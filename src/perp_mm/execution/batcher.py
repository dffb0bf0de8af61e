"""ExecutionBatcher: packs per-instrument instruction sets into transactions.

Sets are accumulated instrument by instrument. Once ``batch_size``
instruments are pending they are sent as one transaction; ``flush()`` sends
the remainder at the end of a cycle. A set is never split across
transactions, so cancel-then-place for one instrument always lands together.

Submissions run as background tasks and failures are logged, never retried:
the next cycle recomputes everything from fresh state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Sequence

from perp_mm.core.errors import FenceRejectedError
from perp_mm.core.interfaces import ILedgerClient
from perp_mm.observability.metrics import record_submission_latency, record_transaction

from .instructions import Instruction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transaction:
    instructions: tuple[Instruction, ...]
    instruments: tuple[str, ...]


@dataclass(frozen=True)
class SubmissionOutcome:
    transaction: Transaction
    signature: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ExecutionBatcher:
    """Batches instruction sets and tracks their submissions."""

    def __init__(self, ledger: ILedgerClient, batch_size: int = 2) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._ledger = ledger
        self._batch_size = batch_size
        self._instructions: list[Instruction] = []
        self._instruments: list[str] = []
        self._in_flight: set[asyncio.Task[SubmissionOutcome]] = set()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def pending_instruments(self) -> list[str]:
        return list(self._instruments)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def add(self, instrument: str, instructions: Sequence[Instruction]) -> None:
        """Queue one instrument's set. Empty sets are ignored."""
        if not instructions:
            return
        self._instructions.extend(instructions)
        self._instruments.append(instrument)
        if len(self._instruments) >= self._batch_size:
            self._submit_pending()

    def flush(self) -> None:
        """Send whatever is pending."""
        if self._instruments:
            self._submit_pending()

    async def drain(self) -> list[SubmissionOutcome]:
        """Wait for every in-flight submission and return their outcomes."""
        if not self._in_flight:
            return []
        tasks = list(self._in_flight)
        return list(await asyncio.gather(*tasks))

    def _submit_pending(self) -> None:
        tx = Transaction(
            instructions=tuple(self._instructions),
            instruments=tuple(self._instruments),
        )
        self._instructions = []
        self._instruments = []
        task = asyncio.create_task(self._send(tx), name=f"submit:{'+'.join(tx.instruments)}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _send(self, tx: Transaction) -> SubmissionOutcome:
        started = time.monotonic()
        try:
            signature = await self._ledger.send_transaction(list(tx.instructions))
        except asyncio.CancelledError:
            raise
        except FenceRejectedError as exc:
            record_transaction(tx.instruments, "fence_rejected")
            logger.warning(
                "Transaction for %s rejected by sequence fence: %s",
                list(tx.instruments),
                exc,
                extra={"instruments": list(tx.instruments)},
            )
            return SubmissionOutcome(tx, error=exc)
        except Exception as exc:
            record_transaction(tx.instruments, "failed")
            logger.exception(
                "Failed to submit transaction for %s",
                list(tx.instruments),
                extra={"instruments": list(tx.instruments)},
            )
            return SubmissionOutcome(tx, error=exc)
        finally:
            record_submission_latency(time.monotonic() - started)

        record_transaction(tx.instruments, "ok")
        logger.info(
            "Submitted %d instructions for %s (sig=%s)",
            len(tx.instructions),
            list(tx.instruments),
            signature,
            extra={"instruments": list(tx.instruments)},
        )
        return SubmissionOutcome(tx, signature=signature)
