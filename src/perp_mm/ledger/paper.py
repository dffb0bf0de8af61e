"""Paper ledger: in-memory ``ILedgerClient`` with no network calls.

Stores raw account bytes, keeps a bounded transaction history and
simulates the two programs the market maker depends on:

* the sequence program: ``InitSequence`` is idempotent, and a
  ``CheckAndSetSequence`` carrying a counter not above the last accepted one
  fails the whole transaction;
* resting orders of the portfolio account (JSON layout): ``CancelAllOrders``
  clears an instrument's orders and non-IOC ``PlaceOrder`` adds one. Orders
  never fill.

Transactions are atomic: state changes apply only when every instruction
passes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel

from perp_mm.core.enums import OrderType
from perp_mm.core.errors import FenceRejectedError, LedgerError
from perp_mm.execution.instructions import (
    CancelAllOrders,
    CheckAndSetSequence,
    InitSequence,
    Instruction,
    PlaceOrder,
)

from .decoder import AccountPayload, BookSidePayload, CachePayload, OrderPayload, encode

if TYPE_CHECKING:
    from perp_mm.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordedTransaction:
    signature: str
    instructions: tuple[Instruction, ...]


class PaperLedger:
    """In-memory ledger.

    Parameters
    ----------
    account:
        Portfolio account whose resting orders are simulated. ``None``
        disables order simulation.
    max_history:
        Number of recorded and failed transactions kept; older ones are
        dropped.
    """

    def __init__(self, account: str | None = None, max_history: int = 1000) -> None:
        self._accounts: dict[str, bytes] = {}
        self._sequences: dict[str, int] = {}  # address -> last accepted
        self._account = account
        self._lock = asyncio.Lock()
        self.transactions: deque[RecordedTransaction] = deque(maxlen=max_history)
        self.failed: deque[tuple[tuple[Instruction, ...], Exception]] = deque(maxlen=max_history)
        self._fail_next: list[Exception] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> PaperLedger:
        """Paper ledger seeded with an empty account, a cache and empty books."""
        ledger = cls(account=settings.ledger.account)
        ledger.put_account(
            settings.ledger.account,
            AccountPayload(owner=settings.ledger.owner, quote_balance=settings.ledger.paper_balance),
        )
        ledger.put_account(settings.ledger.cache, CachePayload())
        for inst in settings.instruments:
            ledger.put_account(inst.bids, BookSidePayload())
            ledger.put_account(inst.asks, BookSidePayload())
        logger.info(
            "Paper ledger seeded: account=%s balance=%.2f instruments=%d",
            settings.ledger.account,
            settings.ledger.paper_balance,
            len(settings.instruments),
        )
        return ledger

    # ------------------------------------------------------------------
    # Account storage
    # ------------------------------------------------------------------

    def put_account(self, address: str, data: bytes | BaseModel) -> None:
        self._accounts[address] = data if isinstance(data, bytes) else encode(data)

    def remove_account(self, address: str) -> None:
        self._accounts.pop(address, None)

    def account_payload(self) -> AccountPayload | None:
        if self._account is None or self._account not in self._accounts:
            return None
        return AccountPayload.model_validate_json(self._accounts[self._account])

    def sequence_value(self, address: str) -> int | None:
        return self._sequences.get(address)

    def fail_next(self, exc: Exception) -> None:
        """Make the next ``send_transaction`` raise ``exc``."""
        self._fail_next.append(exc)

    # ------------------------------------------------------------------
    # ILedgerClient
    # ------------------------------------------------------------------

    def find_program_address(self, seeds: Sequence[bytes | str], program_id: str) -> tuple[str, int]:
        digest = hashlib.sha256()
        for seed in seeds:
            digest.update(seed.encode("utf-8") if isinstance(seed, str) else seed)
        digest.update(program_id.encode("utf-8"))
        digest.update(b"ProgramDerivedAddress")
        return digest.hexdigest(), 255

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> list[bytes | None]:
        async with self._lock:
            return [self._accounts.get(a) for a in addresses]

    async def send_transaction(self, instructions: Sequence[Instruction]) -> str:
        batch = tuple(instructions)
        async with self._lock:
            try:
                if self._fail_next:
                    raise self._fail_next.pop(0)
                sequences, account = self._execute(batch)
            except LedgerError as exc:
                self.failed.append((batch, exc))
                raise

            self._sequences.update(sequences)
            if account is not None and self._account is not None:
                self._accounts[self._account] = encode(account)
            signature = uuid.uuid4().hex
            self.transactions.append(RecordedTransaction(signature, batch))
            return signature

    def _execute(self, batch: tuple[Instruction, ...]) -> tuple[dict[str, int], AccountPayload | None]:
        """Dry-run the batch against copies of the state."""
        sequences: dict[str, int] = {}
        account = self.account_payload()

        for ix in batch:
            if isinstance(ix, InitSequence):
                if ix.sequence_account not in self._sequences:
                    sequences.setdefault(ix.sequence_account, 0)
            elif isinstance(ix, CheckAndSetSequence):
                last = sequences.get(ix.sequence_account, self._sequences.get(ix.sequence_account))
                if last is None:
                    raise LedgerError(f"Sequence account {ix.sequence_account} is not initialized")
                if ix.sequence_number <= last:
                    raise FenceRejectedError(ix.sequence_account, ix.sequence_number, last)
                sequences[ix.sequence_account] = ix.sequence_number
            elif isinstance(ix, CancelAllOrders):
                if account is not None:
                    account.open_orders = [
                        o for o in account.open_orders if o.market_index != ix.market_index
                    ]
            elif isinstance(ix, PlaceOrder):
                if account is not None and ix.order_type != OrderType.IOC:
                    account.open_orders.append(
                        OrderPayload(
                            market_index=ix.market_index,
                            side=ix.side,
                            price_lots=ix.price_lots,
                            size_lots=ix.size_lots,
                            client_order_id=ix.client_order_id,
                        )
                    )
            else:
                raise LedgerError(f"Unsupported instruction {type(ix).__name__}")
        return sequences, account
