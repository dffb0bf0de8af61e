"""Protocol interfaces for the external collaborators.

The ledger wire client, the account layout decoder and the reference market
data feed live outside this package. Implementations can be swapped
(live / paper / test fakes) without changing callers.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .enums import BookSideType
from .events import BookDelta
from .models import OnChainBookSide, PortfolioAccount, PriceCache, SubAccount

if TYPE_CHECKING:
    from perp_mm.execution.instructions import Instruction


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@runtime_checkable
class ILedgerClient(Protocol):
    """Signs and sends transactions, reads accounts."""

    async def send_transaction(self, instructions: Sequence["Instruction"]) -> str:
        """Send one atomic transaction. Returns the signature.

        Raises ``LedgerError`` (or ``FenceRejectedError``) on failure.
        """
        ...

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> list[bytes | None]:
        """Fetch raw account data in one round trip, ``None`` for missing accounts."""
        ...

    def find_program_address(self, seeds: Sequence[bytes | str], program_id: str) -> tuple[str, int]:
        """Derive a program address and its bump seed.

        ``str`` seeds are public keys and contribute their decoded bytes.
        """
        ...


# ---------------------------------------------------------------------------
# Account decoding
# ---------------------------------------------------------------------------

@runtime_checkable
class IAccountDecoder(Protocol):
    """Decodes exchange-specific account layouts into typed snapshots."""

    def decode_cache(self, address: str, data: bytes) -> PriceCache: ...

    def decode_account(self, address: str, data: bytes) -> PortfolioAccount: ...

    def decode_sub_account(self, address: str, data: bytes) -> SubAccount: ...

    def decode_book_side(
        self, instrument: str, side: BookSideType, data: bytes
    ) -> OnChainBookSide: ...

    def equity(self, account: PortfolioAccount, cache: PriceCache) -> float:
        """Portfolio equity in quote currency."""
        ...


# ---------------------------------------------------------------------------
# Reference market data
# ---------------------------------------------------------------------------

@runtime_checkable
class IBookFeed(Protocol):
    """Normalized book-change stream of one venue.

    The returned iterator is lazy, unbounded and not restartable.
    """

    def stream(self, venue: str, symbols: Sequence[str]) -> AsyncIterator[BookDelta]: ...
