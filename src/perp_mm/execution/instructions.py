"""Typed instructions handed to the ledger client.

The sequence-enforcer instructions carry their exact wire payload:
an 8-byte method discriminator (first 8 bytes of ``sha256("global:<method>")``)
followed by little-endian method fields. Exchange order instructions are
typed records; encoding them is the ledger client's job.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import ClassVar

from perp_mm.core.enums import InstructionKind, OrderType, Side

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

# Exchange-side cap on orders touched by one cancel/match instruction.
DEFAULT_ORDER_LIMIT = 20


def method_discriminator(method: str) -> bytes:
    return hashlib.sha256(f"global:{method}".encode()).digest()[:8]


def encode_initialize(bump: int, symbol: str) -> bytes:
    encoded = symbol.encode("utf-8")
    return (
        method_discriminator("initialize")
        + struct.pack("<B", bump)
        + struct.pack("<I", len(encoded))
        + encoded
    )


def encode_check_and_set(sequence_number: int) -> bytes:
    return method_discriminator("check_and_set_sequence_number") + struct.pack("<Q", sequence_number)


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    """Base for every instruction; ``instrument`` names the market it concerns."""

    kind: ClassVar[InstructionKind]

    instrument: str


@dataclass(frozen=True)
class InitSequence(Instruction):
    kind: ClassVar[InstructionKind] = InstructionKind.INIT_SEQUENCE

    program_id: str
    sequence_account: str
    owner: str
    bump: int

    @property
    def keys(self) -> tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.sequence_account, is_signer=False, is_writable=True),
            AccountMeta(self.owner, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        )

    @property
    def data(self) -> bytes:
        return encode_initialize(self.bump, self.instrument)


@dataclass(frozen=True)
class CheckAndSetSequence(Instruction):
    kind: ClassVar[InstructionKind] = InstructionKind.CHECK_AND_SET_SEQUENCE

    program_id: str
    sequence_account: str
    owner: str
    sequence_number: int

    @property
    def keys(self) -> tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.sequence_account, is_signer=False, is_writable=True),
            AccountMeta(self.owner, is_signer=True, is_writable=False),
        )

    @property
    def data(self) -> bytes:
        return encode_check_and_set(self.sequence_number)


@dataclass(frozen=True)
class CancelAllOrders(Instruction):
    kind: ClassVar[InstructionKind] = InstructionKind.CANCEL_ALL

    market_index: int
    limit: int = DEFAULT_ORDER_LIMIT


@dataclass(frozen=True)
class PlaceOrder(Instruction):
    kind: ClassVar[InstructionKind] = InstructionKind.PLACE_ORDER

    market_index: int
    side: Side
    price_lots: int
    size_lots: int
    order_type: OrderType
    client_order_id: int
    expiry_timestamp: int = 0  # Unix seconds, 0 = no expiry
    limit: int = DEFAULT_ORDER_LIMIT
