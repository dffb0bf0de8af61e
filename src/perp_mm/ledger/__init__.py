"""Ledger clients and account layouts bundled with the market maker."""

from perp_mm.ledger.decoder import JsonAccountDecoder
from perp_mm.ledger.paper import PaperLedger

__all__ = [
    "JsonAccountDecoder",
    "PaperLedger",
]
