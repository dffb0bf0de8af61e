"""JSON account layout used by the paper ledger, and its decoder.

Live deployments plug in a decoder for the exchange's binary layouts through
``collaborators.decoder``. The paper ledger stores accounts as the JSON
payloads below so that dry runs exercise the same decode path.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

from perp_mm.core.enums import BookSideType, Side
from perp_mm.core.errors import DecodeError
from perp_mm.core.models import (
    BookLevel,
    OnChainBookSide,
    PortfolioAccount,
    PriceCache,
    RestingOrder,
    SubAccount,
)

if TYPE_CHECKING:
    from perp_mm.core.config import Settings


class OrderPayload(BaseModel):
    market_index: int
    side: Side
    price_lots: int
    size_lots: int
    client_order_id: int = 0


class AccountPayload(BaseModel):
    owner: str
    delegate: str | None = None
    quote_balance: float = 0.0
    base_positions: dict[int, float] = Field(default_factory=dict)
    open_orders: list[OrderPayload] = Field(default_factory=list)
    sub_account_keys: list[str] = Field(default_factory=list)


class CachePayload(BaseModel):
    prices: dict[int, float] = Field(default_factory=dict)  # market_index -> oracle price


class SubAccountPayload(BaseModel):
    market: str = ""


class BookSidePayload(BaseModel):
    levels: list[tuple[int, int]] = Field(default_factory=list)  # (price_lots, size_lots)


def encode(payload: BaseModel) -> bytes:
    return payload.model_dump_json().encode("utf-8")


class JsonAccountDecoder:
    """``IAccountDecoder`` for the JSON account layout."""

    @classmethod
    def from_settings(cls, settings: Settings) -> JsonAccountDecoder:
        return cls()

    @staticmethod
    def _parse(model: type[BaseModel], address: str, data: bytes):  # type: ignore[no-untyped-def]
        try:
            return model.model_validate_json(data)
        except ValidationError as exc:
            raise DecodeError(f"Malformed {model.__name__} at {address}: {exc}") from exc

    def decode_cache(self, address: str, data: bytes) -> PriceCache:
        payload = self._parse(CachePayload, address, data)
        prices = tuple(payload.prices[i] for i in sorted(payload.prices))
        return PriceCache(address=address, prices=prices, data=payload)

    def decode_account(self, address: str, data: bytes) -> PortfolioAccount:
        payload = self._parse(AccountPayload, address, data)
        return PortfolioAccount(
            address=address,
            owner=payload.owner,
            base_positions=dict(payload.base_positions),
            open_orders=tuple(
                RestingOrder(
                    market_index=o.market_index,
                    side=o.side,
                    price_lots=o.price_lots,
                    size_lots=o.size_lots,
                    client_order_id=o.client_order_id,
                )
                for o in payload.open_orders
            ),
            sub_account_keys=tuple(k for k in payload.sub_account_keys if k),
            delegate=payload.delegate,
            data=payload,
        )

    def decode_sub_account(self, address: str, data: bytes) -> SubAccount:
        return SubAccount(address=address, data=self._parse(SubAccountPayload, address, data))

    def decode_book_side(self, instrument: str, side: BookSideType, data: bytes) -> OnChainBookSide:
        payload = self._parse(BookSidePayload, instrument, data)
        levels = sorted(payload.levels, key=lambda lvl: lvl[0], reverse=side == BookSideType.BID)
        return OnChainBookSide(
            side=side,
            levels=tuple(BookLevel(price_lots=p, size_lots=s) for p, s in levels if s > 0),
        )

    def equity(self, account: PortfolioAccount, cache: PriceCache) -> float:
        """Quote balance plus positions marked at the cached oracle prices."""
        balance = account.data.quote_balance if isinstance(account.data, AccountPayload) else 0.0
        prices = cache.data.prices if isinstance(cache.data, CachePayload) else {}
        return balance + sum(
            position * prices.get(index, 0.0) for index, position in account.base_positions.items()
        )
