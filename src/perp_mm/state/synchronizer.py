"""StateSynchronizer: periodic batched read of on-chain state.

Each poll fetches, in one round trip, the price cache, the portfolio account,
the in-basket sub-accounts referenced by the previously decoded account and
both book sides of every instrument. The decoded ``AccountSnapshot`` replaces
the published one as a unit. A failed read or decode keeps the previous
snapshot and is retried on the next interval.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Callable

from perp_mm.core.context import EngineContext
from perp_mm.core.enums import BookSideType
from perp_mm.core.errors import AccountOwnershipError, ConfigError, DecodeError, LedgerError
from perp_mm.core.interfaces import IAccountDecoder, ILedgerClient
from perp_mm.core.models import AccountSnapshot, Instrument, PortfolioAccount
from perp_mm.core.service import HealthReport, PeriodicService
from perp_mm.observability.metrics import record_poll_failure, record_poll_latency, update_equity

logger = logging.getLogger(__name__)

EquitySink = Callable[[float], None]


def _require(data: bytes | None, address: str, what: str) -> bytes:
    if data is None:
        raise DecodeError(f"{what} account {address} not found")
    return data


class StateSynchronizer(PeriodicService):
    """Publishes ``AccountSnapshot`` values into the engine context.

    Parameters
    ----------
    context:
        Receives every successfully decoded snapshot.
    ledger:
        Account reader.
    decoder:
        Turns raw account bytes into typed state.
    instruments:
        Instruments whose book sides are read.
    owner:
        Configured signer; must own the portfolio account.
    account:
        Portfolio account address.
    cache:
        Price cache account address.
    interval:
        Seconds between polls.
    """

    def __init__(
        self,
        context: EngineContext,
        ledger: ILedgerClient,
        decoder: IAccountDecoder,
        instruments: list[Instrument],
        owner: str,
        account: str,
        cache: str,
        interval: float = 0.5,
    ) -> None:
        super().__init__(context, interval)
        self._ledger = ledger
        self._decoder = decoder
        self._instruments = instruments
        self._owner = owner
        self._account_address = account
        self._cache_address = cache
        self._previous_account: PortfolioAccount | None = None
        self._equity_sinks: list[EquitySink] = []

    def add_equity_sink(self, sink: EquitySink) -> None:
        """Register a callable receiving equity after every published snapshot."""
        self._equity_sinks.append(sink)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def bootstrap(self) -> AccountSnapshot:
        """Verify account ownership, then perform one full poll.

        Raises:
            ConfigError: the account is missing or not controlled by the signer.
            LedgerError / DecodeError: the first full poll failed.
        """
        (data,) = await self._ledger.get_multiple_accounts([self._account_address])
        if data is None:
            raise ConfigError(f"Portfolio account {self._account_address} not found")
        account = self._decode(lambda: self._decoder.decode_account(self._account_address, data))
        if not account.is_controlled_by(self._owner):
            raise AccountOwnershipError(
                f"Account {self._account_address} is owned by {account.owner} "
                f"(delegate {account.delegate}), not controlled by {self._owner}"
            )
        self._previous_account = account

        snapshot = await self.load()
        self._publish(snapshot)
        logger.info(
            "Bootstrapped account %s (equity=%.2f, %d sub-accounts)",
            self._account_address,
            snapshot.equity,
            len(snapshot.account.sub_accounts),
        )
        return snapshot

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def load(self) -> AccountSnapshot:
        """Fetch and decode one snapshot without publishing it."""
        sub_keys = list(self._previous_account.sub_account_keys) if self._previous_account else []
        bid_addresses = [inst.config.bids for inst in self._instruments]
        ask_addresses = [inst.config.asks for inst in self._instruments]
        addresses = [
            self._cache_address,
            self._account_address,
            *sub_keys,
            *bid_addresses,
            *ask_addresses,
        ]

        # Stamped before the read.
        fetched_at = self._context.clock.time()
        started = time.monotonic()
        raw = await self._ledger.get_multiple_accounts(addresses)
        record_poll_latency(time.monotonic() - started)
        if len(raw) != len(addresses):
            raise DecodeError(f"Requested {len(addresses)} accounts, received {len(raw)}")

        n_sub = len(sub_keys)
        n_inst = len(self._instruments)
        cache_data, account_data = raw[0], raw[1]
        sub_data = raw[2 : 2 + n_sub]
        bids_data = raw[2 + n_sub : 2 + n_sub + n_inst]
        asks_data = raw[2 + n_sub + n_inst :]

        def decode_all() -> AccountSnapshot:
            cache = self._decoder.decode_cache(
                self._cache_address, _require(cache_data, self._cache_address, "Cache")
            )
            account = self._decoder.decode_account(
                self._account_address, _require(account_data, self._account_address, "Portfolio")
            )
            sub_accounts = {
                key: self._decoder.decode_sub_account(key, _require(data, key, "Sub"))
                for key, data in zip(sub_keys, sub_data)
            }
            account = dataclasses.replace(account, sub_accounts=sub_accounts)

            bids = {}
            asks = {}
            for inst, bid_raw, ask_raw in zip(self._instruments, bids_data, asks_data):
                bids[inst.name] = self._decoder.decode_book_side(
                    inst.name, BookSideType.BID, _require(bid_raw, inst.config.bids, "Bids")
                )
                asks[inst.name] = self._decoder.decode_book_side(
                    inst.name, BookSideType.ASK, _require(ask_raw, inst.config.asks, "Asks")
                )

            return AccountSnapshot(
                fetched_at=fetched_at,
                cache=cache,
                account=account,
                bids=bids,
                asks=asks,
                equity=self._decoder.equity(account, cache),
            )

        return self._decode(decode_all)

    async def poll_once(self) -> AccountSnapshot | None:
        """Load and publish. Returns None, keeping the old snapshot, on failure."""
        try:
            snapshot = await self.load()
        except (LedgerError, DecodeError) as exc:
            record_poll_failure()
            logger.warning("State poll failed, keeping previous snapshot: %s", exc)
            return None
        self._publish(snapshot)
        return snapshot

    async def _work(self) -> None:
        await self.poll_once()

    def _publish(self, snapshot: AccountSnapshot) -> None:
        self._context.publish_snapshot(snapshot)
        self._previous_account = snapshot.account
        update_equity(snapshot.equity)
        for sink in self._equity_sinks:
            sink(snapshot.equity)

    @staticmethod
    def _decode(fn):  # type: ignore[no-untyped-def]
        try:
            return fn()
        except DecodeError:
            raise
        except Exception as exc:
            raise DecodeError(f"Failed to decode account data: {exc}") from exc

    def health_check(self) -> HealthReport:
        report = super().health_check()
        snapshot = self._context.snapshot
        report.details = {
            "snapshot_at": snapshot.fetched_at if snapshot is not None else None,
        }
        return report
