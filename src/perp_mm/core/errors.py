"""Custom exception hierarchy for the market maker."""


class MarketMakerError(Exception):
    """Base exception for all market maker errors."""


# --- Configuration ---
class ConfigError(MarketMakerError):
    """Invalid or missing configuration. Fatal at startup."""


class UnknownInstrumentError(ConfigError):
    """An instrument name is referenced but not configured."""


class AccountOwnershipError(ConfigError):
    """The configured portfolio account is not owned by the configured owner."""


# --- Ledger ---
class LedgerError(MarketMakerError):
    """Ledger communication error (account fetch or transaction submission)."""


class FenceRejectedError(LedgerError):
    """A check-and-set sequence instruction carried a stale counter.

    The whole transaction it was part of is rejected.
    """

    def __init__(self, sequence_account: str, submitted: int, last_accepted: int):
        self.sequence_account = sequence_account
        self.submitted = submitted
        self.last_accepted = last_accepted
        super().__init__(
            f"Sequence [{sequence_account}]: {submitted} <= last accepted {last_accepted}"
        )


# --- State ---
class DecodeError(MarketMakerError):
    """Account bytes are missing or cannot be decoded."""
