"""Enumerations used across the market maker."""

from enum import Enum


class Cluster(str, Enum):
    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class BookSideType(str, Enum):
    BID = "bid"
    ASK = "ask"


class OrderType(str, Enum):
    IOC = "ioc"
    POST_ONLY_SLIDE = "postOnlySlide"


class InstructionKind(str, Enum):
    INIT_SEQUENCE = "init_sequence"
    CHECK_AND_SET_SEQUENCE = "check_and_set_sequence"
    CANCEL_ALL = "cancel_all"
    PLACE_ORDER = "place_order"


class ServiceStatus(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class QuoteDecision(str, Enum):
    """Outcome of one instrument's quoting pass, for logs and tests."""

    SKIP = "skip"
    NO_OP = "no_op"
    REQUOTE = "requote"
    TAKE = "take"
    TAKE_AND_REQUOTE = "take_and_requote"
