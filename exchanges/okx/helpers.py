"""
OKX identifiers and error codes.

Instrument ids:
    spot       BTC-USDT
    usdt_swap  BTC-USDT-SWAP
    usd_swap   BTC-USD-SWAP

Client order ids are "<tag><counter><purpose>" with only letters and digits,
at most 32 characters. The counter is process-wide and monotonic.
"""

import itertools
import threading

from core.config import to_alphanumeric
from core.schemas import ContractType

EXCHANGE_NAME = "okx"

CLIENT_ID_MAX_LENGTH = 32
TAG_MAX_LENGTH = 16

# Order status strings pushed by OKX
STATUS_LIVE = "live"
STATUS_PARTIALLY_FILLED = "partially_filled"
STATUS_FILLED = "filled"
STATUS_CANCELED = "canceled"
STATUS_MMP_CANCELED = "mmp_canceled"

# cancel-order sCode values
CANCEL_NOT_FOUND = "51400"
CANCEL_ALREADY_CANCELLED = "51401"
CANCEL_ALREADY_FILLED = "51402"
CANCEL_NOT_CANCELLABLE = "51404"
CANCEL_NOTHING_TO_CANCEL = "51405"
CANCEL_IN_PROGRESS = "51410"

CANCEL_TERMINAL_CODES = frozenset({CANCEL_NOT_FOUND, CANCEL_ALREADY_CANCELLED, CANCEL_ALREADY_FILLED})
CANCEL_QUIET_CODES = frozenset({CANCEL_IN_PROGRESS, CANCEL_NOTHING_TO_CANCEL, CANCEL_NOT_CANCELLABLE})

# amend-order sCode values
AMEND_NOT_FOUND = "51503"
AMEND_ALREADY_CANCELLED = "51509"
AMEND_ALREADY_FILLED = "51510"

AMEND_TERMINAL_CODES = frozenset({AMEND_NOT_FOUND, AMEND_ALREADY_CANCELLED, AMEND_ALREADY_FILLED})

# order query code
QUERY_NOT_FOUND = "51603"

# account config
ACCOUNT_LEVEL_SINGLE_CURRENCY_MARGIN = "2"
POSITION_MODE_LONG_SHORT = "long_short_mode"


def spot_inst_id(base_ccy: str, quote_ccy: str) -> str:
    """
    Example:
        >>> spot_inst_id("btc", "usdt")
        'BTC-USDT'
    """
    return f"{base_ccy.upper()}-{quote_ccy.upper()}"


def swap_inst_id(ccy: str, contract_type: ContractType) -> str:
    """
    Example:
        >>> swap_inst_id("btc", ContractType.USDT_SWAP)
        'BTC-USDT-SWAP'
    """
    contract_type = ContractType(contract_type)
    if contract_type == ContractType.USDT_SWAP:
        return f"{ccy.upper()}-USDT-SWAP"
    if contract_type == ContractType.USD_SWAP:
        return f"{ccy.upper()}-USD-SWAP"
    raise ValueError(f"not a swap contract type: {contract_type}")


class IdGenerator:
    """Process-wide counters for client order ids and amend request ids"""

    def __init__(self, start: int = 0):
        self._orders = itertools.count(start + 1)
        self._amends = itertools.count(start + 1)
        self._lock = threading.Lock()

    def client_order_id(self, tag: str, purpose: str = "") -> str:
        with self._lock:
            n = next(self._orders)
        return to_alphanumeric(f"{tag}{n:05d}{purpose}", CLIENT_ID_MAX_LENGTH)

    def amend_request_id(self) -> str:
        with self._lock:
            n = next(self._amends)
        return f"amend{n}"


id_generator = IdGenerator()
