"""
Order Book Mirror

Local copy of one market's price ladder, maintained from snapshot and
incremental depth frames.

Data Structure:
    asks: SortedDict price -> size, ascending
    bids: SortedDict price -> size, descending (negated sort key)

Levels are stored with the Decimal parsed from the venue string. The
checksum text is the positional (non-exponent) form of each Decimal, which
reproduces the venue text including trailing zeros.

Concurrency:
    Every mutation and every multi-level read holds the book lock. The
    top-of-book pair is cached in plain attributes after each mutation and
    can be read without the lock.

Checksum (OKX scheme):
    For i in 0..24 append "bid_px:bid_sz" then "ask_px:ask_sz" when level i
    exists on that side, join with ":", CRC32, interpret as signed 32-bit.
"""

import threading
import zlib
from decimal import Decimal
from operator import neg
from typing import Iterable, List, Optional, Tuple

from sortedcontainers import SortedDict

from core.logging import get_logger
from core.utils.time import EPOCH, current_utc_datetime

Level = Tuple[Decimal, Decimal]

ZERO = Decimal(0)
CHECKSUM_DEPTH = 25


class OrderBook:
    """
    Sorted price ladders for one instrument.

    Attributes:
        inst_id: Instrument the book mirrors
        update_time: Local time of the last accepted mutation

    Example:
        >>> book = OrderBook("BTC-USDT")
        >>> book.rebuild(asks=[(Decimal("101"), Decimal("2"))], bids=[(Decimal("99"), Decimal("1"))])
        >>> book.middle()
        Decimal('100')
    """

    def __init__(self, inst_id: str):
        self.inst_id = inst_id
        self._asks: SortedDict = SortedDict()
        self._bids: SortedDict = SortedDict(neg)
        self._lock = threading.Lock()
        self._top: Tuple[Level, Level] = ((ZERO, ZERO), (ZERO, ZERO))
        self.update_time = EPOCH
        self.logger = get_logger(__name__)

    # ============================================
    # Mutation
    # ============================================

    def clear(self) -> None:
        with self._lock:
            self._asks.clear()
            self._bids.clear()
            self._refresh_top()

    def apply_ask(self, price: Decimal, size: Decimal) -> None:
        """Insert or replace an ask level; size zero removes it"""
        with self._lock:
            _apply(self._asks, price, size)
            self._refresh_top()

    def apply_bid(self, price: Decimal, size: Decimal) -> None:
        """Insert or replace a bid level; size zero removes it"""
        with self._lock:
            _apply(self._bids, price, size)
            self._refresh_top()

    def apply(self, asks: Iterable[Level], bids: Iterable[Level]) -> None:
        """Apply one incremental frame under a single lock hold"""
        with self._lock:
            for price, size in asks:
                _apply(self._asks, price, size)
            for price, size in bids:
                _apply(self._bids, price, size)
            self._refresh_top()

    def rebuild(self, asks: Iterable[Level], bids: Iterable[Level]) -> None:
        """Replace the whole book with a snapshot"""
        new_asks = SortedDict((p, s) for p, s in asks if s > 0)
        new_bids = SortedDict(neg, ((p, s) for p, s in bids if s > 0))
        with self._lock:
            self._asks = new_asks
            self._bids = new_bids
            self._refresh_top()

    def _refresh_top(self) -> None:
        bid = self._bids.peekitem(0) if self._bids else (ZERO, ZERO)
        ask = self._asks.peekitem(0) if self._asks else (ZERO, ZERO)
        self._top = (bid, ask)
        self.update_time = current_utc_datetime()

    # ============================================
    # Top of Book
    # ============================================

    def buy1(self) -> Decimal:
        """Best bid price, zero when the bid side is empty"""
        return self._top[0][0]

    def sell1(self) -> Decimal:
        """Best ask price, zero when the ask side is empty"""
        return self._top[1][0]

    def buy1_size(self) -> Decimal:
        return self._top[0][1]

    def sell1_size(self) -> Decimal:
        return self._top[1][1]

    def middle(self) -> Decimal:
        bid, ask = self._top
        return (bid[0] + ask[0]) / 2

    @property
    def empty(self) -> bool:
        bid, ask = self._top
        return bid[0] == 0 and ask[0] == 0

    def asks(self, depth: Optional[int] = None) -> List[Level]:
        with self._lock:
            return list(self._asks.items()[:depth])

    def bids(self, depth: Optional[int] = None) -> List[Level]:
        with self._lock:
            return list(self._bids.items()[:depth])

    # ============================================
    # Depth Queries
    # ============================================

    def vwap_buy(self, quantity: Decimal) -> Decimal:
        """Average price paid to buy `quantity` from the asks (sell1 if the book is too thin)"""
        with self._lock:
            vwap = _vwap(self._asks, quantity)
        return vwap if vwap is not None else self.sell1()

    def vwap_sell(self, quantity: Decimal) -> Decimal:
        """Average price received selling `quantity` into the bids (buy1 if the book is too thin)"""
        with self._lock:
            vwap = _vwap(self._bids, quantity)
        return vwap if vwap is not None else self.buy1()

    def max_buy_size_within_slip(self, slip: Decimal) -> Decimal:
        """Total ask size whose price is within `slip` (relative) of sell1, at least the top level"""
        with self._lock:
            if not self._asks:
                return ZERO
            top_price, total = self._asks.peekitem(0)
            for price, size in self._asks.items()[1:]:
                if price / top_price - 1 > slip:
                    break
                total += size
        return total

    def max_sell_size_within_slip(self, slip: Decimal) -> Decimal:
        """Total bid size whose price is within `slip` (relative) of buy1, at least the top level"""
        with self._lock:
            if not self._bids:
                return ZERO
            top_price, total = self._bids.peekitem(0)
            for price, size in self._bids.items()[1:]:
                if 1 - price / top_price > slip:
                    break
                total += size
        return total

    # ============================================
    # Integrity
    # ============================================

    def checksum(self) -> int:
        """Signed CRC32 over the first 25 levels, bid and ask interleaved"""
        with self._lock:
            bids = self._bids.items()[:CHECKSUM_DEPTH]
            asks = self._asks.items()[:CHECKSUM_DEPTH]

        parts: List[str] = []
        for i in range(CHECKSUM_DEPTH):
            if i < len(bids):
                parts.append(_level_text(bids[i]))
            if i < len(asks):
                parts.append(_level_text(asks[i]))

        crc = zlib.crc32(":".join(parts).encode()) & 0xFFFFFFFF
        return crc - (1 << 32) if crc >= (1 << 31) else crc

    def verify_checksum(self, expected: int) -> bool:
        return self.checksum() == int(expected)

    def __repr__(self) -> str:
        bid, ask = self._top
        return f"<OrderBook {self.inst_id} bid={bid[0]}x{bid[1]} ask={ask[0]}x{ask[1]}>"


def _apply(side: SortedDict, price: Decimal, size: Decimal) -> None:
    if size == 0:
        side.pop(price, None)
    else:
        side[price] = size


def _vwap(side: SortedDict, quantity: Decimal) -> Optional[Decimal]:
    if quantity <= 0 or not side:
        return None

    remaining = quantity
    cost = ZERO
    for price, size in side.items():
        take = min(size, remaining)
        cost += take * price
        remaining -= take
        if remaining <= 0:
            return cost / quantity
    return None


def _level_text(level: Level) -> str:
    price, size = level
    return f"{price:f}:{size:f}"
