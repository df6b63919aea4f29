"""
Balance & Position Ledger

Mirrors account state as "authoritative value + local predictions".

Each record combines the last value pushed by the venue with a list of
temp-deltas recorded locally when one of our orders fills. The exposed total
is always authoritative + sum(temp-deltas), so a trader sees its own fill in
the same tick instead of waiting for the next account push.

A temp-delta is retired when:
    - an authoritative refresh arrives whose update time is at or after the
      fill time of the delta (the venue now includes it), or
    - it has been held longer than the staleness bound. The record is then
      not-ready until the next authoritative refresh.

Refreshes older than or equal to the stored update time are ignored,
except that an equal-time refresh (typically a REST re-read) is applied to
a record left not-ready by expired deltas.

Concurrency:
    Each record has its own lock; totals are written into plain attributes
    under the lock and may be read without it.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from core.logging import get_logger
from core.schemas import PositionSide
from core.utils.time import EPOCH

ZERO = Decimal(0)

Clock = Callable[[], float]


def _newer(update_time: datetime, stored: datetime, stale: bool) -> bool:
    """
    Whether a refresh at `update_time` is applied over one at `stored`.

    An equal time is applied only to a stale record: it confirms the
    current venue state after predictions expired.
    """
    return update_time > stored or (stale and update_time == stored)


@dataclass
class TempDelta:
    value: Decimal
    fill_time: datetime
    recorded_at: float


class TempDeltaList:
    """
    Pending local predictions of one value.

    Attributes:
        stale_after: Seconds a delta may wait for an authoritative refresh
    """

    def __init__(self, stale_after: float, clock: Clock = time.monotonic):
        self.stale_after = stale_after
        self._clock = clock
        self._entries: List[TempDelta] = []
        self.total = ZERO

    def record(self, value: Decimal, fill_time: datetime) -> None:
        self._entries.append(TempDelta(value, fill_time, self._clock()))
        self.total += value

    def clear_till(self, till: datetime) -> None:
        """Drop deltas covered by a refresh at `till` and deltas past the staleness bound"""
        now = self._clock()
        self._entries = [
            e for e in self._entries
            if e.fill_time > till and now - e.recorded_at <= self.stale_after
        ]
        self.total = sum((e.value for e in self._entries), ZERO)

    def expire(self) -> int:
        """Drop deltas past the staleness bound, returns how many were dropped"""
        now = self._clock()
        kept = [e for e in self._entries if now - e.recorded_at <= self.stale_after]
        dropped = len(self._entries) - len(kept)
        if dropped:
            self._entries = kept
            self.total = sum((e.value for e in kept), ZERO)
        return dropped

    def entries(self) -> List[TempDelta]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return "[" + " ".join(f"{e.value}@{e.fill_time.isoformat()}" for e in self._entries) + "]"


# ============================================
# Balance
# ============================================

class BalanceRecord:
    """
    Equity of one currency.

    Attributes:
        ccy: Currency (lowercase)
        rights: Authoritative equity from the last refresh
        frozen: Authoritative frozen amount
        total: rights + pending temp-deltas
        update_time: Venue time of the last accepted refresh
        max_drift: When positive, a refresh whose drift exceeds it marks the
            record not-ready
    """

    def __init__(self, ccy: str, stale_after: float = 10.0, clock: Clock = time.monotonic):
        self.ccy = ccy
        self.rights = ZERO
        self.frozen = ZERO
        self.total = ZERO
        self.update_time = EPOCH
        self.max_drift = ZERO
        self.max_drift_seen = ZERO
        self.inited = False
        self._stale = False
        self._temp = TempDeltaList(stale_after, clock)
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def record_temp(self, value: Decimal, fill_time: datetime) -> None:
        """Record a predicted change caused by a fill at `fill_time`"""
        with self._lock:
            if fill_time <= self.update_time:
                self.logger.debug(f"[{self.ccy}] temp {value} at {fill_time} already covered, skipped")
                return
            self._temp.record(value, fill_time)
            self.total = self.rights + self._temp.total
            self.logger.debug(f"[{self.ccy}] record temp: rights={self.rights} temp={self._temp!r}")

    def refresh(
        self,
        update_time: datetime,
        rights: Optional[Decimal] = None,
        frozen: Optional[Decimal] = None
    ) -> Optional[Decimal]:
        """
        Apply an authoritative push.

        Args:
            update_time: Venue update time of the push
            rights: Pushed equity, None when absent from the push
            frozen: Pushed frozen amount, None when absent from the push

        Returns:
            Drift between the authoritative change and the retired
            predictions, or None if the refresh was stale and ignored
        """
        with self._lock:
            if self._temp.expire():
                self._stale = True
                self.total = self.rights + self._temp.total
            if self.inited and not _newer(update_time, self.update_time, self._stale):
                return None

            rights_before = self.rights
            temp_before = self._temp.total
            self._temp.clear_till(update_time)

            if rights is not None:
                self.rights = rights
            if frozen is not None:
                self.frozen = frozen
            self.total = self.rights + self._temp.total
            self.update_time = update_time
            self._stale = False

            drift = ZERO
            if self.inited:
                drift = (self.rights - rights_before) - (temp_before - self._temp.total)
                if abs(drift) > self.max_drift_seen:
                    self.max_drift_seen = abs(drift)
            self.inited = True

        if drift != 0:
            self.logger.debug(f"[{self.ccy}] refresh rights={self.rights} frozen={self.frozen} drift={drift}")
        return drift

    @property
    def available(self) -> Decimal:
        return self.total - self.frozen

    def sweep(self) -> None:
        """Retire predictions past the staleness bound"""
        with self._lock:
            dropped = self._temp.expire()
            if dropped:
                self._stale = True
                self.total = self.rights + self._temp.total
        if dropped:
            self.logger.warning(f"[{self.ccy}] {dropped} temp delta(s) not confirmed in time, balance not ready")

    def ready(self) -> bool:
        return self.unready_reason() == ""

    def unready_reason(self) -> str:
        self.sweep()
        if not self.inited:
            return "balance not initialized"
        if self._stale:
            return "temp deltas expired without refresh"
        if self.max_drift > 0 and self.max_drift_seen > self.max_drift:
            return f"drift too large, allowed={self.max_drift}, seen={self.max_drift_seen}"
        return ""

    def __repr__(self) -> str:
        return f"<Balance {self.ccy} rights={self.rights} frozen={self.frozen} temp={self._temp!r}>"


# ============================================
# Position
# ============================================

class PositionSideRecord:
    """One side (long or short) of a position, amounts in contracts"""

    def __init__(self, side: PositionSide, stale_after: float, clock: Clock):
        self.side = side
        self.amount = ZERO
        self.avg_price = ZERO
        self.total = ZERO
        self.update_time = EPOCH
        self.stale = False
        self.temp = TempDeltaList(stale_after, clock)

    def record_temp(self, value: Decimal, fill_time: datetime) -> bool:
        if fill_time <= self.update_time:
            return False
        self.temp.record(value, fill_time)
        self.total = self.amount + self.temp.total
        return True

    def refresh(self, amount: Decimal, avg_price: Decimal, update_time: datetime) -> bool:
        self.expire()
        if not _newer(update_time, self.update_time, self.stale):
            return False
        self.temp.clear_till(update_time)
        self.amount = amount
        self.avg_price = avg_price
        self.total = self.amount + self.temp.total
        self.update_time = update_time
        self.stale = False
        return True

    def expire(self) -> int:
        dropped = self.temp.expire()
        if dropped:
            self.stale = True
            self.total = self.amount + self.temp.total
        return dropped


class PositionRecord:
    """
    Long and short position of one instrument.

    Attributes:
        inst_id: Instrument id
        long: Long side record
        short: Short side record
    """

    def __init__(self, inst_id: str, stale_after: float = 10.0, clock: Clock = time.monotonic):
        self.inst_id = inst_id
        self.long = PositionSideRecord(PositionSide.LONG, stale_after, clock)
        self.short = PositionSideRecord(PositionSide.SHORT, stale_after, clock)
        self.inited = False
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _side(self, side: PositionSide) -> PositionSideRecord:
        return self.long if side == PositionSide.LONG else self.short

    def record_temp(self, side: PositionSide, value: Decimal, fill_time: datetime) -> None:
        with self._lock:
            recorded = self._side(side).record_temp(value, fill_time)
        if recorded:
            self.logger.debug(f"[{self.inst_id}] record temp {side.value} {value} at {fill_time}")

    def refresh(self, side: PositionSide, amount: Decimal, avg_price: Decimal, update_time: datetime) -> bool:
        """Apply an authoritative push for one side; stale pushes are ignored"""
        with self._lock:
            accepted = self._side(side).refresh(amount, avg_price, update_time)
            self.inited = True
        return accepted

    def reset_flat(self) -> None:
        """Zero both sides without touching update times or predictions"""
        with self._lock:
            for record in (self.long, self.short):
                record.amount = ZERO
                record.avg_price = ZERO
                record.total = record.temp.total
            self.inited = True

    @property
    def long_total(self) -> Decimal:
        return self.long.total

    @property
    def short_total(self) -> Decimal:
        return self.short.total

    @property
    def net(self) -> Decimal:
        return self.long.total - self.short.total

    def sweep(self) -> None:
        with self._lock:
            dropped = self.long.expire() + self.short.expire()
        if dropped:
            self.logger.warning(f"[{self.inst_id}] {dropped} temp delta(s) not confirmed in time, position not ready")

    def ready(self) -> bool:
        return self.unready_reason() == ""

    def unready_reason(self) -> str:
        self.sweep()
        if not self.inited:
            return "position not initialized"
        if self.long.stale or self.short.stale:
            return "temp deltas expired without refresh"
        return ""

    def __repr__(self) -> str:
        return (
            f"<Position {self.inst_id} long={self.long.amount}{self.long.temp!r} "
            f"short={self.short.amount}{self.short.temp!r}>"
        )


# ============================================
# Ledger
# ============================================

class Ledger:
    """
    All balances and positions of one venue account.

    Records are created on first lookup and live for the whole session.

    Example:
        >>> ledger = Ledger()
        >>> ledger.record_balance_delta("eth", Decimal("1"), fill_time)
        >>> ledger.refresh_balance("eth", update_time, rights=Decimal("11"))
        >>> ledger.balance("eth").total
        Decimal('11')
    """

    def __init__(self, stale_after: float = 10.0, clock: Clock = time.monotonic):
        self.stale_after = stale_after
        self._clock = clock
        self._balances: Dict[str, BalanceRecord] = {}
        self._positions: Dict[str, PositionRecord] = {}
        self._balances_synced = False
        self._positions_synced = False
        self._lock = threading.Lock()

    def balance(self, ccy: str) -> BalanceRecord:
        ccy = ccy.lower()
        record = self._balances.get(ccy)
        if record is None:
            with self._lock:
                record = self._balances.get(ccy)
                if record is None:
                    record = BalanceRecord(ccy, self.stale_after, self._clock)
                    record.inited = self._balances_synced
                    self._balances[ccy] = record
        return record

    def position(self, inst_id: str) -> PositionRecord:
        record = self._positions.get(inst_id)
        if record is None:
            with self._lock:
                record = self._positions.get(inst_id)
                if record is None:
                    record = PositionRecord(inst_id, self.stale_after, self._clock)
                    # the venue reports every open position, so an unseen instrument is flat
                    record.inited = self._positions_synced
                    self._positions[inst_id] = record
        return record

    def balances(self) -> List[BalanceRecord]:
        return list(self._balances.values())

    def positions(self) -> List[PositionRecord]:
        return list(self._positions.values())

    def record_balance_delta(self, ccy: str, amount: Decimal, fill_time: datetime) -> None:
        self.balance(ccy).record_temp(amount, fill_time)

    def record_position_delta(self, inst_id: str, side: PositionSide, amount: Decimal, fill_time: datetime) -> None:
        self.position(inst_id).record_temp(side, amount, fill_time)

    def refresh_balance(
        self,
        ccy: str,
        update_time: datetime,
        rights: Optional[Decimal] = None,
        frozen: Optional[Decimal] = None
    ) -> Optional[Decimal]:
        return self.balance(ccy).refresh(update_time, rights, frozen)

    def refresh_position(
        self,
        inst_id: str,
        side: PositionSide,
        amount: Decimal,
        avg_price: Decimal,
        update_time: datetime
    ) -> bool:
        return self.position(inst_id).refresh(side, amount, avg_price, update_time)

    def reset_balances(self) -> None:
        """Treat every currency the account push did not mention as empty"""
        self._balances_synced = True
        for record in self.balances():
            record.inited = True

    def reset_positions(self) -> None:
        """Treat every known position as flat until the venue reports otherwise"""
        self._positions_synced = True
        for record in self.positions():
            record.reset_flat()

    def sweep(self) -> None:
        for record in self.balances():
            record.sweep()
        for record in self.positions():
            record.sweep()

    def ready(self) -> bool:
        return all(b.ready() for b in self.balances()) and all(p.ready() for p in self.positions())
