"""
OKX Order

One order and the task that reconciles it with the venue.

Lifecycle:
    born -> alive -> partially_filled -> filled | cancelled
    any  -> fatal_error (create refused, order not found, repeated poll
            failures, or an inconsistent snapshot)

Create:
    Issued exactly once. A per-order error code ends the order with the
    fatal-error flag. A network error leaves it born; the REST poll finds
    out whether the venue has it.

Snapshot ingestion:
    A snapshot (WS push or REST poll) is applied only when its update time
    and filled amount are both >= the local ones. Each increase of filled
    produces one Deal:
        amount = filled_new - filled_old
        price  = (filled_new * avg_new - filled_old * avg_old) / amount
    The Trader's internal listener sees the Deal first, then the observers,
    then a terminal status finishes the order.

Polling:
    When nothing was heard for `poll_interval` seconds the order is queried
    over REST. "Order not found" ends it with the fatal-error flag; three
    consecutive other failures do the same.

Example:
    order = trader.make_order(OrderDirection.BUY, Decimal("100"), Decimal("5"))
    order.add_observer(my_observer)
    await order.modify(new_price=Decimal("101"))
    await order.cancel()
"""

import asyncio
import time
from decimal import Decimal
from typing import Callable, List, Optional

from core.errors import InvariantViolation, TransientNetworkError
from core.logging import get_logger
from core.schemas import Deal, OrderDirection, OrderSnapshot, OrderStatus
from core.utils import EPOCH
from core.utils.time import current_utc_datetime
from .api_client import OkxAPIClient
from .helpers import (
    AMEND_TERMINAL_CODES,
    CANCEL_QUIET_CODES,
    CANCEL_TERMINAL_CODES,
    QUERY_NOT_FOUND,
    id_generator,
)
from .market import OkxMarket
from .models import RestResponse, first_order_result, parse_order

Clock = Callable[[], float]

UPDATE_TICK = 1.0
MAX_POLL_ERRORS = 3

ZERO = Decimal(0)


class OrderObserver:
    """Base class for order observers; override what you need"""

    def on_deal(self, order: "OkxOrder", deal: Deal) -> None:
        pass

    def on_finished(self, order: "OkxOrder") -> None:
        pass


class OkxOrder:
    """
    A limit order and its reconciliation task.

    Attributes:
        client_id: Our id (tag + counter + purpose)
        order_id: Venue id, empty until acknowledged
        status: Normalized OrderStatus
        filled, avg_price: Accumulated fill state
        error_message: Last error that ended the order
        deals: Every Deal emitted, in order
    """

    def __init__(
        self,
        market: OkxMarket,
        api: OkxAPIClient,
        client_id: str,
        tag: str,
        direction: OrderDirection,
        price: Decimal,
        size: Decimal,
        trade_mode: str,
        post_only: bool = True,
        reduce_only: bool = False,
        pos_side: str = "",
        poll_interval: float = 10.0,
        on_deal: Optional[Callable[["OkxOrder", Deal], None]] = None,
        on_fatal: Optional[Callable[[Exception], None]] = None,
        clock: Clock = time.monotonic
    ):
        self.market = market
        self.api = api
        self.inst_id = market.inst_id
        self.client_id = client_id
        self.tag = tag
        self.direction = OrderDirection(direction)
        self.price = price
        self.size = size
        self.trade_mode = trade_mode
        self.post_only = post_only
        self.reduce_only = reduce_only
        self.pos_side = pos_side
        self.poll_interval = poll_interval
        self._internal_listener = on_deal
        self._on_fatal = on_fatal
        self._clock = clock
        self.logger = get_logger(__name__)

        self.order_id = ""
        self.status = OrderStatus.BORN
        self.venue_status = ""
        self.filled = ZERO
        self.avg_price = ZERO
        self.birth_time = current_utc_datetime()
        self.update_time = EPOCH
        self.error_message = ""
        self.deals: List[Deal] = []

        self._observers: List[OrderObserver] = []
        self._finished = asyncio.Event()
        self._last_heard = clock()
        self._poll_errors = 0
        self._started = False
        self._task: Optional[asyncio.Task] = None

    # ============================================
    # State
    # ============================================

    @property
    def unfilled(self) -> Decimal:
        return self.size - self.filled

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    @property
    def fatal_error(self) -> bool:
        return self.status == OrderStatus.FATAL_ERROR

    def add_observer(self, observer: OrderObserver) -> None:
        if observer not in self._observers:
            self._observers = self._observers + [observer]

    def remove_observer(self, observer: OrderObserver) -> None:
        self._observers = [o for o in self._observers if o is not observer]

    async def wait_finished(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._finished.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _notify(self, method: str, *args) -> None:
        for observer in self._observers:
            try:
                getattr(observer, method)(self, *args)
            except Exception as e:
                self.logger.exception(f"[{self.client_id}] observer {observer!r}.{method} failed: {e}")

    def _finish(self) -> None:
        if self._finished.is_set():
            return
        self._finished.set()
        self.logger.info(
            f"[{self.client_id}] finished: {self.status.value} filled={self.filled}/{self.size} avg={self.avg_price}"
        )
        self._notify("on_finished")

    def _set_fatal(self, message: str) -> None:
        self.error_message = message
        self.status = OrderStatus.FATAL_ERROR
        self.logger.error(f"[{self.client_id}] {self.inst_id} order failed: {message}")
        self._finish()

    def _violation(self, message: str) -> None:
        error = InvariantViolation(f"[{self.client_id}] {message}")
        self._set_fatal(message)
        if self._on_fatal is not None:
            self._on_fatal(error)

    # ============================================
    # Control Task
    # ============================================

    def start(self) -> None:
        """Spawn the control task; the create request is sent from it"""
        if self._started:
            raise RuntimeError(f"order {self.client_id} already started")
        self._started = True
        self._task = asyncio.create_task(self._run(), name=f"order-{self.client_id}")

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        await self._create()
        while not self.is_finished:
            await asyncio.sleep(UPDATE_TICK)
            if self._clock() - self._last_heard > self.poll_interval:
                await self.poll()

    async def _create(self) -> None:
        self.logger.info(
            f"[{self.client_id}] create {self.inst_id} {self.direction.value} {self.size}@{self.price} "
            f"{'post_only' if self.post_only else 'limit'}{' reduce_only' if self.reduce_only else ''}"
            f"{' ' + self.pos_side if self.pos_side else ''}"
        )
        try:
            resp = await self.api.place_order(
                inst_id=self.inst_id,
                client_id=self.client_id,
                tag=self.tag,
                side=self.direction.value,
                order_type="post_only" if self.post_only else "limit",
                trade_mode=self.trade_mode,
                price=self.price,
                size=self.size,
                pos_side=self.pos_side,
                reduce_only=self.reduce_only
            )
        except TransientNetworkError as e:
            self.logger.warning(f"[{self.client_id}] create outcome unknown, will poll: {e}")
            return
        self._last_heard = self._clock()

        result = first_order_result(resp)
        if result is None:
            self._set_fatal(f"create refused: {resp.code} {resp.msg}")
            return
        if not result.ok:
            self._set_fatal(f"create refused: {result.code} {result.message}")
            return

        if self.order_id and result.order_id != self.order_id:
            self._violation(f"create returned order id {result.order_id}, push said {self.order_id}")
            return
        self.order_id = result.order_id
        if self.status == OrderStatus.BORN:
            self.status = OrderStatus.ALIVE

    # ============================================
    # Snapshot Ingestion
    # ============================================

    def on_snapshot(self, snapshot: OrderSnapshot) -> None:
        """Merge one WS or REST snapshot"""
        if self.is_finished:
            return
        if snapshot.client_id != self.client_id:
            self._violation(f"snapshot for client id {snapshot.client_id} routed to this order")
            return
        if self.order_id and snapshot.order_id and snapshot.order_id != self.order_id:
            self._violation(f"order id changed from {self.order_id} to {snapshot.order_id}")
            return

        self._last_heard = self._clock()
        if snapshot.update_time < self.update_time or snapshot.filled < self.filled:
            self.logger.debug(
                f"[{self.client_id}] dropped out-of-order {snapshot.source} snapshot "
                f"(t={snapshot.update_time}, filled={snapshot.filled})"
            )
            return

        deal = None
        if snapshot.filled > self.filled:
            amount = snapshot.filled - self.filled
            notional = snapshot.filled * snapshot.avg_price - self.filled * self.avg_price
            if notional < 0:
                self._violation(
                    f"fill notional went backwards: {self.filled}@{self.avg_price} -> "
                    f"{snapshot.filled}@{snapshot.avg_price}"
                )
                return
            if notional == 0:
                self._violation(f"fill of {amount} without notional: {snapshot.filled}@{snapshot.avg_price}")
                return
            deal = Deal(
                inst_id=self.inst_id,
                client_id=self.client_id,
                direction=self.direction,
                price=notional / amount,
                amount=amount,
                update_time=snapshot.update_time,
                local_time=snapshot.local_time,
            )

        if not self.order_id:
            self.order_id = snapshot.order_id
        if snapshot.price > 0:
            self.price = snapshot.price
        if snapshot.size > 0:
            self.size = snapshot.size
        self.filled = snapshot.filled
        self.avg_price = snapshot.avg_price
        self.status = snapshot.status
        self.venue_status = snapshot.venue_status
        self.update_time = snapshot.update_time

        if deal is not None:
            self.deals.append(deal)
            self.logger.info(f"[{self.client_id}] deal {deal.direction.value} {deal.amount}@{deal.price}")
            if self._internal_listener is not None:
                self._internal_listener(self, deal)
            self._notify("on_deal", deal)

        if self.status.is_terminal:
            self._finish()

    # ============================================
    # Polling
    # ============================================

    async def poll(self) -> None:
        """Query the order over REST and merge the result"""
        if self.is_finished:
            return
        self._last_heard = self._clock()
        try:
            resp = await self.api.get_order(self.inst_id, self.client_id)
        except TransientNetworkError as e:
            self._poll_failed(str(e))
            return

        if resp.code == QUERY_NOT_FOUND:
            self._set_fatal(f"order not found ({resp.msg})")
            return
        if not resp.ok or not resp.data:
            self._poll_failed(f"{resp.code} {resp.msg}")
            return

        self._poll_errors = 0
        self.on_snapshot(parse_order(resp.data[0], "rest", current_utc_datetime()))

    def _poll_failed(self, message: str) -> None:
        self._poll_errors += 1
        self.logger.warning(f"[{self.client_id}] query failed ({self._poll_errors}/{MAX_POLL_ERRORS}): {message}")
        if self._poll_errors >= MAX_POLL_ERRORS:
            self._set_fatal(f"query failed {self._poll_errors} times: {message}")

    # ============================================
    # Cancel / Modify
    # ============================================

    async def cancel(self) -> None:
        """Request cancellation; no-op on a finished order"""
        if self.is_finished:
            return
        try:
            resp = await self.api.cancel_order(self.inst_id, client_id=self.client_id)
        except TransientNetworkError as e:
            self.logger.warning(f"[{self.client_id}] cancel failed: {e}")
            return

        code, message = _result_code(resp)
        if code == "0":
            self.logger.info(f"[{self.client_id}] cancel accepted")
        elif code in CANCEL_TERMINAL_CODES:
            self.logger.info(f"[{self.client_id}] cancel: venue reports terminal ({code} {message}), polling")
            await self.poll()
        elif code in CANCEL_QUIET_CODES:
            self.logger.debug(f"[{self.client_id}] cancel: {code} {message}")
        else:
            self.logger.warning(f"[{self.client_id}] cancel refused: {code} {message}")

    async def modify(self, new_price: Decimal = ZERO, new_size: Decimal = ZERO) -> None:
        """
        Amend price and/or size; zero fields are left unchanged.

        A size below the effective minimum cancels the order instead.
        No-op on a finished order.
        """
        if self.is_finished:
            return
        registry = self.market.registry

        price = ZERO
        if new_price > 0:
            price = self.market.align_price(new_price, self.direction, self.post_only)
        size = ZERO
        if new_size > 0:
            size = registry.align_size(self.inst_id, new_size)
            minimum = registry.min_size(self.inst_id, price or self.price)
            if size < minimum:
                self.logger.info(f"[{self.client_id}] modify size {size} below minimum {minimum}, cancelling")
                await self.cancel()
                return

        if price == self.price:
            price = ZERO
        if size == self.size:
            size = ZERO
        if price == 0 and size == 0:
            return

        try:
            resp = await self.api.amend_order(
                self.inst_id, self.client_id, id_generator.amend_request_id(), price, size
            )
        except TransientNetworkError as e:
            self.logger.warning(f"[{self.client_id}] modify failed: {e}")
            return

        code, message = _result_code(resp)
        if code == "0":
            self.logger.info(f"[{self.client_id}] modify accepted: px={price or self.price} sz={size or self.size}")
        elif code in AMEND_TERMINAL_CODES:
            self.logger.info(f"[{self.client_id}] modify: venue reports terminal ({code} {message}), polling")
            await self.poll()
        else:
            self.logger.warning(f"[{self.client_id}] modify refused: {code} {message}")

    def __repr__(self) -> str:
        return (
            f"<OkxOrder {self.client_id} {self.inst_id} {self.direction.value} "
            f"{self.filled}/{self.size}@{self.price} {self.status.value}>"
        )


def _result_code(resp: RestResponse):
    """Per-order code of a cancel/amend response, falling back to the envelope code"""
    result = first_order_result(resp)
    if result is not None:
        return result.code, result.message
    return resp.code, resp.msg
