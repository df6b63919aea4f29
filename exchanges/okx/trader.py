"""
OKX Trader

Order factory and order router of one instrument.

A Trader validates and aligns every new order, owns the orders it created,
routes pushed order snapshots to them by client id, and turns their fills
into ledger temp-deltas before any observer sees them. Finished orders are
dropped once a second.

Two flavours:
    SpotTrader      balances of base and quote currency
    ContractTrader  long/short positions of a swap, leverage bootstrap

An order snapshot carrying a foreign strategy tag locks the trader: from
then on it refuses new orders and the venue session is told the process
state can no longer be trusted.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from core.config import ExchangeConfig
from core.errors import InvariantViolation, SessionError
from core.ledger import Ledger
from core.logging import get_logger
from core.schemas import Deal, OrderDirection, OrderSnapshot, PositionSide
from .api_client import OkxAPIClient
from .helpers import id_generator
from .market import OkxMarket
from .order import OkxOrder, OrderObserver

Clock = Callable[[], float]

GC_INTERVAL = 1.0
LEVERAGE_RETRY_INTERVAL = 1.0
AVAILABLE_SAFETY = Decimal("0.95")

ZERO = Decimal(0)


class OkxTrader(ABC):
    """
    Base trader.

    Attributes:
        market: Market of the traded instrument (book, price alignment)
        ledger: Account ledger shared with the venue session
        errorlock: Set when a foreign tag was seen; blocks new orders
    """

    def __init__(
        self,
        market: OkxMarket,
        ledger: Ledger,
        api: OkxAPIClient,
        config: ExchangeConfig,
        venue_ready: Callable[[], bool],
        on_fatal: Optional[Callable[[Exception], None]] = None,
        poll_interval: float = 10.0,
        clock: Clock = time.monotonic
    ):
        self.market = market
        self.instrument = market.instrument
        self.inst_id = market.inst_id
        self.registry = market.registry
        self.ledger = ledger
        self.api = api
        self.config = config
        self._venue_ready = venue_ready
        self._on_fatal = on_fatal
        self.poll_interval = poll_interval
        self._clock = clock
        self.logger = get_logger(__name__)

        self._orders: Dict[str, OkxOrder] = {}
        self.errorlock = False
        self.error_message = ""
        self._gc_task: Optional[asyncio.Task] = None

    # ============================================
    # Lifecycle
    # ============================================

    async def setup(self) -> None:
        """Venue-side preparation before the trader is handed out"""
        self.start()

    def start(self) -> None:
        if self._gc_task is None:
            self._gc_task = asyncio.create_task(self._gc_loop(), name=f"trader-{self.inst_id}")

    async def close(self) -> None:
        """Stop garbage collection and cancel every unfinished order"""
        if self._gc_task is not None:
            self._gc_task.cancel()
            await asyncio.gather(self._gc_task, return_exceptions=True)
            self._gc_task = None
        for order in self.orders():
            await order.cancel()
            await order.stop()

    async def _gc_loop(self) -> None:
        while True:
            await asyncio.sleep(GC_INTERVAL)
            self.collect_finished()
            self.ledger.sweep()

    def collect_finished(self) -> int:
        finished = [cid for cid, order in self._orders.items() if order.is_finished]
        if finished:
            self._orders = {cid: o for cid, o in self._orders.items() if cid not in finished}
        return len(finished)

    def orders(self) -> List[OkxOrder]:
        """Orders not yet garbage-collected"""
        return list(self._orders.values())

    # ============================================
    # Readiness
    # ============================================

    def unready_reason(self) -> str:
        if self.errorlock:
            return f"locked: {self.error_message}"
        if not self._venue_ready():
            return "venue not ready"
        reason = self.market.unready_reason()
        if reason:
            return f"market: {reason}"
        return self._account_unready_reason()

    def ready(self) -> bool:
        return self.unready_reason() == ""

    @abstractmethod
    def _account_unready_reason(self) -> str:
        ...

    # ============================================
    # Orders
    # ============================================

    def make_order(
        self,
        direction: OrderDirection,
        price: Decimal,
        size: Decimal,
        post_only: bool = True,
        reduce_only: bool = False,
        purpose: str = "",
        observer: Optional[OrderObserver] = None
    ) -> Optional[OkxOrder]:
        """
        Align, validate and submit a limit order.

        Returns:
            The started order, or None when the trader is not ready or the
            aligned size is below the effective minimum (nothing is sent)
        """
        reason = self.unready_reason()
        if reason:
            self.logger.warning(f"[{self.inst_id}] order refused, not ready: {reason}")
            return None

        direction = OrderDirection(direction)
        price = self.market.align_price(price, direction, post_only)
        size = self.registry.align_size(self.inst_id, size)
        if price <= 0:
            self.logger.warning(f"[{self.inst_id}] order refused: price {price} not positive")
            return None
        minimum = self.registry.min_size(self.inst_id, price)
        if size <= 0 or size < minimum:
            self.logger.warning(f"[{self.inst_id}] order refused: size {size} below minimum {minimum}")
            return None

        order = OkxOrder(
            market=self.market,
            api=self.api,
            client_id=id_generator.client_order_id(self.config.strategy_tag, purpose),
            tag=self.config.strategy_tag,
            direction=direction,
            price=price,
            size=size,
            trade_mode=self._trade_mode(),
            post_only=post_only,
            reduce_only=reduce_only,
            pos_side=self._pos_side(direction, size, reduce_only),
            poll_interval=self.poll_interval,
            on_deal=self._on_deal,
            on_fatal=self._on_fatal,
            clock=self._clock
        )
        if observer is not None:
            order.add_observer(observer)
        self._orders = {**self._orders, order.client_id: order}
        order.start()
        return order

    def on_order_snapshot(self, snapshot: OrderSnapshot) -> None:
        """Route one pushed snapshot of this instrument"""
        if snapshot.tag and snapshot.tag != self.config.strategy_tag:
            self._lock(f"order {snapshot.client_id} carries foreign tag '{snapshot.tag}'")
            return
        order = self._orders.get(snapshot.client_id)
        if order is None:
            self.logger.debug(f"[{self.inst_id}] snapshot for unknown order {snapshot.client_id}")
            return
        order.on_snapshot(snapshot)

    def _lock(self, message: str) -> None:
        self.errorlock = True
        self.error_message = message
        self.logger.critical(f"[{self.inst_id}] trader locked: {message}")
        if self._on_fatal is not None:
            self._on_fatal(InvariantViolation(message))

    @abstractmethod
    def _trade_mode(self) -> str:
        ...

    @abstractmethod
    def _pos_side(self, direction: OrderDirection, size: Decimal, reduce_only: bool) -> str:
        ...

    @abstractmethod
    def _on_deal(self, order: OkxOrder, deal: Deal) -> None:
        """Record the fill in the ledger; runs before order observers"""

    @abstractmethod
    def available_amount(self, direction: OrderDirection, price: Decimal) -> Decimal:
        """Largest size an order in `direction` at `price` can have now"""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.inst_id} orders={len(self._orders)}>"


class SpotTrader(OkxTrader):
    """Spot pair: fills move the base and quote balances"""

    def _trade_mode(self) -> str:
        return self.config.spot_trade_mode

    def _pos_side(self, direction: OrderDirection, size: Decimal, reduce_only: bool) -> str:
        return ""

    def _account_unready_reason(self) -> str:
        for ccy in (self.instrument.base_ccy, self.instrument.quote_ccy):
            reason = self.ledger.balance(ccy).unready_reason()
            if reason:
                return f"{ccy}: {reason}"
        return ""

    def _on_deal(self, order: OkxOrder, deal: Deal) -> None:
        sign = 1 if deal.direction == OrderDirection.BUY else -1
        self.ledger.record_balance_delta(self.instrument.base_ccy, sign * deal.amount, deal.update_time)
        self.ledger.record_balance_delta(self.instrument.quote_ccy, -sign * deal.amount * deal.price, deal.update_time)

    def available_amount(self, direction: OrderDirection, price: Decimal) -> Decimal:
        if direction == OrderDirection.BUY:
            if price <= 0:
                return ZERO
            amount = self.ledger.balance(self.instrument.quote_ccy).available / price
        else:
            amount = self.ledger.balance(self.instrument.base_ccy).available
        return max(ZERO, self.registry.align_size(self.inst_id, amount))


class ContractTrader(OkxTrader):
    """
    Perpetual swap in long/short position mode.

    Fills move the long or short position named by the order's posSide;
    the leverage is checked and set before the trader is handed out.
    """

    def __init__(self, *args, leverage: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.leverage = leverage
        self.leverage_ready = False

    async def setup(self) -> None:
        await self.ensure_leverage()
        self.start()

    async def ensure_leverage(self) -> None:
        """Read the leverage and set it if different, retrying every second until done"""
        mode = self.config.contract_trade_mode
        while not self.leverage_ready:
            try:
                current = await self.api.get_leverage(self.inst_id, mode)
                if current != self.leverage:
                    self.logger.info(f"[{self.inst_id}] leverage {current} -> {self.leverage}")
                    await self.api.set_leverage(self.inst_id, self.leverage, mode)
                self.leverage_ready = True
                self.logger.info(f"✓ [{self.inst_id}] leverage {self.leverage}x")
            except SessionError as e:
                self.logger.warning(f"[{self.inst_id}] leverage setup failed, retrying: {e}")
                await asyncio.sleep(LEVERAGE_RETRY_INTERVAL)

    def _trade_mode(self) -> str:
        return self.config.contract_trade_mode

    @property
    def position(self):
        return self.ledger.position(self.inst_id)

    def _pos_side(self, direction: OrderDirection, size: Decimal, reduce_only: bool) -> str:
        if direction == OrderDirection.BUY:
            closes = reduce_only or self.position.short_total >= size
            return PositionSide.SHORT.value if closes else PositionSide.LONG.value
        closes = reduce_only or self.position.long_total >= size
        return PositionSide.LONG.value if closes else PositionSide.SHORT.value

    def _account_unready_reason(self) -> str:
        if not self.leverage_ready:
            return "leverage not set"
        reason = self.position.unready_reason()
        if reason:
            return f"position: {reason}"
        reason = self.ledger.balance(self.instrument.settle_ccy).unready_reason()
        if reason:
            return f"{self.instrument.settle_ccy}: {reason}"
        return ""

    def _on_deal(self, order: OkxOrder, deal: Deal) -> None:
        side = PositionSide(order.pos_side)
        opens = (side == PositionSide.LONG) == (deal.direction == OrderDirection.BUY)
        self.ledger.record_position_delta(self.inst_id, side, deal.amount if opens else -deal.amount, deal.update_time)

    def available_amount(self, direction: OrderDirection, price: Decimal) -> Decimal:
        """
        Closing size when an opposite position exists, otherwise the size the
        settlement balance can open at the configured leverage (95% of it).
        """
        position = self.position
        if direction == OrderDirection.BUY and position.short_total > 0:
            return position.short_total
        if direction == OrderDirection.SELL and position.long_total > 0:
            return position.long_total

        ct_val = self.instrument.ct_val
        if price <= 0 or ct_val <= 0:
            return ZERO
        available = self.ledger.balance(self.instrument.settle_ccy).available
        if self.instrument.is_usdt_contract:
            amount = available / price * self.leverage / ct_val * AVAILABLE_SAFETY
        else:
            amount = available * price * self.leverage / ct_val * AVAILABLE_SAFETY
        return max(ZERO, self.registry.align_size(self.inst_id, amount))
