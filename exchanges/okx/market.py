"""
OKX Market

Public-data mirror of one instrument: the order book, the ticker, and for
swaps the mark price, the price limits and the funding rate.

Depth modes:
    books            400 levels, snapshot + incremental updates, checksum
    books5           5 levels, every push is a full snapshot
    books50-l2-tbt   50 levels tick-by-tick, snapshot + updates, checksum
    ticker           one-level book synthesized from best bid/ask (size 1)

Freshness supervision (1 s tick):
    depth         silent 5 s    -> re-subscribe
    ticker        silent 30 s   -> REST read, 60 s -> re-subscribe
    mark price    silent 20 s   -> re-subscribe
    price limit   silent 10 s   -> REST read, 20 s -> re-subscribe
    funding rate  silent 180 s  -> re-subscribe
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from core.config import DepthMode, ExchangeConfig, TickerSource
from core.errors import SessionError
from core.instruments import InstrumentRegistry
from core.logging import get_logger
from core.observers import ObserverList
from core.orderbook import OrderBook
from core.schemas import FundingRate, Instrument, MarkPrice, OrderDirection, PriceLimit, Ticker
from core.ws_session import Subscriber
from .api_client import OkxAPIClient
from .models import parse_depth, parse_funding_rate, parse_mark_price, parse_price_limit, parse_ticker
from .ws_client import OkxWSClient

Clock = Callable[[], float]

SUPERVISE_INTERVAL = 1.0

DEPTH = "depth"
TICKER = "tickers"
MARK_PRICE = "mark-price"
PRICE_LIMIT = "price-limit"
FUNDING_RATE = "funding-rate"

# stream -> (silence before a REST read, silence before a re-subscribe)
TIMEOUTS: Dict[str, tuple] = {
    DEPTH: (None, 5.0),
    TICKER: (30.0, 60.0),
    MARK_PRICE: (None, 20.0),
    PRICE_LIMIT: (10.0, 20.0),
    FUNDING_RATE: (None, 180.0),
}

SYNTH_LEVEL_SIZE = Decimal(1)


class OkxMarket:
    """
    Order book and public data of one instrument.

    Attributes:
        instrument: Registry entry of the instrument
        book: Order book mirror
        depth_observers: Called with the market after every accepted book change
        funding_observers: Called with each FundingRate push
        ticker, mark_price, price_limit, funding_rate: Latest records (None
            until the first push)

    Example:
        >>> market = exchange.use_market("BTC-USDT-SWAP")
        >>> market.depth_observers.subscribe(lambda m: print(m.book.middle()))
    """

    def __init__(
        self,
        instrument: Instrument,
        registry: InstrumentRegistry,
        ws: OkxWSClient,
        api: OkxAPIClient,
        config: ExchangeConfig,
        with_full_depth: bool = True,
        clock: Clock = time.monotonic
    ):
        self.instrument = instrument
        self.inst_id = instrument.inst_id
        self.registry = registry
        self.ws = ws
        self.api = api
        self.config = config
        self._clock = clock
        self.logger = get_logger(__name__)

        self.depth_mode = config.depth_mode if with_full_depth else DepthMode.TICKER_SYNTH
        self.book = OrderBook(self.inst_id)
        self.depth_observers: ObserverList = ObserverList(f"{self.inst_id} depth")
        self.funding_observers: ObserverList = ObserverList(f"{self.inst_id} funding")

        self.ticker: Optional[Ticker] = None
        self.mark_price: Optional[MarkPrice] = None
        self.price_limit: Optional[PriceLimit] = None
        self.funding_rate: Optional[FundingRate] = None

        self._subscribers: Dict[str, Subscriber] = {}
        self._channels: Dict[str, str] = {}
        self._last_recv: Dict[str, float] = {}
        self._awaiting_snapshot = False
        self._task: Optional[asyncio.Task] = None

    # ============================================
    # Lifecycle
    # ============================================

    def _streams(self) -> Dict[str, str]:
        """stream -> OKX channel for everything this market listens to"""
        streams = {}
        if self.depth_mode != DepthMode.TICKER_SYNTH:
            streams[DEPTH] = self.depth_mode.value
        if self.config.ticker_source == TickerSource.WEBSOCKET or self.depth_mode == DepthMode.TICKER_SYNTH:
            streams[TICKER] = TICKER
        if self.instrument.is_contract:
            if self.config.subscribe_mark_price:
                streams[MARK_PRICE] = MARK_PRICE
            if self.config.subscribe_price_limit:
                streams[PRICE_LIMIT] = PRICE_LIMIT
            if self.config.subscribe_funding_rate:
                streams[FUNDING_RATE] = FUNDING_RATE
        return streams

    def start(self) -> None:
        """Register handlers, subscribe, and start freshness supervision"""
        handlers = {
            DEPTH: self._on_depth_frame,
            TICKER: self._on_ticker_frame,
            MARK_PRICE: self._on_mark_price_frame,
            PRICE_LIMIT: self._on_price_limit_frame,
            FUNDING_RATE: self._on_funding_frame,
        }
        now = self._clock()
        self._channels = self._streams()
        for stream, channel in self._channels.items():
            self.ws.add_public_handler(channel, self.inst_id, handlers[stream])
            self._subscribers[stream] = self.ws.subscribe(channel, inst_id=self.inst_id)
            self._last_recv[stream] = now
        if self.config.ticker_source == TickerSource.REST_POLL:
            self._last_recv[TICKER] = now

        if self._task is None:
            self._task = asyncio.create_task(self._supervise_loop(), name=f"market-{self.inst_id}")
        self.logger.info(f"✓ Market {self.inst_id} started ({', '.join(self._channels.values())})")

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        for stream, subscriber in self._subscribers.items():
            self.ws.remove_public_handler(self._channels[stream], self.inst_id)
            await self.ws.unsubscribe(subscriber)
        self._subscribers = {}

    # ============================================
    # Stream Handlers
    # ============================================

    def _on_depth_frame(self, frame: Dict[str, Any]) -> None:
        for update in parse_depth(frame):
            if update.is_snapshot:
                self._awaiting_snapshot = False
                self.book.rebuild(update.asks, update.bids)
            elif self._awaiting_snapshot:
                continue
            else:
                self.book.apply(update.asks, update.bids)

            if update.checksum is not None and not self.book.verify_checksum(update.checksum):
                self.logger.warning(
                    f"[{self.inst_id}] checksum mismatch (venue={update.checksum}, "
                    f"local={self.book.checksum()}), rebuilding"
                )
                self.book.clear()
                self._awaiting_snapshot = True
                self._resubscribe(DEPTH)
                return

            self._last_recv[DEPTH] = self._clock()
            self.depth_observers.notify(self)

    def _on_ticker_frame(self, frame: Dict[str, Any]) -> None:
        for row in frame.get("data", []):
            self.on_ticker(parse_ticker(row))

    def on_ticker(self, ticker: Ticker) -> None:
        """Store a ticker from the WS stream, a REST read or the bulk poller"""
        self.ticker = ticker
        self._last_recv[TICKER] = self._clock()
        if self.depth_mode == DepthMode.TICKER_SYNTH and ticker.bid > 0 and ticker.ask > 0:
            self.book.rebuild([(ticker.ask, SYNTH_LEVEL_SIZE)], [(ticker.bid, SYNTH_LEVEL_SIZE)])
            self.depth_observers.notify(self)

    def _on_mark_price_frame(self, frame: Dict[str, Any]) -> None:
        for row in frame.get("data", []):
            self.mark_price = parse_mark_price(row)
        self._last_recv[MARK_PRICE] = self._clock()

    def _on_price_limit_frame(self, frame: Dict[str, Any]) -> None:
        for row in frame.get("data", []):
            self.on_price_limit(parse_price_limit(row))

    def on_price_limit(self, limit: PriceLimit) -> None:
        self.price_limit = limit
        self._last_recv[PRICE_LIMIT] = self._clock()

    def _on_funding_frame(self, frame: Dict[str, Any]) -> None:
        for row in frame.get("data", []):
            rate = parse_funding_rate(row)
            self.funding_rate = rate
            self._last_recv[FUNDING_RATE] = self._clock()
            self.funding_observers.notify(rate)

    # ============================================
    # Freshness Supervision
    # ============================================

    async def _supervise_loop(self) -> None:
        while True:
            await asyncio.sleep(SUPERVISE_INTERVAL)
            await self.supervise()

    async def supervise(self, now: Optional[float] = None) -> None:
        """One supervision pass over every stream"""
        now = self._clock() if now is None else now
        for stream, last in list(self._last_recv.items()):
            fetch_after, resub_after = TIMEOUTS[stream]
            silence = now - last
            if resub_after is not None and silence > resub_after and stream in self._subscribers:
                self.logger.warning(f"[{self.inst_id}] {stream} silent for {silence:.0f}s, re-subscribing")
                self._last_recv[stream] = now
                self._resubscribe(stream)
            elif fetch_after is not None and silence > fetch_after:
                await self._fetch(stream)

    def _resubscribe(self, stream: str) -> None:
        subscriber = self._subscribers.get(stream)
        if subscriber is not None:
            subscriber.reset()

    async def _fetch(self, stream: str) -> None:
        try:
            if stream == TICKER:
                ticker = await self.api.get_ticker(self.inst_id)
                if ticker is not None:
                    self.on_ticker(ticker)
            elif stream == PRICE_LIMIT:
                limit = await self.api.get_price_limit(self.inst_id)
                if limit is not None:
                    self.on_price_limit(limit)
        except SessionError as e:
            self.logger.warning(f"[{self.inst_id}] REST {stream} read failed: {e}")

    # ============================================
    # Queries
    # ============================================

    def stale_streams(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        return [
            stream for stream, last in self._last_recv.items()
            if TIMEOUTS[stream][1] is not None and now - last > TIMEOUTS[stream][1]
        ]

    def unready_reason(self) -> str:
        for stream, subscriber in self._subscribers.items():
            if not subscriber.succeeded:
                return f"{stream} not subscribed"
        if self.book.empty:
            return "order book empty"
        if MARK_PRICE in self._channels and self.mark_price is None:
            return "no mark price"
        if PRICE_LIMIT in self._channels and self.price_limit is None:
            return "no price limit"
        stale = self.stale_streams()
        if stale:
            return f"stale: {', '.join(stale)}"
        return ""

    def ready(self) -> bool:
        return self.unready_reason() == ""

    def align_price(self, price: Decimal, direction: OrderDirection, post_only: bool = False) -> Decimal:
        """
        Align a price for an order on this market.

        Tick alignment and post-only repricing against the current touch,
        then for swaps with a price-limit stream the venue's limits:
        buy <= buyLmt, sell >= sellLmt.
        """
        aligned = self.registry.align_price(
            self.inst_id, price, direction, post_only, self.book.buy1(), self.book.sell1()
        )
        limit = self.price_limit
        if limit is not None and self.instrument.is_contract:
            if direction == OrderDirection.BUY and limit.buy_limit > 0:
                aligned = min(aligned, self.registry.align_price(self.inst_id, limit.buy_limit, OrderDirection.BUY))
            elif direction == OrderDirection.SELL and limit.sell_limit > 0:
                aligned = max(aligned, self.registry.align_price(self.inst_id, limit.sell_limit, OrderDirection.SELL))
        return aligned

    def __repr__(self) -> str:
        return f"<OkxMarket {self.inst_id} {self.depth_mode.value} {self.book!r}>"
