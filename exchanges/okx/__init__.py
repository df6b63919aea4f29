"""
OKX Exchange Connector

This module implements the ExchangeInterface for OKX: one venue session
that mirrors an OKX account (balances, positions, orders) and the public
data of the instruments strategies ask for.

API Documentation:
    https://www.okx.com/docs-v5/en/

Boot order:
    1. SPOT and SWAP instruments into the registry
    2. Server clock sync (re-synced every minute)
    3. Account configuration check (single-currency margin, long/short mode)
    4. Cancel live orders carrying our strategy tag (optional)
    5. Public and private WebSocket sessions, login, account / positions /
       orders subscriptions
    6. Wait for the first account and position pushes

Private dispatch:
    account    -> ledger balances (absent fields stay unchanged)
    positions  -> ledger positions; the first push zeroes every known
                  position so unreported instruments are flat
    orders     -> Trader of the instrument -> Order by client id

Structure:
    exchanges/okx/
    ├── __init__.py          # This file (OkxExchange class)
    ├── api_client.py        # REST API client with aiohttp
    ├── ws_client.py         # Channel protocol over two WsSessions
    ├── signer.py            # Request signing and server clock offset
    ├── models.py            # Wire record parsers
    ├── helpers.py           # Ids and error codes
    ├── market.py            # Order book and public data of one instrument
    ├── order.py             # Order lifecycle
    └── trader.py            # Spot and contract traders
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from core.config import ExchangeConfig, Settings, TickerSource, settings
from core.errors import ConfigurationError, SessionError
from core.exchange_interface import ExchangeInterface
from core.instruments import InstrumentRegistry
from core.ledger import Ledger
from core.observers import ObserverList
from .api_client import MAX_BATCH_CANCEL, OkxAPIClient
from .helpers import ACCOUNT_LEVEL_SINGLE_CURRENCY_MARGIN, POSITION_MODE_LONG_SHORT
from .market import OkxMarket
from .models import parse_balances, parse_liquidations, parse_order, parse_position
from .order import OkxOrder, OrderObserver
from .signer import OkxSigner
from .trader import ContractTrader, OkxTrader, SpotTrader
from .ws_client import OkxWSClient

Clock = Callable[[], float]

INSTRUMENT_TYPES = ("SPOT", "SWAP")
TICKER_POLL_INTERVAL = 0.5
LIQUIDATION_CHANNEL = "liquidation-orders"


class OkxExchange(ExchangeInterface):
    """
    OKX Venue Session

    Attributes:
        name: Exchange identifier ("okx")
        capabilities: Dictionary of supported features
        registry: Instrument metadata of SPOT and SWAP
        ledger: Balances and positions of the account
        client: REST client (created in initialize())
        ws: WebSocket client (created in initialize())
        markets / traders: Vended handles by instrument id

    Example:
        >>> exchange = OkxExchange()
        >>> await exchange.initialize()
        >>> trader = await exchange.use_trader("BTC-USDT-SWAP", leverage=5)
        >>> order = trader.make_order(OrderDirection.BUY, Decimal("60000"), Decimal("1"))
        >>> await exchange.shutdown()

    Notes:
        - Without API credentials the session is public-only: markets work,
          use_trader() raises ConfigurationError
        - Fatal conditions found after boot go to report_fatal()
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "okx"

    capabilities = {
        "spot": True,
        "swap": True,
        "liquidations": True,
        "rest_ticker_poll": True
    }

    # ============================================
    # Initialization
    # ============================================

    def __init__(
        self,
        config: Optional[ExchangeConfig] = None,
        app_settings: Optional[Settings] = None,
        clock: Clock = time.monotonic
    ):
        super().__init__()
        self.settings = app_settings or settings
        self.config = config or self.settings.exchange_config()
        self._clock = clock

        self.signer: Optional[OkxSigner] = None
        if self.settings.has_credentials:
            self.signer = OkxSigner(
                self.settings.okx_api_key,
                self.settings.okx_secret_key,
                self.settings.okx_passphrase
            )

        self.registry = InstrumentRegistry()
        self.ledger = Ledger(stale_after=self.settings.ledger_stale_seconds, clock=clock)
        self.client: Optional[OkxAPIClient] = None
        self.ws: Optional[OkxWSClient] = None

        self.markets: Dict[str, OkxMarket] = {}
        self.traders: Dict[str, OkxTrader] = {}
        self.liquidation_observers: Dict[str, ObserverList] = {}

        self._booted = False
        self._account_seen = asyncio.Event()
        self._positions_seen = asyncio.Event()
        self._vend_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

        self.logger.debug(f"OkxExchange created (rest={self.settings.okx_rest_url})")

    @property
    def private(self) -> bool:
        return self.signer is not None

    async def initialize(self) -> None:
        """
        Boot the session.

        Raises:
            ConfigurationError: Instruments not fetchable, account in
                unexpected modes, or no account push within boot_timeout
        """
        if self._booted:
            return
        self.logger.info("Initializing OKX exchange connector...")

        self.client = OkxAPIClient(
            self.signer,
            base_url=self.settings.okx_rest_url,
            request_timeout=self.settings.request_timeout
        )
        await self.client.__aenter__()

        await self.load_instruments()

        if self.private:
            try:
                await self.sync_clock()
            except SessionError as e:
                raise ConfigurationError(f"cannot read server time: {e}") from e
            self._spawn(self._clock_sync_loop(), "okx-clock-sync")
            await self.check_account_config()
            if self.config.cancel_orders_on_boot:
                await self.cancel_own_orders()

        self.ws = OkxWSClient(
            self.signer,
            public_url=self.settings.okx_ws_public_url,
            private_url=self.settings.okx_ws_private_url,
            handshake_timeout=self.settings.ws_handshake_timeout,
            reconnect_delay=self.settings.ws_reconnect_delay,
            retry_interval=self.settings.subscribe_retry_interval,
            ping_interval=self.settings.ws_ping_interval,
            pong_timeout=self.settings.ws_pong_timeout,
            on_fatal=self.report_fatal
        )
        if self.private:
            self.ws.add_private_handler("account", self._on_account_frame)
            self.ws.add_private_handler("positions", self._on_positions_frame)
            self.ws.add_private_handler("orders", self._on_orders_frame)
            self.ws.subscribe("account", private=True)
            self.ws.subscribe("positions", inst_type="ANY", private=True)
            self.ws.subscribe("orders", inst_type="ANY", private=True)
        await self.ws.start()

        if self.private:
            await self._wait_account_sync()
            self._spawn(self._account_recovery_loop(), "okx-account-recovery")

        if self.config.ticker_source == TickerSource.REST_POLL:
            self._spawn(self._ticker_poll_loop(), "okx-ticker-poll")

        self._booted = True
        self.logger.info(f"✓ OKX exchange connector initialized ({'private' if self.private else 'public only'})")

    def _spawn(self, coro, name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    async def shutdown(self) -> None:
        """
        Shutdown the session gracefully.

        Closes:
            - Traders (cancels their unfinished orders)
            - Markets and WebSocket sessions
            - Background tasks and the REST session
        """
        self.logger.info("Shutting down OKX exchange connector...")

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for trader in list(self.traders.values()):
            try:
                await trader.close()
            except SessionError as e:
                self.logger.warning(f"Closing trader {trader.inst_id} failed: {e}")
        for market in list(self.markets.values()):
            await market.close()
        if self.ws is not None:
            await self.ws.stop()
        if self.client is not None:
            await self.client.__aexit__(None, None, None)

        self._booted = False
        self.logger.info("✓ OKX exchange connector shut down")

    async def health_check(self) -> bool:
        """
        Check the REST API is reachable and the session is ready.

        Notes:
            - Makes a lightweight call to fetch server time
        """
        if self.client is None:
            return False
        try:
            await self.client.get_server_time()
        except SessionError as e:
            self.logger.error(f"OKX health check failed: {e}")
            return False
        return self.ready()

    # ============================================
    # Boot Steps
    # ============================================

    async def sync_clock(self) -> None:
        server_ms = await self.client.get_server_time()
        self.signer.update_offset(server_ms)

    async def _clock_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.clock_sync_interval)
            try:
                await self.sync_clock()
            except SessionError as e:
                self.logger.warning(f"Clock sync failed: {e}")

    async def load_instruments(self, inst_types=INSTRUMENT_TYPES) -> int:
        """
        Fetch instrument categories into the registry.

        Raises:
            ConfigurationError: If a category cannot be fetched
        """
        total = 0
        for inst_type in inst_types:
            try:
                instruments = await self.client.get_instruments(inst_type)
            except SessionError as e:
                raise ConfigurationError(f"cannot fetch {inst_type} instruments: {e}") from e
            total += self.registry.register_many(instruments)
        self.logger.info(f"✓ Loaded {total} instruments ({', '.join(inst_types)})")
        return total

    async def check_account_config(self) -> None:
        """
        Raises:
            ConfigurationError: Unless the account uses single-currency margin
                and long/short position mode
        """
        try:
            config = await self.client.get_account_config()
        except SessionError as e:
            raise ConfigurationError(f"cannot read account configuration: {e}") from e

        level = config.get("acctLv", "")
        mode = config.get("posMode", "")
        if level != ACCOUNT_LEVEL_SINGLE_CURRENCY_MARGIN:
            raise ConfigurationError(
                f"account level is {level!r}, expected single-currency margin ({ACCOUNT_LEVEL_SINGLE_CURRENCY_MARGIN})"
            )
        if mode != POSITION_MODE_LONG_SHORT:
            raise ConfigurationError(f"position mode is {mode!r}, expected {POSITION_MODE_LONG_SHORT}")
        self.logger.info("✓ Account configuration checked")

    async def cancel_own_orders(self) -> int:
        """Cancel every live order carrying our strategy tag"""
        tag = self.config.strategy_tag
        try:
            pending = await self.client.get_pending_orders()
        except SessionError as e:
            raise ConfigurationError(f"cannot list pending orders: {e}") from e

        ours = [o for o in pending if o.tag == tag]
        for start in range(0, len(ours), MAX_BATCH_CANCEL):
            batch = [{"instId": o.inst_id, "ordId": o.order_id} for o in ours[start:start + MAX_BATCH_CANCEL]]
            resp = await self.client.cancel_orders(batch)
            if not resp.ok:
                self.logger.warning(f"Batch cancel returned {resp.code} {resp.msg}")
        self.logger.info(f"✓ Cancelled {len(ours)} leftover order(s) tagged '{tag}'")
        return len(ours)

    async def _wait_account_sync(self) -> None:
        synced = asyncio.ensure_future(asyncio.gather(self._account_seen.wait(), self._positions_seen.wait()))
        fatal = asyncio.ensure_future(self.wait_fatal())
        done, pending = await asyncio.wait(
            {synced, fatal}, timeout=self.settings.boot_timeout, return_when=asyncio.FIRST_COMPLETED
        )
        for future in pending:
            future.cancel()
        if fatal in done:
            raise ConfigurationError(f"boot aborted: {fatal.result()}")
        if synced not in done:
            missing = [name for name, event in (("account", self._account_seen), ("positions", self._positions_seen))
                       if not event.is_set()]
            raise ConfigurationError(f"no {' / '.join(missing)} push within {self.settings.boot_timeout}s")

    # ============================================
    # Private Channel Dispatch
    # ============================================

    def _on_account_frame(self, frame: dict) -> None:
        for row in frame.get("data", []):
            for snapshot in parse_balances(row):
                self.ledger.refresh_balance(snapshot.ccy, snapshot.update_time, snapshot.equity, snapshot.frozen)
        if not self._account_seen.is_set():
            self.ledger.reset_balances()
            self._account_seen.set()
            self.logger.info(f"✓ Account synced ({len(self.ledger.balances())} currencies)")

    def _on_positions_frame(self, frame: dict) -> None:
        if not self._positions_seen.is_set():
            self.ledger.reset_positions()
        for row in frame.get("data", []):
            snapshot = parse_position(row)
            if snapshot is None or snapshot.margin_mode != self.config.contract_trade_mode:
                continue
            self.ledger.refresh_position(
                snapshot.inst_id, snapshot.pos_side, snapshot.amount, snapshot.avg_price, snapshot.update_time
            )
        if not self._positions_seen.is_set():
            self._positions_seen.set()
            self.logger.info("✓ Positions synced")

    def _on_orders_frame(self, frame: dict) -> None:
        for row in frame.get("data", []):
            snapshot = parse_order(row, "ws")
            trader = self.traders.get(snapshot.inst_id)
            if trader is None:
                self.logger.debug(f"Order push for {snapshot.inst_id} without a trader: {snapshot.client_id}")
                continue
            trader.on_order_snapshot(snapshot)

    # ============================================
    # REST Recovery and Polling
    # ============================================

    async def refresh_account(self) -> None:
        """Read balances and positions over REST and merge them into the ledger"""
        for row in await self.client.get_balance():
            for snapshot in parse_balances(row):
                self.ledger.refresh_balance(snapshot.ccy, snapshot.update_time, snapshot.equity, snapshot.frozen)
        for row in await self.client.get_positions():
            snapshot = parse_position(row)
            if snapshot is not None and snapshot.margin_mode == self.config.contract_trade_mode:
                self.ledger.refresh_position(
                    snapshot.inst_id, snapshot.pos_side, snapshot.amount, snapshot.avg_price, snapshot.update_time
                )

    async def _account_recovery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.ledger_stale_seconds)
            if self.ledger.ready():
                continue
            self.logger.info("Ledger not ready, reading account over REST")
            try:
                await self.refresh_account()
            except SessionError as e:
                self.logger.warning(f"Account recovery read failed: {e}")

    async def _ticker_poll_loop(self) -> None:
        while True:
            await asyncio.sleep(TICKER_POLL_INTERVAL)
            if not self.markets:
                continue
            for inst_type in INSTRUMENT_TYPES:
                try:
                    tickers = await self.client.get_tickers(inst_type)
                except SessionError as e:
                    self.logger.warning(f"{inst_type} ticker poll failed: {e}")
                    continue
                for ticker in tickers:
                    market = self.markets.get(ticker.inst_id)
                    if market is not None:
                        market.on_ticker(ticker)

    # ============================================
    # Handle Vending
    # ============================================

    async def _instrument(self, inst_id: str):
        instrument = self.registry.find(inst_id)
        if instrument is None:
            self.logger.info(f"{inst_id} not in registry, re-fetching instruments")
            await self.load_instruments()
            instrument = self.registry.get(inst_id)
        return instrument

    async def use_market(self, inst_id: str, with_full_depth: bool = True) -> OkxMarket:
        """
        Return the market of `inst_id`, creating and subscribing it on first use.

        Raises:
            UnknownInstrumentError: If OKX does not list the instrument
        """
        async with self._vend_lock:
            return await self._use_market(inst_id, with_full_depth)

    async def _use_market(self, inst_id: str, with_full_depth: bool) -> OkxMarket:
        market = self.markets.get(inst_id)
        if market is not None:
            return market
        instrument = await self._instrument(inst_id)
        market = OkxMarket(
            instrument, self.registry, self.ws, self.client, self.config,
            with_full_depth=with_full_depth, clock=self._clock
        )
        market.start()
        self.markets[inst_id] = market
        return market

    async def use_trader(self, inst_id: str, leverage: int = 1) -> OkxTrader:
        """
        Return the trader of `inst_id`, creating it on first use.

        Contract traders are handed out only after their leverage is set.

        Raises:
            ConfigurationError: Without API credentials
            UnknownInstrumentError: If OKX does not list the instrument
        """
        if not self.private:
            raise ConfigurationError("trading needs OKX API credentials")
        async with self._vend_lock:
            trader = self.traders.get(inst_id)
            if trader is not None:
                if isinstance(trader, ContractTrader) and trader.leverage != leverage:
                    self.logger.warning(f"{inst_id} trader already uses leverage {trader.leverage}, not {leverage}")
                return trader

            market = await self._use_market(inst_id, True)
            common = dict(
                market=market,
                ledger=self.ledger,
                api=self.client,
                config=self.config,
                venue_ready=self.ready,
                on_fatal=self.report_fatal,
                poll_interval=self.settings.order_poll_interval,
                clock=self._clock
            )
            if market.instrument.is_contract:
                trader = ContractTrader(leverage=leverage, **common)
            else:
                trader = SpotTrader(**common)
            await trader.setup()
            self.traders[inst_id] = trader
            self.logger.info(f"✓ Trader {inst_id} ready to trade")
            return trader

    def subscribe_liquidations(self, inst_type: str, observer: Callable) -> None:
        """
        Call `observer` with every Liquidation of an instrument category.

        Raises:
            ValueError: If liquidations are disabled in the configuration
        """
        if not self.config.subscribe_liquidations:
            raise ValueError("liquidation streams are disabled (subscribe_liquidations=False)")
        observers = self.liquidation_observers.get(inst_type)
        if observers is None:
            observers = ObserverList(f"{inst_type} liquidations")
            self.liquidation_observers[inst_type] = observers

            def on_frame(frame: dict) -> None:
                for row in frame.get("data", []):
                    for event in parse_liquidations(row):
                        observers.notify(event)

            self.ws.add_public_handler(LIQUIDATION_CHANNEL, inst_type, on_frame)
            self.ws.subscribe(LIQUIDATION_CHANNEL, inst_type=inst_type)
        observers.subscribe(observer)

    # ============================================
    # Status
    # ============================================

    def unready_reason(self) -> str:
        if self.fatal_error is not None:
            return f"fatal: {self.fatal_error}"
        if not self._booted or self.ws is None:
            return "not booted"
        if not self.ws.public.connected:
            return "public stream disconnected"
        if self.private and not self.ws.private_ready():
            return "private stream not ready"
        return ""

    def ready(self) -> bool:
        return self.unready_reason() == ""


__all__ = [
    "OkxExchange",
    "OkxMarket",
    "OkxOrder",
    "OkxTrader",
    "OrderObserver",
    "ContractTrader",
    "SpotTrader",
]
