"""
OKX WebSocket Client

Owns the public and private WsSession of one venue session and knows the
OKX channel protocol:
- Subscribe/unsubscribe payloads and their acknowledgement keywords
- The signed login on the private connection
- Dispatch of data frames to per-channel, per-instrument handlers
- Text heartbeats ("ping" / "pong") through a Pinger per connection

Supported Streams:
    Public:  books, books5, books50-l2-tbt, tickers, mark-price, price-limit,
             funding-rate, liquidation-orders
    Private: account, positions, orders

WebSocket Documentation:
    https://www.okx.com/docs-v5/en/#overview-websocket

Usage:
    client = OkxWSClient(signer)
    client.add_public_handler("books", "BTC-USDT", on_depth)
    client.subscribe("books", inst_id="BTC-USDT")
    await client.start()
"""

import json
from typing import Any, Callable, Dict, Optional

from core.errors import ConfigurationError
from core.logging import get_logger
from core.ws_session import ChannelRouter, Pinger, Subscriber, WsSession
from .signer import OkxSigner

FrameHandler = Callable[[Dict[str, Any]], None]

PING_TEXT = "ping"

PRIVATE_CHANNELS = frozenset({"account", "positions", "orders"})


def channel_payload(op: str, channel: str, inst_id: str = "", inst_type: str = "") -> str:
    """
    Build a subscribe/unsubscribe payload.

    Example:
        >>> channel_payload("subscribe", "books", inst_id="BTC-USDT")
        '{"op":"subscribe","args":[{"channel":"books","instId":"BTC-USDT"}]}'
    """
    arg = {"channel": channel}
    if inst_id:
        arg["instId"] = inst_id
    if inst_type:
        arg["instType"] = inst_type
    return json.dumps({"op": op, "args": [arg]}, separators=(",", ":"))


def ack_keys(channel: str, inst_id: str = "", inst_type: str = ""):
    """Keywords that identify the acknowledgement of one subscription"""
    keys = ['"event":"subscribe"', f'"channel":"{channel}"']
    if inst_id:
        keys.append(f'"instId":"{inst_id}"')
    if inst_type:
        keys.append(f'"instType":"{inst_type}"')
    return keys


class OkxWSClient:
    """
    Public and private OKX streams of one venue session.

    Attributes:
        public: WsSession of the public URL
        private: WsSession of the private URL (None without credentials)
        on_fatal: Called with a ConfigurationError when the login is refused

    Example:
        >>> client = OkxWSClient(signer, on_fatal=exchange.report_fatal)
        >>> client.add_private_handler("orders", on_orders)
        >>> client.subscribe("orders", inst_type="ANY", private=True)
        >>> await client.start()

    Notes:
        - Handlers receive the decoded frame dict
        - Public handlers are keyed by instId (or instType for broadcast
          streams); a frame without a registered handler is dropped
        - Handler exceptions are logged by the session and do not stop the
          read loop
    """

    def __init__(
        self,
        signer: Optional[OkxSigner] = None,
        public_url: str = "wss://ws.okx.com:8443/ws/v5/public",
        private_url: str = "wss://ws.okx.com:8443/ws/v5/private",
        handshake_timeout: float = 5.0,
        reconnect_delay: float = 5.0,
        retry_interval: float = 5.0,
        ping_interval: float = 25.0,
        pong_timeout: float = 50.0,
        on_fatal: Optional[Callable[[Exception], None]] = None
    ):
        self.logger = get_logger(__name__)
        self.signer = signer
        self.on_fatal = on_fatal

        self._public_router = ChannelRouter()
        self._private_router = ChannelRouter()
        self._public_handlers: Dict[str, Dict[str, FrameHandler]] = {}

        self.public = WsSession(
            "okx-public", public_url,
            on_message=self._public_router.dispatch,
            handshake_timeout=handshake_timeout,
            reconnect_delay=reconnect_delay,
            retry_interval=retry_interval
        )
        self._pingers = [Pinger(self.public, PING_TEXT, ping_interval, pong_timeout)]

        self.private: Optional[WsSession] = None
        if signer is not None:
            self.private = WsSession(
                "okx-private", private_url,
                on_message=self._private_router.dispatch,
                handshake_timeout=handshake_timeout,
                reconnect_delay=reconnect_delay,
                retry_interval=retry_interval
            )
            self.private.set_login(Subscriber(
                "login",
                generator=signer.login_payload,
                ack_keys=('"event":"login"', '"code":"0"'),
                fail_keys=('"event":"error"',),
                on_failed=self._on_login_failed
            ))
            self._pingers.append(Pinger(self.private, PING_TEXT, ping_interval, pong_timeout))

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        await self.public.start()
        if self.private is not None:
            await self.private.start()
        for pinger in self._pingers:
            pinger.start()
        self.logger.info("✓ OKX WebSocket sessions started")

    async def stop(self) -> None:
        for pinger in self._pingers:
            await pinger.stop()
        await self.public.stop()
        if self.private is not None:
            await self.private.stop()

    def _on_login_failed(self, text: str) -> None:
        error = ConfigurationError(f"OKX login refused: {text[:200]}")
        self.logger.error(str(error))
        if self.on_fatal is not None:
            self.on_fatal(error)

    # ============================================
    # Dispatch
    # ============================================

    def add_public_handler(self, channel: str, key: str, handler: FrameHandler) -> None:
        """
        Route frames of `channel` whose arg carries instId (or instType) == key.
        """
        table = self._public_handlers.get(channel)
        if table is None:
            table = {}
            self._public_handlers[channel] = table
            self._public_router.register(channel, self._make_public_dispatcher(channel))
        self._public_handlers[channel] = {**table, key: handler}

    def remove_public_handler(self, channel: str, key: str) -> None:
        table = self._public_handlers.get(channel, {})
        self._public_handlers[channel] = {k: h for k, h in table.items() if k != key}

    def _make_public_dispatcher(self, channel: str) -> Callable[[str], None]:
        def dispatch(text: str) -> None:
            frame = json.loads(text)
            arg = frame.get("arg", {})
            key = arg.get("instId") or arg.get("instType") or ""
            handler = self._public_handlers.get(channel, {}).get(key)
            if handler is None:
                self.logger.debug(f"Dropped {channel} frame for {key}: no handler")
                return
            handler(frame)
        return dispatch

    def add_private_handler(self, channel: str, handler: FrameHandler) -> None:
        if channel not in PRIVATE_CHANNELS:
            raise ValueError(f"unknown private channel: {channel}")
        self._private_router.register(channel, lambda text: handler(json.loads(text)))

    # ============================================
    # Subscriptions
    # ============================================

    def subscribe(
        self,
        channel: str,
        inst_id: str = "",
        inst_type: str = "",
        private: bool = False
    ) -> Subscriber:
        """
        Register a subscription; it is sent on the next scheduler tick and
        re-sent after every reconnect.

        Returns:
            The Subscriber, for readiness checks and forced re-subscription
        """
        session = self._session(private)
        key = inst_id or inst_type
        return session.add_subscriber(Subscriber(
            f"{channel}:{key}" if key else channel,
            text=channel_payload("subscribe", channel, inst_id, inst_type),
            ack_keys=ack_keys(channel, inst_id, inst_type),
            unsubscribe_text=channel_payload("unsubscribe", channel, inst_id, inst_type)
        ))

    async def unsubscribe(self, subscriber: Subscriber, private: bool = False) -> None:
        await self._session(private).remove_subscriber(subscriber)

    def _session(self, private: bool) -> WsSession:
        if not private:
            return self.public
        if self.private is None:
            raise RuntimeError("Private channels need API credentials")
        return self.private

    # ============================================
    # Status
    # ============================================

    def public_ready(self) -> bool:
        return self.public.ready()

    def private_ready(self) -> bool:
        return self.private is not None and self.private.ready()
