"""
WebSocket Session

One long-lived, self-healing duplex connection to a venue.

Components:
    - WsSession: connect/reconnect loop, read loop, serialized writes, the
      subscription registry and its scheduler
    - Subscriber: one subscribe intent with its acknowledgement keywords
    - Pinger: heartbeat driver that pings on silence and forces a reconnect
      when the silence lasts too long
    - ChannelRouter: routes frames to typed handlers by the "arg.channel"
      substring, without parsing frames nobody asked for

Connection lifecycle:
    Disconnected -> Connecting (dial with proxy-from-env, handshake timeout)
    Connecting   -> Connected on success, otherwise wait and redial
    Connected    -> Disconnected on read error or close; every subscriber is
                    reset to pending and re-issued after the next connect

Subscription scheduling (every 100 ms):
    - A login subscriber, when registered, runs first and blocks the others
      until it has succeeded.
    - A pending subscriber whose last attempt is older than the retry
      interval sends its text (or the text produced by its generator) and
      watches incoming frames until one contains all of its ack keywords.

Frame decoding:
    Text frames are used as-is; binary frames are raw-DEFLATE compressed.

Usage:
    session = WsSession("okx-public", url, on_message=router.dispatch)
    session.add_subscriber(Subscriber("books:BTC-USDT", text, ack_keys))
    await session.start()
    ...
    await session.stop()
"""

import asyncio
import math
import time
import zlib
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.logging import get_logger, log_websocket_event
from core.observers import ObserverList

Clock = Callable[[], float]

SCHEDULER_TICK = 0.1
PINGER_TICK = 1.0


class SubscriberStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    SUCCEEDED = "succeeded"


class Subscriber:
    """
    One subscribe intent on a WsSession.

    Attributes:
        name: Human readable id (used in logs)
        text: Subscribe payload, ignored when `generator` is set
        ack_keys: Substrings that must all appear in the acknowledgement frame
        generator: Builds the payload at send time (login signs a fresh timestamp)
        unsubscribe_text: Payload sent when the subscriber is removed
        fail_keys: Substrings that together identify a refusal frame
        on_failed: Called with the refusal frame
        status: not_started, pending or succeeded
        last_attempt: Monotonic time of the last send
    """

    def __init__(
        self,
        name: str,
        text: str = "",
        ack_keys: Iterable[str] = (),
        generator: Optional[Callable[[], str]] = None,
        unsubscribe_text: str = "",
        fail_keys: Iterable[str] = (),
        on_failed: Optional[Callable[[str], None]] = None
    ):
        self.name = name
        self.text = text
        self.ack_keys: Tuple[str, ...] = tuple(ack_keys)
        self.generator = generator
        self.unsubscribe_text = unsubscribe_text
        self.fail_keys: Tuple[str, ...] = tuple(fail_keys)
        self.on_failed = on_failed
        self.status = SubscriberStatus.NOT_STARTED
        self.last_attempt = -math.inf
        self.attempts = 0

    def reset(self) -> None:
        """Mark pending so the scheduler re-issues the subscription on its next tick"""
        self.status = SubscriberStatus.PENDING
        self.last_attempt = -math.inf

    def payload(self) -> str:
        return self.generator() if self.generator else self.text

    @property
    def succeeded(self) -> bool:
        return self.status == SubscriberStatus.SUCCEEDED

    def match(self, text: str) -> bool:
        """
        Inspect one frame while pending.

        Returns:
            True when the frame acknowledged the subscription
        """
        if self.ack_keys and all(key in text for key in self.ack_keys):
            self.status = SubscriberStatus.SUCCEEDED
            return True
        if self.fail_keys and all(key in text for key in self.fail_keys) and self.on_failed:
            self.on_failed(text)
        return False

    def __repr__(self) -> str:
        return f"<Subscriber {self.name} {self.status.value}>"


# ============================================
# Frame Decoding and Routing
# ============================================

CHANNEL_MARKER = '"arg":{"channel":"'


def inflate(data: bytes) -> str:
    """Decompress a raw-DEFLATE binary frame"""
    return zlib.decompress(data, -zlib.MAX_WBITS).decode("utf-8")


def extract_channel(text: str) -> Optional[str]:
    """
    Find the stream of a data frame by literal search.

    Returns:
        The channel name, or None for frames that are not data pushes
        (acks, errors, "pong")

    Example:
        >>> extract_channel('{"arg":{"channel":"books","instId":"BTC-USDT"},"data":[]}')
        'books'
    """
    if not text.startswith("{") or '"data"' not in text:
        return None
    start = text.find(CHANNEL_MARKER)
    if start < 0:
        return None
    start += len(CHANNEL_MARKER)
    end = text.find('"', start)
    if end < 0:
        return None
    return text[start:end]


class ChannelRouter:
    """Maps a channel name to the handler that parses its frames"""

    def __init__(self):
        self._handlers: Dict[str, Callable[[str], None]] = {}
        self.unrouted = 0
        self.logger = get_logger(__name__)

    def register(self, channel: str, handler: Callable[[str], None]) -> None:
        self._handlers = {**self._handlers, channel: handler}

    def dispatch(self, text: str) -> bool:
        channel = extract_channel(text)
        if channel is None:
            return False
        handler = self._handlers.get(channel)
        if handler is None:
            self.unrouted += 1
            self.logger.debug(f"No handler for channel {channel}")
            return False
        handler(text)
        return True


# ============================================
# Session
# ============================================

class WsSession:
    """
    Long-lived WebSocket connection with subscription management.

    Attributes:
        name: Log name (e.g. "okx-public")
        url: WebSocket URL
        connected: True while a connection is open
        last_recv: Monotonic time of the last inbound frame
        frames_received: Count of inbound frames

    Notes:
        - Proxies are taken from the environment (websockets proxy=True)
        - Server pings are answered by the websockets protocol layer; the
          library's own keepalive is off, Pinger drives the heartbeat
        - Only stop() ends the reconnect loop
    """

    def __init__(
        self,
        name: str,
        url: str,
        on_message: Optional[Callable[[str], None]] = None,
        handshake_timeout: float = 5.0,
        reconnect_delay: float = 5.0,
        retry_interval: float = 5.0,
        clock: Clock = time.monotonic
    ):
        self.name = name
        self.url = url
        self.handshake_timeout = handshake_timeout
        self.reconnect_delay = reconnect_delay
        self.retry_interval = retry_interval
        self._on_message = on_message
        self._clock = clock

        self._ws: Optional[ClientConnection] = None
        self._send_lock = asyncio.Lock()
        self._running = False
        self._tasks: List[asyncio.Task] = []

        self.connected = False
        self._need_resub = False
        self.last_recv = clock()
        self.frames_received = 0

        self._login: Optional[Subscriber] = None
        self._subscribers: Tuple[Subscriber, ...] = ()
        self._pending: Tuple[Subscriber, ...] = ()

        self.connect_listeners: ObserverList = ObserverList(f"{name} connect")
        self.frame_listeners: ObserverList = ObserverList(f"{name} frame")

        self.logger = get_logger(__name__)

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Start the connect loop and the subscription scheduler"""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._connect_loop(), name=f"{self.name}-connect"),
            asyncio.create_task(self._subscribe_loop(), name=f"{self.name}-subscribe"),
        ]
        self.logger.info(f"[{self.name}] session started ({self.url})")

    async def stop(self) -> None:
        """Close the connection and end all loops"""
        self._running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.connected = False
        log_websocket_event(self.name, "stopped")

    async def reconnect(self, reason: str) -> None:
        """Drop the current connection; the connect loop dials again"""
        log_websocket_event(self.name, "reconnect", details=reason)
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def _connect_loop(self) -> None:
        while self._running:
            try:
                ws = await websockets.connect(
                    self.url,
                    open_timeout=self.handshake_timeout,
                    ping_interval=None,
                    max_size=None,
                    proxy=True
                )
            except (WebSocketException, asyncio.TimeoutError, OSError) as e:
                log_websocket_event(self.name, "error", details=f"connect failed: {e!r}")
                await asyncio.sleep(self.reconnect_delay)
                continue

            self._ws = ws
            self.connected = True
            self._need_resub = True
            self.last_recv = self._clock()
            log_websocket_event(self.name, "connected")
            self.connect_listeners.notify()

            try:
                await self._read_loop(ws)
            except ConnectionClosed as e:
                log_websocket_event(self.name, "error", details=f"read failed: {e!r}")
            finally:
                self.connected = False
                self._ws = None
                await ws.close()
                log_websocket_event(self.name, "disconnected")

    async def _read_loop(self, ws: ClientConnection) -> None:
        async for message in ws:
            if isinstance(message, bytes):
                try:
                    text = inflate(message)
                except (zlib.error, UnicodeDecodeError) as e:
                    self.logger.warning(f"[{self.name}] undecodable binary frame: {e}")
                    continue
            else:
                text = message
            self.handle_frame(text)

    def handle_frame(self, text: str) -> None:
        """Process one decoded inbound frame"""
        self.last_recv = self._clock()
        self.frames_received += 1
        self.frame_listeners.notify(text)

        pending = self._pending
        if pending:
            matched = [sub for sub in pending if sub.match(text)]
            if matched:
                self._pending = tuple(sub for sub in self._pending if sub not in matched)
                for sub in matched:
                    log_websocket_event(self.name, "subscribed", channel=sub.name)

        if self._on_message is not None:
            try:
                self._on_message(text)
            except Exception as e:
                self.logger.exception(f"[{self.name}] frame handler failed: {e} | frame: {text[:200]}")

    # ============================================
    # Sending
    # ============================================

    async def send(self, text: str) -> bool:
        """
        Send one text frame.

        Returns:
            False when not connected or the write failed
        """
        ws = self._ws
        if ws is None or not self.connected:
            return False
        try:
            async with self._send_lock:
                await ws.send(text)
            return True
        except (ConnectionClosed, ConnectionError) as e:
            self.logger.warning(f"[{self.name}] send failed: {e!r}")
            return False

    # ============================================
    # Subscriptions
    # ============================================

    def set_login(self, subscriber: Subscriber) -> None:
        subscriber.reset()
        self._login = subscriber

    def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        subscriber.reset()
        if subscriber not in self._subscribers:
            self._subscribers = self._subscribers + (subscriber,)
        return subscriber

    async def remove_subscriber(self, subscriber: Subscriber) -> None:
        """Forget a subscriber and send its unsubscribe payload if it was active"""
        self._subscribers = tuple(s for s in self._subscribers if s is not subscriber)
        self._pending = tuple(s for s in self._pending if s is not subscriber)
        was_active = subscriber.succeeded
        subscriber.status = SubscriberStatus.NOT_STARTED
        if was_active and subscriber.unsubscribe_text:
            await self.send(subscriber.unsubscribe_text)

    @property
    def subscribers(self) -> Tuple[Subscriber, ...]:
        return self._subscribers

    @property
    def logged_in(self) -> bool:
        return self._login is None or self._login.succeeded

    def ready(self) -> bool:
        """Connected, logged in, and every subscription acknowledged"""
        return self.connected and self.logged_in and all(s.succeeded for s in self._subscribers)

    async def _subscribe_loop(self) -> None:
        while self._running:
            await self.tick_subscribers()
            await asyncio.sleep(SCHEDULER_TICK)

    async def tick_subscribers(self, now: Optional[float] = None) -> None:
        """One scheduler pass; `now` defaults to the session clock"""
        if not self.connected:
            return
        now = self._clock() if now is None else now

        if self._need_resub:
            self._need_resub = False
            self._pending = ()
            if self._login is not None:
                self._login.reset()
            for sub in self._subscribers:
                sub.reset()

        if self._login is not None and not self._login.succeeded:
            await self._attempt(self._login, now)
            return

        for sub in self._subscribers:
            if sub.status == SubscriberStatus.PENDING:
                await self._attempt(sub, now)

    async def _attempt(self, sub: Subscriber, now: float) -> None:
        if now - sub.last_attempt <= self.retry_interval:
            return
        sub.last_attempt = now
        sub.attempts += 1
        if sub not in self._pending:
            self._pending = self._pending + (sub,)
        self.logger.debug(f"[{self.name}] subscribing {sub.name} (attempt {sub.attempts})")
        await self.send(sub.payload())


# ============================================
# Heartbeat
# ============================================

class Pinger:
    """
    Heartbeat driver for one WsSession.

    After `send_interval` seconds without an inbound frame it sends
    `ping_text` once; after `reconnect_interval` seconds it forces a
    reconnect. Any inbound frame or a new connection resets both.

    Example:
        >>> pinger = Pinger(session, "ping", send_interval=25, reconnect_interval=50)
        >>> pinger.start()
    """

    def __init__(
        self,
        session: WsSession,
        ping_text: str = "ping",
        send_interval: float = 25.0,
        reconnect_interval: float = 50.0,
        clock: Clock = time.monotonic
    ):
        self.session = session
        self.ping_text = ping_text
        self.send_interval = send_interval
        self.reconnect_interval = reconnect_interval
        self._clock = clock
        self.last_activity = clock()
        self.ping_pending = False
        self._task: Optional[asyncio.Task] = None
        session.frame_listeners.subscribe(self._on_frame)
        session.connect_listeners.subscribe(self.touch)

    def _on_frame(self, _text: str) -> None:
        self.touch()

    def touch(self) -> None:
        self.last_activity = self._clock()
        self.ping_pending = False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=f"{self.session.name}-pinger")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(PINGER_TICK)
            await self.check()

    async def check(self, now: Optional[float] = None) -> None:
        if not self.session.connected:
            return
        now = self._clock() if now is None else now
        silence = now - self.last_activity
        if silence > self.send_interval and not self.ping_pending:
            self.ping_pending = True
            await self.session.send(self.ping_text)
        elif silence > self.reconnect_interval:
            self.touch()
            await self.session.reconnect("pong-time-out")
