"""
Exchange Interface - Abstract Contract for Venue Sessions

This module defines the abstract base class every venue session implements.
A venue session mirrors one venue account for the lifetime of the process:
instrument metadata, private account state (balances, positions, orders)
and public market state, over long-lived WebSocket connections.

By enforcing a consistent interface, we ensure:
- Strategies work against markets and traders, not venue-specific code
- The ExchangeManager can boot, check and stop any venue the same way
- Fatal conditions surface through one channel per venue

Example:
    class OkxExchange(ExchangeInterface):
        name = "okx"

        async def use_market(self, inst_id, with_full_depth=True):
            ...

    exchange = manager.get_exchange("okx")
    market = await exchange.use_market("BTC-USDT-SWAP")
    trader = await exchange.use_trader("BTC-USDT-SWAP", leverage=5)

Fatal channel:
    Detection sites call report_fatal(exc). The session logs it at
    CRITICAL, latches itself not-ready, and resolves wait_fatal(), which
    the process entry point awaits before exiting non-zero.

Capabilities System:
    Each venue declares which features it supports via the `capabilities`
    dict, for example:
        capabilities = {
            "spot": True,
            "swap": True,
            "liquidations": True,
            "rest_ticker_poll": True
        }
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from core.logging import get_logger


class ExchangeInterface(ABC):
    """
    Abstract Base Class for Venue Sessions

    Class Attributes:
        name: Unique identifier for the venue (lowercase, e.g. "okx")
        capabilities: Dictionary indicating which features this venue supports

    Abstract Methods (MUST be implemented by all venues):
        - initialize: Boot registry, clock, account checks and private streams
        - shutdown: Stop streams and background tasks
        - use_market: Vend the cached market handle of an instrument
        - use_trader: Vend the cached trader handle of an instrument

    Provided:
        - report_fatal / wait_fatal / fatal_error: the fatal channel
        - health_check: default is ready()
        - supports: capability lookup
    """

    # ============================================
    # Class Attributes (must be set by subclasses)
    # ============================================

    name: str
    """Unique venue identifier (lowercase). Example: "okx" """

    capabilities: Dict[str, bool] = {
        "spot": False,
        "swap": False,
        "liquidations": False,
        "rest_ticker_poll": False
    }
    """Dictionary indicating which features this venue supports"""

    def __init__(self):
        self.logger = get_logger(f"exchanges.{self.name}")
        self._fatal: Optional[asyncio.Future] = None
        self._fatal_error: Optional[BaseException] = None

    # ============================================
    # Lifecycle
    # ============================================

    @abstractmethod
    async def initialize(self) -> None:
        """
        Boot the venue session.

        Raises:
            SessionFatalError: If the venue cannot be used (instruments not
                fetchable, account in unexpected modes, login refused)
        """
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """
        Stop the session and cleanup resources.

        Notes:
            - Should handle errors gracefully (don't raise exceptions)
        """
        pass

    async def health_check(self) -> bool:
        """
        Check if the session is usable.

        Returns:
            bool: True if ready, False otherwise
        """
        return self.ready()

    @abstractmethod
    def ready(self) -> bool:
        """True when booted, streams acknowledged and no fatal error reported"""
        pass

    # ============================================
    # Handle Vending
    # ============================================

    @abstractmethod
    async def use_market(self, inst_id: str, with_full_depth: bool = True) -> Any:
        """
        Return the market of an instrument, creating it on first use.

        Raises:
            UnknownInstrumentError: If the instrument is not listed
        """
        pass

    @abstractmethod
    async def use_trader(self, inst_id: str, leverage: int = 1) -> Any:
        """
        Return the trader of an instrument, creating it on first use.

        Raises:
            UnknownInstrumentError: If the instrument is not listed
        """
        pass

    # ============================================
    # Fatal Channel
    # ============================================

    def _fatal_future(self) -> asyncio.Future:
        if self._fatal is None:
            self._fatal = asyncio.get_running_loop().create_future()
        return self._fatal

    def report_fatal(self, error: BaseException) -> None:
        """
        Report a condition the process must not continue after.

        Only the first report resolves wait_fatal(); later ones are logged.
        """
        self.logger.critical(f"[{self.name}] fatal: {type(error).__name__}: {error}")
        if self._fatal_error is not None:
            return
        self._fatal_error = error
        future = self._fatal_future()
        if not future.done():
            future.set_result(error)

    async def wait_fatal(self) -> BaseException:
        """Wait until a fatal error is reported and return it"""
        return await asyncio.shield(self._fatal_future())

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal_error

    # ============================================
    # Helper Methods
    # ============================================

    def supports(self, feature: str) -> bool:
        """
        Check if this venue supports a specific feature.

        Example:
            >>> if exchange.supports("liquidations"):
            ...     exchange.subscribe_liquidations("SWAP", print)
        """
        return self.capabilities.get(feature, False)

    def __repr__(self) -> str:
        """String representation of the exchange."""
        return f"<{self.__class__.__name__}(name='{self.name}')>"

