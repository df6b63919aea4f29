"""
Exchange Manager - Central Registry for Venue Sessions

This module provides a centralized manager for the venue sessions of a
process. The ExchangeManager acts as a registry and lifecycle coordinator.

Design Benefits:
    - Single source of truth for available venues
    - Centralized lifecycle management (initialize/shutdown)
    - One place to wait for the first fatal error of any venue

Example Usage:
    manager = ExchangeManager()
    await manager.initialize_all()

    okx = manager.get_exchange("okx")
    trader = await okx.use_trader("BTC-USDT-SWAP", leverage=5)

    name, error = await manager.wait_fatal_any()
    await manager.shutdown_all()
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from core.errors import SessionError, SessionFatalError
from core.exchange_interface import ExchangeInterface
from core.logging import logger


class ExchangeManager:
    """
    Central Manager for Venue Sessions

    Attributes:
        exchanges: Dictionary mapping venue names to session instances
                  Example: {"okx": OkxExchange()}

    Example:
        >>> manager = ExchangeManager()
        >>> await manager.initialize_all()
        >>> print(manager.list_exchanges())
        ['okx']
        >>> await manager.shutdown_all()
    """

    def __init__(self, exchanges: Optional[Dict[str, ExchangeInterface]] = None):
        """
        Initialize the Exchange Manager and register all venues.

        Args:
            exchanges: Sessions to manage (default: one OkxExchange built
                from the global settings)

        Note:
            Sessions are created but not initialized here.
            Call initialize_all() or initialize_exchange() to boot them.
        """
        if exchanges is None:
            # Each exchange module imports from core, so we can't import at module level
            from exchanges.okx import OkxExchange

            exchanges = {"okx": OkxExchange()}

        self.exchanges: Dict[str, ExchangeInterface] = dict(exchanges)

        logger.info(f"ExchangeManager initialized with {len(self.exchanges)} exchange(s): {', '.join(self.exchanges.keys())}")

    # ============================================
    # Exchange Retrieval Methods
    # ============================================

    def get_exchange(self, name: str) -> ExchangeInterface:
        """
        Get a venue session by name.

        Raises:
            ValueError: If the venue is not registered
        """
        name = name.lower()

        if name not in self.exchanges:
            available = ", ".join(self.exchanges.keys())
            logger.error(f"Exchange '{name}' not found. Available: {available}")
            raise ValueError(
                f"Exchange '{name}' is not supported. "
                f"Available exchanges: {available}"
            )

        return self.exchanges[name]

    def has_exchange(self, name: str) -> bool:
        return name.lower() in self.exchanges

    def list_exchanges(self) -> List[str]:
        return list(self.exchanges.keys())

    # ============================================
    # Lifecycle Management
    # ============================================

    async def initialize_all(self) -> None:
        """
        Initialize all registered venues.

        Raises:
            SessionFatalError: If any venue cannot be booted; the process
                must not trade on a partially booted set of venues
        """
        logger.info("Initializing all exchanges...")

        for name, exchange in self.exchanges.items():
            try:
                await exchange.initialize()
                logger.info(f"✓ {name.capitalize()} initialized successfully")
            except SessionFatalError as e:
                logger.error(f"✗ Failed to initialize {name}: {e}")
                raise

        logger.info("All exchanges initialized")

    async def initialize_exchange(self, name: str) -> None:
        exchange = self.get_exchange(name)
        logger.info(f"Initializing {name}...")
        await exchange.initialize()
        logger.info(f"{name.capitalize()} initialized successfully")

    async def shutdown_all(self) -> None:
        """
        Shutdown all venues gracefully.

        Errors of one venue are logged and do not stop the others.
        """
        logger.info("Shutting down all exchanges...")

        for name, exchange in self.exchanges.items():
            try:
                await exchange.shutdown()
                logger.info(f"✓ {name.capitalize()} shut down successfully")
            except (SessionError, OSError) as e:
                logger.error(f"✗ Error shutting down {name}: {e}")

        logger.info("All exchanges shut down")

    # ============================================
    # Health and Fatal Errors
    # ============================================

    async def health_check_all(self) -> Dict[str, bool]:
        """
        Check health status of all venues.

        Example:
            >>> health = await manager.health_check_all()
            >>> for exchange, is_healthy in health.items():
            ...     status = "✓ OK" if is_healthy else "✗ Down"
            ...     print(f"{exchange}: {status}")
            okx: ✓ OK
        """
        health_status = {}
        for name, exchange in self.exchanges.items():
            is_healthy = await exchange.health_check()
            health_status[name] = is_healthy
            logger.debug(f"{name}: {'healthy' if is_healthy else 'unhealthy'}")
        return health_status

    async def wait_fatal_any(self) -> Tuple[str, BaseException]:
        """
        Wait for the first fatal error reported by any venue.

        Returns:
            (venue name, error)
        """
        waiters = {
            asyncio.ensure_future(exchange.wait_fatal()): name
            for name, exchange in self.exchanges.items()
        }
        try:
            done, _ = await asyncio.wait(waiters.keys(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        first = next(iter(done))
        return waiters[first], first.result()

    # ============================================
    # Capability Queries
    # ============================================

    def get_exchanges_with_feature(self, feature: str) -> List[str]:
        return [name for name, exchange in self.exchanges.items() if exchange.supports(feature)]

    def __repr__(self) -> str:
        """String representation of the manager."""
        return f"<ExchangeManager(exchanges={list(self.exchanges.keys())})>"

    def __len__(self) -> int:
        """Number of registered exchanges."""
        return len(self.exchanges)
