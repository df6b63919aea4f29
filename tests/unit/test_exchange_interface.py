"""
Unit Tests for Exchange Interface and Manager

These tests verify that:
- ExchangeInterface is properly defined as an abstract class
- Dummy implementations can inherit and implement the interface
- The fatal channel latches the first error and wakes every waiter
- ExchangeManager correctly manages venue sessions
- Lifecycle methods work as expected

Run with:
    pytest tests/unit/test_exchange_interface.py -v
"""

import asyncio

import pytest

from core.errors import ConfigurationError, InvariantViolation
from core.exchange_interface import ExchangeInterface
from core.exchange_manager import ExchangeManager
from exchanges.okx import OkxExchange


# ============================================
# Dummy Exchange for Testing
# ============================================

class DummyExchange(ExchangeInterface):
    """
    Minimal implementation of ExchangeInterface for testing purposes.

    Records lifecycle calls instead of talking to a venue.
    """

    name = "dummy"
    capabilities = {
        "spot": True,
        "swap": False,  # Intentionally not supported
        "liquidations": False,
        "rest_ticker_poll": True
    }

    def __init__(self, boot_error=None):
        super().__init__()
        self.boot_error = boot_error
        self.initialized = False
        self.shut_down = False

    async def initialize(self) -> None:
        if self.boot_error is not None:
            raise self.boot_error
        self.initialized = True

    async def shutdown(self) -> None:
        self.shut_down = True

    def ready(self) -> bool:
        return self.initialized and self.fatal_error is None

    async def use_market(self, inst_id: str, with_full_depth: bool = True):
        return inst_id

    async def use_trader(self, inst_id: str, leverage: int = 1):
        return inst_id


# ============================================
# Tests for ExchangeInterface
# ============================================

class TestExchangeInterface:
    """Test the ExchangeInterface abstract class"""

    def test_cannot_instantiate_abstract_interface(self):
        """Verify that ExchangeInterface cannot be instantiated directly"""
        with pytest.raises(TypeError):
            ExchangeInterface()

    def test_supports_method_returns_correct_values(self):
        """Verify that supports() method checks capabilities correctly"""
        exchange = DummyExchange()
        assert exchange.supports("spot") is True
        assert exchange.supports("swap") is False
        assert exchange.supports("nonexistent_feature") is False

    @pytest.mark.asyncio
    async def test_health_check_default_is_ready(self):
        """Verify that default health_check reports readiness"""
        exchange = DummyExchange()
        assert await exchange.health_check() is False
        await exchange.initialize()
        assert await exchange.health_check() is True

    def test_repr(self):
        assert repr(DummyExchange()) == "<DummyExchange(name='dummy')>"


class TestFatalChannel:
    """Test report_fatal / wait_fatal"""

    @pytest.mark.asyncio
    async def test_wait_returns_reported_error(self):
        exchange = DummyExchange()
        waiter = asyncio.create_task(exchange.wait_fatal())
        await asyncio.sleep(0)

        error = InvariantViolation("order id changed")
        exchange.report_fatal(error)
        assert await asyncio.wait_for(waiter, timeout=1) is error
        assert exchange.fatal_error is error

    @pytest.mark.asyncio
    async def test_first_report_wins(self):
        exchange = DummyExchange()
        first = ConfigurationError("login refused")
        exchange.report_fatal(first)
        exchange.report_fatal(InvariantViolation("later"))
        assert await exchange.wait_fatal() is first

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_others(self):
        """Verify one waiter giving up leaves the channel usable"""
        exchange = DummyExchange()
        impatient = asyncio.create_task(exchange.wait_fatal())
        patient = asyncio.create_task(exchange.wait_fatal())
        await asyncio.sleep(0)
        impatient.cancel()
        await asyncio.gather(impatient, return_exceptions=True)

        error = InvariantViolation("boom")
        exchange.report_fatal(error)
        assert await asyncio.wait_for(patient, timeout=1) is error

    @pytest.mark.asyncio
    async def test_fatal_makes_not_ready(self):
        exchange = DummyExchange()
        await exchange.initialize()
        exchange.report_fatal(InvariantViolation("boom"))
        assert exchange.ready() is False


# ============================================
# Tests for OkxExchange
# ============================================

class TestOkxExchange:
    """Test the OkxExchange declaration"""

    def test_okx_exchange_has_correct_name(self):
        exchange = OkxExchange()
        assert exchange.name == "okx"
        assert isinstance(exchange, ExchangeInterface)

    def test_okx_capabilities(self):
        exchange = OkxExchange()
        assert exchange.supports("spot")
        assert exchange.supports("swap")
        assert exchange.supports("rest_ticker_poll")

    def test_not_ready_before_boot(self):
        assert OkxExchange().ready() is False

    @pytest.mark.asyncio
    async def test_health_check_before_boot(self):
        assert await OkxExchange().health_check() is False


# ============================================
# Tests for ExchangeManager
# ============================================

class TestExchangeManager:
    """Test the ExchangeManager registry"""

    def test_manager_defaults_to_okx(self):
        """Verify the default manager holds one OKX session"""
        manager = ExchangeManager()
        assert manager.list_exchanges() == ["okx"]
        assert isinstance(manager.get_exchange("okx"), OkxExchange)

    def test_manager_get_exchange_case_insensitive(self):
        """Verify exchange name lookup is case-insensitive"""
        manager = ExchangeManager({"dummy": DummyExchange()})
        assert manager.get_exchange("DUMMY") is manager.get_exchange("dummy")

    def test_manager_get_exchange_raises_for_unknown(self):
        """Verify ValueError is raised for unsupported exchanges"""
        manager = ExchangeManager({"dummy": DummyExchange()})
        with pytest.raises(ValueError, match="not supported"):
            manager.get_exchange("unknown_exchange")

    def test_manager_has_exchange(self):
        manager = ExchangeManager({"dummy": DummyExchange()})
        assert manager.has_exchange("Dummy") is True
        assert manager.has_exchange("unknown") is False

    def test_manager_length_and_repr(self):
        manager = ExchangeManager({"dummy": DummyExchange()})
        assert len(manager) == 1
        assert "dummy" in repr(manager)

    def test_manager_get_exchanges_with_feature(self):
        manager = ExchangeManager({"dummy": DummyExchange()})
        assert manager.get_exchanges_with_feature("spot") == ["dummy"]
        assert manager.get_exchanges_with_feature("swap") == []

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown_all(self):
        a, b = DummyExchange(), DummyExchange()
        manager = ExchangeManager({"a": a, "b": b})
        await manager.initialize_all()
        assert a.initialized and b.initialized
        assert await manager.health_check_all() == {"a": True, "b": True}
        await manager.shutdown_all()
        assert a.shut_down and b.shut_down

    @pytest.mark.asyncio
    async def test_initialize_all_propagates_boot_failure(self):
        manager = ExchangeManager({"bad": DummyExchange(boot_error=ConfigurationError("wrong mode"))})
        with pytest.raises(ConfigurationError):
            await manager.initialize_all()

    @pytest.mark.asyncio
    async def test_wait_fatal_any(self):
        """Verify the first venue to report is returned with its error"""
        a, b = DummyExchange(), DummyExchange()
        manager = ExchangeManager({"a": a, "b": b})
        waiter = asyncio.create_task(manager.wait_fatal_any())
        await asyncio.sleep(0)

        error = InvariantViolation("foreign tag")
        b.report_fatal(error)
        assert await asyncio.wait_for(waiter, timeout=1) == ("b", error)
