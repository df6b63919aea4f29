"""
Shared fixtures for the unit tests: instruments, a registry and a manual clock.
"""

from decimal import Decimal

import pytest

from core.instruments import InstrumentRegistry
from core.schemas import ContractType, Instrument


class ManualClock:
    """Monotonic clock the test moves by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def usdt_swap():
    """BTC-USDT-SWAP: 0.1 tick, 1 contract lot, 0.01 BTC per contract"""
    return Instrument(
        inst_id="BTC-USDT-SWAP",
        inst_type="SWAP",
        base_ccy="BTC",
        quote_ccy="USDT",
        contract_type=ContractType.USDT_SWAP,
        ct_val=Decimal("0.01"),
        ct_val_ccy="BTC",
        settle_ccy="USDT",
        max_leverage=100,
        tick_size=Decimal("0.1"),
        lot_size=Decimal("1"),
        min_size=Decimal("1"),
    )


@pytest.fixture
def usd_swap():
    """BTC-USD-SWAP: coin-margined, 100 USD per contract"""
    return Instrument(
        inst_id="BTC-USD-SWAP",
        inst_type="SWAP",
        base_ccy="BTC",
        quote_ccy="USD",
        contract_type=ContractType.USD_SWAP,
        ct_val=Decimal("100"),
        ct_val_ccy="USD",
        settle_ccy="BTC",
        max_leverage=100,
        tick_size=Decimal("0.1"),
        lot_size=Decimal("1"),
        min_size=Decimal("1"),
    )


@pytest.fixture
def spot_pair():
    """ETH-USDT spot with a 10 USDT minimum notional"""
    return Instrument(
        inst_id="ETH-USDT",
        inst_type="SPOT",
        base_ccy="ETH",
        quote_ccy="USDT",
        contract_type=ContractType.SPOT,
        settle_ccy="USDT",
        tick_size=Decimal("0.01"),
        lot_size=Decimal("0.0001"),
        min_size=Decimal("0.001"),
        min_value=Decimal("10"),
    )


@pytest.fixture
def odd_tick():
    """Instrument with an arbitrary (non power of ten) tick"""
    return Instrument(
        inst_id="ODD-USDT",
        inst_type="SPOT",
        base_ccy="ODD",
        quote_ccy="USDT",
        contract_type=ContractType.SPOT,
        tick_size=Decimal("0.025"),
        lot_size=Decimal("0.5"),
        min_size=Decimal("1"),
    )


@pytest.fixture
def registry(usdt_swap, usd_swap, spot_pair, odd_tick):
    registry = InstrumentRegistry()
    registry.register_many([usdt_swap, usd_swap, spot_pair, odd_tick])
    return registry
