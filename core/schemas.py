"""
Normalized Data Schemas

Pydantic models for every record that crosses a component boundary of the
session core. Venue adapters parse their wire payloads into these models;
the registry, book, ledger and order manager only ever see these types.

Models:
    - Instrument: immutable trading-pair metadata (tick, lot, contract value)
    - OrderSnapshot: one observed state of an order (WS push or REST poll)
    - Deal: one monotonic fill delta derived from two snapshots
    - BalanceSnapshot / PositionSnapshot: authoritative account pushes
    - Ticker, MarkPrice, PriceLimit, FundingRate, Liquidation: public data

All monetary values are Decimal; all times are timezone-aware UTC datetimes.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.utils.time import EPOCH


# ============================================
# Enumerations
# ============================================

class ContractType(str, Enum):
    """Instrument category"""

    SPOT = "spot"
    USD_SWAP = "usd_swap"
    USDT_SWAP = "usdt_swap"


class TickSizeKind(str, Enum):
    """Standard ticks are powers of ten (0.01); arbitrary ticks are not (0.025)"""

    STANDARD = "standard"
    ARBITRARY = "arbitrary"


class OrderDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class OrderStatus(str, Enum):
    """Order states normalized across venues"""

    BORN = "born"
    ALIVE = "alive"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FATAL_ERROR = "fatal_error"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.FATAL_ERROR)


# ============================================
# Instrument
# ============================================

class Instrument(BaseModel):
    """
    Immutable metadata of one tradable product.

    Attributes:
        inst_id: Venue-native identifier (e.g. "BTC-USDT-SWAP")
        inst_type: Venue category string ("SPOT", "SWAP")
        base_ccy: Base currency (lowercase)
        quote_ccy: Quote currency (lowercase)
        contract_type: spot, usd_swap or usdt_swap
        ct_val: Contract face value (zero for spot)
        ct_val_ccy: Currency the face value is denominated in
        settle_ccy: Settlement and margin currency (lowercase)
        max_leverage: Maximum leverage (zero for spot)
        tick_size: Smallest price increment
        lot_size: Smallest size increment
        min_size: Minimum order size
        min_value: Minimum order notional (zero when the venue has none)
        expiry: Expiry instant, EPOCH for perpetuals and spot
    """

    model_config = ConfigDict(frozen=True)

    inst_id: str
    inst_type: str
    base_ccy: str
    quote_ccy: str
    contract_type: ContractType
    ct_val: Decimal = Decimal(0)
    ct_val_ccy: str = ""
    settle_ccy: str = ""
    max_leverage: int = 0
    tick_size: Decimal
    lot_size: Decimal
    min_size: Decimal
    min_value: Decimal = Decimal(0)
    expiry: datetime = EPOCH

    @field_validator("tick_size", "lot_size")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        """Ticks and lots must be strictly positive"""
        if v <= 0:
            raise ValueError(f"tick/lot size must be positive, got {v}")
        return v

    @field_validator("base_ccy", "quote_ccy", "settle_ccy", "ct_val_ccy")
    @classmethod
    def validate_ccy(cls, v: str) -> str:
        """Currencies are kept lowercase"""
        return v.lower()

    @property
    def tick_kind(self) -> TickSizeKind:
        digits = self.tick_size.normalize().as_tuple().digits
        return TickSizeKind.STANDARD if digits == (1,) else TickSizeKind.ARBITRARY

    @property
    def is_contract(self) -> bool:
        return self.contract_type != ContractType.SPOT

    @property
    def is_usdt_contract(self) -> bool:
        return self.contract_type == ContractType.USDT_SWAP


# ============================================
# Orders
# ============================================

class OrderSnapshot(BaseModel):
    """
    One observed state of an order.

    `source` is kept for diagnostics only; WS and REST snapshots are merged
    with the same (update_time, filled) ordering rule.
    """

    inst_id: str
    order_id: str = ""
    client_id: str = ""
    tag: str = ""
    price: Decimal = Decimal(0)
    size: Decimal = Decimal(0)
    filled: Decimal = Decimal(0)
    avg_price: Decimal = Decimal(0)
    status: OrderStatus
    venue_status: str = ""
    update_time: datetime
    source: Literal["ws", "rest"] = "ws"
    local_time: datetime


class Deal(BaseModel):
    """A fill delta: `amount` newly filled at average `price`"""

    inst_id: str
    client_id: str
    direction: OrderDirection
    price: Decimal
    amount: Decimal
    update_time: datetime
    local_time: datetime


# ============================================
# Account
# ============================================

class BalanceSnapshot(BaseModel):
    """Authoritative balance of one currency; None means "not in this push" """

    ccy: str
    equity: Optional[Decimal] = None
    frozen: Optional[Decimal] = None
    update_time: datetime

    @field_validator("ccy")
    @classmethod
    def validate_ccy(cls, v: str) -> str:
        return v.lower()


class PositionSnapshot(BaseModel):
    """Authoritative position of one side of one instrument"""

    inst_id: str
    pos_side: PositionSide
    amount: Decimal
    avg_price: Decimal = Decimal(0)
    margin_mode: str = "cross"
    update_time: datetime


# ============================================
# Public Market Data
# ============================================

class BaseMarketModel(BaseModel):
    """Common fields of every public-data record"""

    exchange: str = Field(..., description="Source exchange identifier (lowercase)", examples=["okx"])
    inst_id: str = Field(..., description="Venue instrument id", examples=["BTC-USDT-SWAP"])
    timestamp: datetime = Field(..., description="Event timestamp in UTC")

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, v: str) -> str:
        return v.lower()


class Ticker(BaseMarketModel):
    last: Decimal = Decimal(0)
    bid: Decimal = Decimal(0)
    ask: Decimal = Decimal(0)


class MarkPrice(BaseMarketModel):
    mark_price: Decimal


class PriceLimit(BaseMarketModel):
    """Highest allowed buy price and lowest allowed sell price"""

    buy_limit: Decimal
    sell_limit: Decimal


class FundingRate(BaseMarketModel):
    """
    Perpetual funding rate.

    Attributes:
        funding_rate: Rate applied at funding_time
        next_funding_rate: Forecast for the following period, if published
        funding_time: Settlement time of the current rate
        next_funding_time: Settlement time of the following period
    """

    funding_rate: Decimal
    next_funding_rate: Optional[Decimal] = None
    funding_time: datetime
    next_funding_time: Optional[datetime] = None


class Liquidation(BaseMarketModel):
    """One market-wide liquidation event"""

    inst_type: str
    side: OrderDirection
    size: Decimal
    bankruptcy_price: Decimal
    bankruptcy_loss: Decimal = Decimal(0)
