"""
OKX wire records.

Every REST response and WebSocket push is parsed here into the normalized
schemas of core.schemas. Numbers arrive as strings ("" when unset) and are
converted straight to Decimal.

REST envelope:
    {"code": "0", "msg": "", "data": [...]}

Per-order results inside "data":
    {"ordId": "...", "clOrdId": "...", "sCode": "0", "sMsg": ""}

WebSocket push:
    {"arg": {"channel": "...", "instId": "..."}, "action": "snapshot", "data": [...]}
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from core.logging import get_logger
from core.schemas import (
    BalanceSnapshot,
    ContractType,
    FundingRate,
    Instrument,
    Liquidation,
    MarkPrice,
    OrderDirection,
    OrderSnapshot,
    OrderStatus,
    PositionSide,
    PositionSnapshot,
    PriceLimit,
    Ticker,
)
from core.utils.time import current_utc_datetime, parse_ms
from .helpers import (
    EXCHANGE_NAME,
    STATUS_CANCELED,
    STATUS_FILLED,
    STATUS_LIVE,
    STATUS_MMP_CANCELED,
    STATUS_PARTIALLY_FILLED,
)

logger = get_logger(__name__)

Level = Tuple[Decimal, Decimal]


def to_decimal(value: Any) -> Decimal:
    """Venue number string to Decimal, "" and None map to zero"""
    if value is None or value == "":
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")


# ============================================
# REST Envelope
# ============================================

class RestResponse(BaseModel):
    code: str = "0"
    msg: str = ""
    data: List[Any] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.code == "0"


class OrderResult(BaseModel):
    """Outcome of one order in a place/cancel/amend response"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_id: str = Field(default="", alias="ordId")
    client_id: str = Field(default="", alias="clOrdId")
    code: str = Field(default="0", alias="sCode")
    message: str = Field(default="", alias="sMsg")
    request_id: str = Field(default="", alias="reqId")

    @property
    def ok(self) -> bool:
        return self.code == "0"


def first_order_result(resp: RestResponse) -> Optional[OrderResult]:
    if not resp.data:
        return None
    return OrderResult.model_validate(resp.data[0])


# ============================================
# Instruments
# ============================================

def parse_instrument(row: Dict[str, Any]) -> Optional[Instrument]:
    """
    Build an Instrument from one row of /api/v5/public/instruments.

    Returns:
        None for products outside the supported categories (USDC swaps,
        dated futures, options)
    """
    inst_type = row.get("instType", "")
    inst_id = row["instId"]

    if inst_type == "SPOT":
        base, quote = row.get("baseCcy", ""), row.get("quoteCcy", "")
        contract_type = ContractType.SPOT
        settle = quote
        ct_val = Decimal(0)
        ct_val_ccy = ""
    elif inst_type == "SWAP":
        base, _, quote = (row.get("uly") or row.get("instFamily") or "").partition("-")
        settle = row.get("settleCcy", "")
        if settle.upper() == "USDT":
            contract_type = ContractType.USDT_SWAP
        elif settle.upper() == base.upper():
            contract_type = ContractType.USD_SWAP
        else:
            return None
        ct_val = to_decimal(row.get("ctVal"))
        ct_val_ccy = row.get("ctValCcy", "")
    else:
        return None

    lever = row.get("lever") or "0"
    return Instrument(
        inst_id=inst_id,
        inst_type=inst_type,
        base_ccy=base,
        quote_ccy=quote,
        contract_type=contract_type,
        ct_val=ct_val,
        ct_val_ccy=ct_val_ccy,
        settle_ccy=settle,
        max_leverage=int(Decimal(lever)),
        tick_size=to_decimal(row.get("tickSz")),
        lot_size=to_decimal(row.get("lotSz")),
        min_size=to_decimal(row.get("minSz")),
        expiry=parse_ms(row.get("expTime")),
    )


# ============================================
# Orders
# ============================================

_STATUS_MAP = {
    STATUS_LIVE: OrderStatus.ALIVE,
    STATUS_PARTIALLY_FILLED: OrderStatus.PARTIALLY_FILLED,
    STATUS_FILLED: OrderStatus.FILLED,
    STATUS_CANCELED: OrderStatus.CANCELLED,
    STATUS_MMP_CANCELED: OrderStatus.CANCELLED,
}


def parse_order(
    row: Dict[str, Any],
    source: Literal["ws", "rest"],
    local_time: Optional[datetime] = None
) -> OrderSnapshot:
    venue_status = row.get("state", "")
    status = _STATUS_MAP.get(venue_status)
    if status is None:
        logger.warning(f"Unknown order state '{venue_status}' for {row.get('clOrdId')}, treating as alive")
        status = OrderStatus.ALIVE

    return OrderSnapshot(
        inst_id=row.get("instId", ""),
        order_id=row.get("ordId", ""),
        client_id=row.get("clOrdId", ""),
        tag=row.get("tag", ""),
        price=to_decimal(row.get("px")),
        size=to_decimal(row.get("sz")),
        filled=to_decimal(row.get("accFillSz")),
        avg_price=to_decimal(row.get("avgPx")),
        status=status,
        venue_status=venue_status,
        update_time=parse_ms(row.get("uTime")),
        source=source,
        local_time=local_time or current_utc_datetime(),
    )


# ============================================
# Account
# ============================================

def parse_balances(row: Dict[str, Any]) -> List[BalanceSnapshot]:
    """One account push row carries a "details" entry per currency"""
    default_time = row.get("uTime")
    snapshots = []
    for detail in row.get("details", []):
        snapshots.append(BalanceSnapshot(
            ccy=detail["ccy"],
            equity=to_decimal(detail["eq"]) if detail.get("eq", "") != "" else None,
            frozen=to_decimal(detail["frozenBal"]) if detail.get("frozenBal", "") != "" else None,
            update_time=parse_ms(detail.get("uTime") or default_time),
        ))
    return snapshots


def parse_position(row: Dict[str, Any]) -> Optional[PositionSnapshot]:
    """
    Returns:
        None for rows outside long/short dual-side positions on swaps
    """
    if row.get("instType") not in ("SWAP", "FUTURES"):
        return None
    pos_side = row.get("posSide")
    if pos_side not in (PositionSide.LONG.value, PositionSide.SHORT.value):
        return None
    return PositionSnapshot(
        inst_id=row["instId"],
        pos_side=PositionSide(pos_side),
        amount=abs(to_decimal(row.get("pos"))),
        avg_price=to_decimal(row.get("avgPx")),
        margin_mode=row.get("mgnMode", ""),
        update_time=parse_ms(row.get("uTime")),
    )


# ============================================
# Public Market Data
# ============================================

@dataclass
class DepthUpdate:
    """One entry of a books/books5/books50-l2-tbt push"""

    action: str
    asks: List[Level]
    bids: List[Level]
    checksum: Optional[int]
    timestamp: datetime

    @property
    def is_snapshot(self) -> bool:
        return self.action != "update"


def parse_depth(frame: Dict[str, Any]) -> List[DepthUpdate]:
    action = frame.get("action", "snapshot")
    updates = []
    for row in frame.get("data", []):
        checksum = row.get("checksum")
        updates.append(DepthUpdate(
            action=action,
            asks=[(Decimal(level[0]), Decimal(level[1])) for level in row.get("asks", [])],
            bids=[(Decimal(level[0]), Decimal(level[1])) for level in row.get("bids", [])],
            checksum=int(checksum) if checksum is not None else None,
            timestamp=parse_ms(row.get("ts")),
        ))
    return updates


def parse_ticker(row: Dict[str, Any]) -> Ticker:
    return Ticker(
        exchange=EXCHANGE_NAME,
        inst_id=row["instId"],
        timestamp=parse_ms(row.get("ts")),
        last=to_decimal(row.get("last")),
        bid=to_decimal(row.get("bidPx")),
        ask=to_decimal(row.get("askPx")),
    )


def parse_mark_price(row: Dict[str, Any]) -> MarkPrice:
    return MarkPrice(
        exchange=EXCHANGE_NAME,
        inst_id=row["instId"],
        timestamp=parse_ms(row.get("ts")),
        mark_price=to_decimal(row.get("markPx")),
    )


def parse_price_limit(row: Dict[str, Any]) -> PriceLimit:
    return PriceLimit(
        exchange=EXCHANGE_NAME,
        inst_id=row["instId"],
        timestamp=parse_ms(row.get("ts")),
        buy_limit=to_decimal(row.get("buyLmt")),
        sell_limit=to_decimal(row.get("sellLmt")),
    )


def parse_funding_rate(row: Dict[str, Any]) -> FundingRate:
    next_rate = row.get("nextFundingRate", "")
    next_time = row.get("nextFundingTime", "")
    return FundingRate(
        exchange=EXCHANGE_NAME,
        inst_id=row["instId"],
        timestamp=parse_ms(row.get("ts") or row.get("fundingTime")),
        funding_rate=to_decimal(row.get("fundingRate")),
        next_funding_rate=to_decimal(next_rate) if next_rate != "" else None,
        funding_time=parse_ms(row.get("fundingTime")),
        next_funding_time=parse_ms(next_time) if next_time != "" else None,
    )


def parse_liquidations(row: Dict[str, Any]) -> List[Liquidation]:
    inst_type = row.get("instType", "")
    events = []
    for detail in row.get("details", []):
        events.append(Liquidation(
            exchange=EXCHANGE_NAME,
            inst_id=row["instId"],
            timestamp=parse_ms(detail.get("ts")),
            inst_type=inst_type,
            side=OrderDirection(detail["side"]),
            size=to_decimal(detail.get("sz")),
            bankruptcy_price=to_decimal(detail.get("bkPx")),
            bankruptcy_loss=to_decimal(detail.get("bkLoss")),
        ))
    return events
