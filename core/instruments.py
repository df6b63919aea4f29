"""
Instrument Registry

Process-wide table of instrument metadata, populated when a venue boots and
read-only afterwards (a venue may lazily add an instrument it had not seen).
Every price or size the core sends to a venue passes through the alignment
helpers here.

Alignment rules:
    - Buy prices are floored to the tick, sell prices are ceiled. Standard
      ticks (powers of ten) are applied by quantizing at the tick exponent,
      arbitrary ticks (0.025) by integer division.
    - A post-only quote that would cross the book is moved to the same side's
      best quote (buy to best bid, sell to best ask).
    - Sizes are floored to the lot size.
    - The effective minimum size at a price is max(min_size, min_value/price)
      floored to the lot size.

All arithmetic is Decimal.

Usage:
    registry = InstrumentRegistry()
    registry.register_many(instruments)
    price = registry.align_price("BTC-USDT-SWAP", Decimal("100.037"), OrderDirection.BUY)
"""

import threading
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from core.errors import UnknownInstrumentError
from core.logging import get_logger
from core.schemas import Instrument, OrderDirection, TickSizeKind


class InstrumentRegistry:
    """
    Mapping from venue instrument id to Instrument.

    Writes happen at boot or on lazy expansion and take a lock; reads go to
    the dict directly.

    Example:
        >>> registry = InstrumentRegistry()
        >>> registry.register(instrument)
        >>> registry.align_size("BTC-USDT-SWAP", Decimal("3.7"))
        Decimal('3')
    """

    def __init__(self):
        self._instruments: Dict[str, Instrument] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    # ============================================
    # Registration and Lookup
    # ============================================

    def register(self, instrument: Instrument) -> None:
        with self._lock:
            self._instruments = {**self._instruments, instrument.inst_id: instrument}
        self.logger.debug(f"Registered instrument {instrument.inst_id}")

    def register_many(self, instruments: Iterable[Instrument]) -> int:
        """Register a batch, returns how many were added or replaced"""
        batch = {inst.inst_id: inst for inst in instruments}
        with self._lock:
            self._instruments = {**self._instruments, **batch}
        self.logger.info(f"Registered {len(batch)} instruments ({len(self._instruments)} total)")
        return len(batch)

    def get(self, inst_id: str) -> Instrument:
        """
        Look up an instrument.

        Raises:
            UnknownInstrumentError: If the id was never registered
        """
        instrument = self._instruments.get(inst_id)
        if instrument is None:
            raise UnknownInstrumentError(inst_id)
        return instrument

    def find(self, inst_id: str) -> Optional[Instrument]:
        return self._instruments.get(inst_id)

    def instruments(self) -> List[Instrument]:
        return list(self._instruments.values())

    def __contains__(self, inst_id: str) -> bool:
        return inst_id in self._instruments

    def __len__(self) -> int:
        return len(self._instruments)

    # ============================================
    # Price Alignment
    # ============================================

    def align_price(
        self,
        inst_id: str,
        price: Decimal,
        direction: OrderDirection,
        post_only: bool = False,
        best_bid: Decimal = Decimal(0),
        best_ask: Decimal = Decimal(0)
    ) -> Decimal:
        """
        Align a price to the tick on the side that is safe for `direction`.

        Args:
            inst_id: Instrument id
            price: Raw price
            direction: Buy floors, sell ceils
            post_only: Move crossing quotes to the same-side touch
            best_bid: Current best bid (zero if unknown)
            best_ask: Current best ask (zero if unknown)

        Returns:
            Aligned price

        Raises:
            UnknownInstrumentError: If the id was never registered
        """
        instrument = self.get(inst_id)
        aligned = _align_to_tick(instrument, price, direction)

        if post_only:
            if direction == OrderDirection.BUY and best_ask > 0 and aligned >= best_ask and best_bid > 0:
                aligned = best_bid
            elif direction == OrderDirection.SELL and best_bid > 0 and aligned <= best_bid and best_ask > 0:
                aligned = best_ask

        return aligned

    def round_price(self, inst_id: str, price: Decimal) -> Decimal:
        """Round a price to the nearest tick (half up)"""
        tick = self.get(inst_id).tick_size
        return (price / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP) * tick

    # ============================================
    # Size Alignment
    # ============================================

    def align_size(self, inst_id: str, size: Decimal) -> Decimal:
        """floor(size / lot) * lot"""
        lot = self.get(inst_id).lot_size
        return (size / lot).to_integral_value(rounding=ROUND_FLOOR) * lot

    def min_size(self, inst_id: str, price: Decimal) -> Decimal:
        """
        Effective minimum order size at `price`.

        Returns:
            max(min_size, min_value / price) floored to the lot size
        """
        instrument = self.get(inst_id)
        minimum = instrument.min_size
        if instrument.min_value > 0 and price > 0:
            minimum = max(minimum, instrument.min_value / price)
        return self.align_size(inst_id, minimum)


def _align_to_tick(instrument: Instrument, price: Decimal, direction: OrderDirection) -> Decimal:
    rounding = ROUND_FLOOR if direction == OrderDirection.BUY else ROUND_CEILING
    tick = instrument.tick_size

    if instrument.tick_kind == TickSizeKind.STANDARD:
        exponent = Decimal(1).scaleb(tick.normalize().as_tuple().exponent)
        return price.quantize(exponent, rounding=rounding)

    return (price / tick).to_integral_value(rounding=rounding) * tick
