"""
Unit tests for the OKX order lifecycle.

This test suite verifies:
- Create: acknowledgement, refusal with a per-order code, network errors
- Snapshot ingestion: monotonic deals with exact Decimal prices, the
  internal listener before observers, out-of-order snapshots dropped
- Invariant violations: id changes and fill notional going backwards
- Polling: idle orders are queried, "not found" and repeated failures
- Cancel and modify: terminal codes, no-ops, size below the minimum

The REST client is an AsyncMock; no request leaves the process.

Run with:
    pytest tests/unit/test_okx_order.py -v
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

import exchanges.okx.order as order_module
from core.config import ExchangeConfig
from core.errors import InvariantViolation, TransientNetworkError
from core.schemas import OrderDirection, OrderSnapshot, OrderStatus
from core.utils.time import EPOCH, current_utc_datetime
from exchanges.okx.market import OkxMarket
from exchanges.okx.models import RestResponse
from exchanges.okx.order import OkxOrder, OrderObserver

CLIENT_ID = "grid0100001"
T0 = EPOCH + timedelta(days=19723)


def at(seconds: float):
    return T0 + timedelta(seconds=seconds)


def snap(filled, avg, status, seconds, order_id="42", client_id=CLIENT_ID, source="ws") -> OrderSnapshot:
    return OrderSnapshot(
        inst_id="BTC-USDT-SWAP",
        order_id=order_id,
        client_id=client_id,
        tag="grid01",
        price=Decimal("100.1"),
        size=Decimal("5"),
        filled=Decimal(filled),
        avg_price=Decimal(avg),
        status=status,
        update_time=at(seconds),
        source=source,
        local_time=current_utc_datetime(),
    )


def order_row(state: str, filled: str = "0", avg: str = "") -> dict:
    return {
        "instId": "BTC-USDT-SWAP", "ordId": "42", "clOrdId": CLIENT_ID, "tag": "grid01",
        "px": "100.1", "sz": "5", "accFillSz": filled, "avgPx": avg, "state": state,
        "uTime": "1704110400000",
    }


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


ACCEPTED = RestResponse(data=[{"ordId": "42", "clOrdId": CLIENT_ID, "sCode": "0", "sMsg": ""}])


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def api():
    api = MagicMock()
    api.place_order = AsyncMock(return_value=ACCEPTED)
    api.get_order = AsyncMock(return_value=RestResponse(code="50001", msg="busy"))
    api.cancel_order = AsyncMock(return_value=RestResponse(data=[{"clOrdId": CLIENT_ID, "sCode": "0"}]))
    api.amend_order = AsyncMock(return_value=RestResponse(data=[{"clOrdId": CLIENT_ID, "sCode": "0"}]))
    return api


@pytest.fixture
def market(registry, usdt_swap, clock):
    return OkxMarket(usdt_swap, registry, MagicMock(), MagicMock(), ExchangeConfig(), clock=clock)


@pytest.fixture
def calls():
    """Shared record of listener and observer calls, in order"""
    return []


@pytest.fixture
def on_fatal():
    return MagicMock()


@pytest_asyncio.fixture
async def order(market, api, clock, calls, on_fatal):
    order = OkxOrder(
        market=market,
        api=api,
        client_id=CLIENT_ID,
        tag="grid01",
        direction=OrderDirection.BUY,
        price=Decimal("100.1"),
        size=Decimal("5"),
        trade_mode="cross",
        pos_side="long",
        on_deal=lambda o, deal: calls.append(("listener", deal)),
        on_fatal=on_fatal,
        clock=clock
    )
    yield order
    await order.stop()


class RecordingObserver(OrderObserver):
    def __init__(self, calls):
        self.calls = calls

    def on_deal(self, order, deal):
        self.calls.append(("observer", deal))

    def on_finished(self, order):
        self.calls.append(("finished", order.status))


# ============================================
# Create
# ============================================

class TestCreate:
    """Test the create request"""

    @pytest.mark.asyncio
    async def test_create_acknowledged(self, order, api):
        order.start()
        await settle()

        assert order.status == OrderStatus.ALIVE
        assert order.order_id == "42"
        kwargs = api.place_order.call_args.kwargs
        assert kwargs["order_type"] == "post_only"
        assert kwargs["pos_side"] == "long"
        assert kwargs["price"] == Decimal("100.1")

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, order):
        order.start()
        with pytest.raises(RuntimeError):
            order.start()

    @pytest.mark.asyncio
    async def test_create_refused(self, order, api, on_fatal):
        """A per-order error code ends the order; the session carries on"""
        api.place_order.return_value = RestResponse(
            code="1", msg="", data=[{"clOrdId": CLIENT_ID, "sCode": "51008", "sMsg": "Insufficient balance"}]
        )
        order.start()
        await settle()

        assert order.status == OrderStatus.FATAL_ERROR
        assert order.is_finished
        assert "51008" in order.error_message
        on_fatal.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_network_error_then_poll(self, order, api):
        """A lost create response leaves the order born; the poll finds it"""
        api.place_order.side_effect = TransientNetworkError("timeout")
        order.start()
        await settle()
        assert order.status == OrderStatus.BORN
        assert not order.is_finished

        api.get_order.return_value = RestResponse(data=[order_row("live")])
        await order.poll()
        assert order.status == OrderStatus.ALIVE
        assert order.order_id == "42"

    @pytest.mark.asyncio
    async def test_idle_order_is_polled(self, order, api, clock, monkeypatch):
        monkeypatch.setattr(order_module, "UPDATE_TICK", 0)
        api.get_order.return_value = RestResponse(data=[order_row("canceled")])
        order.start()
        await settle()
        api.get_order.assert_not_awaited()

        clock.advance(11)
        assert await order.wait_finished(timeout=1)
        assert order.status == OrderStatus.CANCELLED


# ============================================
# Snapshots and Deals
# ============================================

class TestSnapshots:
    """Test snapshot ingestion"""

    @pytest.mark.asyncio
    async def test_partial_then_full_fill(self, order, calls):
        order.add_observer(RecordingObserver(calls))
        order.start()
        await settle()

        order.on_snapshot(snap("2", "100.1", OrderStatus.PARTIALLY_FILLED, 1))
        order.on_snapshot(snap("5", "100.12", OrderStatus.FILLED, 2))

        first, second = order.deals
        assert (first.amount, first.price) == (Decimal("2"), Decimal("100.1"))
        assert second.amount == Decimal("3")
        assert second.price == (Decimal("5") * Decimal("100.12") - Decimal("2") * Decimal("100.1")) / Decimal("3")
        assert sum(d.amount for d in order.deals) == order.filled == Decimal("5")

        assert [c[0] for c in calls] == ["listener", "observer", "listener", "observer", "finished"]
        assert order.is_finished
        assert order.unfilled == 0

    @pytest.mark.asyncio
    async def test_older_snapshot_dropped(self, order):
        order.on_snapshot(snap("3", "100", OrderStatus.PARTIALLY_FILLED, 5))
        order.on_snapshot(snap("2", "100", OrderStatus.PARTIALLY_FILLED, 4, source="rest"))
        assert order.filled == Decimal("3")
        assert len(order.deals) == 1

    @pytest.mark.asyncio
    async def test_smaller_fill_dropped(self, order):
        order.on_snapshot(snap("3", "100", OrderStatus.PARTIALLY_FILLED, 5))
        order.on_snapshot(snap("2", "100", OrderStatus.PARTIALLY_FILLED, 6))
        assert order.filled == Decimal("3")

    @pytest.mark.asyncio
    async def test_same_fill_updates_status_without_deal(self, order):
        order.on_snapshot(snap("2", "100", OrderStatus.PARTIALLY_FILLED, 1))
        order.on_snapshot(snap("2", "100", OrderStatus.CANCELLED, 2))
        assert len(order.deals) == 1
        assert order.status == OrderStatus.CANCELLED
        assert order.is_finished

    @pytest.mark.asyncio
    async def test_fill_notional_regression_is_fatal(self, order, on_fatal):
        order.on_snapshot(snap("2", "100", OrderStatus.PARTIALLY_FILLED, 1))
        order.on_snapshot(snap("3", "50", OrderStatus.PARTIALLY_FILLED, 2, source="rest"))

        assert order.status == OrderStatus.FATAL_ERROR
        assert len(order.deals) == 1
        assert isinstance(on_fatal.call_args.args[0], InvariantViolation)

    @pytest.mark.asyncio
    async def test_fill_without_notional_is_fatal(self, order, on_fatal, calls):
        """A fill that adds no notional cannot be priced and stops the order"""
        order.on_snapshot(snap("1", "0", OrderStatus.PARTIALLY_FILLED, 1))

        assert order.status == OrderStatus.FATAL_ERROR
        assert order.deals == []
        assert order.filled == 0
        assert calls == []
        assert isinstance(on_fatal.call_args.args[0], InvariantViolation)

    @pytest.mark.asyncio
    async def test_order_id_change_is_fatal(self, order, on_fatal):
        order.start()
        await settle()
        order.on_snapshot(snap("0", "0", OrderStatus.ALIVE, 1, order_id="43"))
        assert order.fatal_error
        on_fatal.assert_called_once()

    @pytest.mark.asyncio
    async def test_foreign_client_id_is_fatal(self, order, on_fatal):
        order.on_snapshot(snap("0", "0", OrderStatus.ALIVE, 1, client_id="other00001"))
        assert order.fatal_error
        on_fatal.assert_called_once()

    @pytest.mark.asyncio
    async def test_push_before_create_response(self, order, api):
        """The WS push may carry the order id before the create response"""
        order.on_snapshot(snap("0", "0", OrderStatus.ALIVE, 1))
        order.start()
        await settle()
        assert order.order_id == "42"
        assert not order.fatal_error

    @pytest.mark.asyncio
    async def test_observer_failure_isolated(self, order, calls):
        class Broken(OrderObserver):
            def on_deal(self, order, deal):
                raise RuntimeError("boom")

        order.add_observer(Broken())
        order.add_observer(RecordingObserver(calls))
        order.on_snapshot(snap("1", "100", OrderStatus.PARTIALLY_FILLED, 1))
        assert ("observer", order.deals[0]) in calls

    @pytest.mark.asyncio
    async def test_finished_order_ignores_snapshots(self, order):
        order.on_snapshot(snap("5", "100", OrderStatus.FILLED, 1))
        order.on_snapshot(snap("5", "100", OrderStatus.FILLED, 2, order_id="99"))
        assert order.status == OrderStatus.FILLED


# ============================================
# Polling
# ============================================

class TestPolling:
    """Test REST reconciliation"""

    @pytest.mark.asyncio
    async def test_not_found_is_fatal(self, order, api):
        api.get_order.return_value = RestResponse(code="51603", msg="Order does not exist")
        await order.poll()
        assert order.status == OrderStatus.FATAL_ERROR
        assert "not found" in order.error_message

    @pytest.mark.asyncio
    async def test_three_failures_are_fatal(self, order, api):
        await order.poll()
        await order.poll()
        assert not order.is_finished
        api.get_order.side_effect = TransientNetworkError("timeout")
        await order.poll()
        assert order.status == OrderStatus.FATAL_ERROR

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, order, api):
        await order.poll()
        await order.poll()
        api.get_order.return_value = RestResponse(data=[order_row("live")])
        await order.poll()
        api.get_order.return_value = RestResponse(code="50001", msg="busy")
        await order.poll()
        assert not order.is_finished


# ============================================
# Cancel and Modify
# ============================================

class TestCancelModify:
    """Test cancel and amend requests"""

    @pytest.mark.asyncio
    async def test_cancel_finished_is_noop(self, order, api):
        order.on_snapshot(snap("5", "100", OrderStatus.FILLED, 1))
        await order.cancel()
        api.cancel_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_terminal_code_polls(self, order, api):
        api.cancel_order.return_value = RestResponse(
            code="1", data=[{"clOrdId": CLIENT_ID, "sCode": "51402", "sMsg": "Order already filled"}]
        )
        api.get_order.return_value = RestResponse(data=[order_row("filled", "5", "100.1")])
        await order.cancel()
        assert order.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_cancel_in_progress_is_quiet(self, order, api):
        api.cancel_order.return_value = RestResponse(code="1", data=[{"clOrdId": CLIENT_ID, "sCode": "51410"}])
        await order.cancel()
        api.get_order.assert_not_awaited()
        assert not order.is_finished

    @pytest.mark.asyncio
    async def test_modify_price(self, order, api):
        await order.modify(new_price=Decimal("100.37"))
        args = api.amend_order.call_args.args
        assert args[0:2] == ("BTC-USDT-SWAP", CLIENT_ID)
        assert args[3] == Decimal("100.3")
        assert args[4] == 0

    @pytest.mark.asyncio
    async def test_modify_unchanged_is_noop(self, order, api):
        await order.modify(new_price=Decimal("100.1"), new_size=Decimal("5"))
        api.amend_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_modify_below_minimum_cancels(self, order, api):
        await order.modify(new_size=Decimal("0.5"))
        api.amend_order.assert_not_awaited()
        api.cancel_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_modify_terminal_code_polls(self, order, api):
        api.amend_order.return_value = RestResponse(code="1", data=[{"clOrdId": CLIENT_ID, "sCode": "51509"}])
        api.get_order.return_value = RestResponse(data=[order_row("canceled")])
        await order.modify(new_size=Decimal("3"))
        assert order.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_wait_finished_timeout(self, order):
        assert await order.wait_finished(timeout=0.01) is False
        order.on_snapshot(snap("0", "0", OrderStatus.CANCELLED, 1))
        assert await order.wait_finished(timeout=0.01) is True
