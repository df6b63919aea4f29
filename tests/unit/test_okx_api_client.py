"""
Unit Tests for OKX API Client

These tests verify that the OkxAPIClient:
- Builds query strings, JSON bodies and signed headers correctly
- Parses the {code, msg, data} envelope into typed records
- Raises ApiError on refusals and retries transport failures
- Works with mocked HTTP responses

Run with:
    pytest tests/unit/test_okx_api_client.py -v
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
import pytest_asyncio

from core.errors import ApiError, TransientNetworkError
from core.schemas import ContractType
from exchanges.okx.api_client import OkxAPIClient
from exchanges.okx.models import RestResponse
from exchanges.okx.signer import OkxSigner


class FakeResponse:
    """aiohttp response stand-in usable as an async context manager"""

    def __init__(self, text: str, status: int = 200):
        self._text = text
        self.status = status

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def api_client():
    """Create an OkxAPIClient with credentials for testing"""
    async with OkxAPIClient(OkxSigner("key", "secret", "pass"), max_retries=2) as client:
        yield client


async def with_http_response(client: OkxAPIClient, text: str, status: int = 200) -> MagicMock:
    """Replace the HTTP session with one answering `text`"""
    await client.session.close()
    session = MagicMock()
    session.close = AsyncMock()
    session.request = MagicMock(return_value=FakeResponse(text, status))
    client.session = session
    return session.request


# ============================================
# Tests for the Request Layer
# ============================================

class TestRequest:
    """Tests for _request and _get"""

    @pytest.mark.asyncio
    async def test_request_without_session_raises(self):
        client = OkxAPIClient()
        with pytest.raises(RuntimeError, match="not initialized"):
            await client._request("GET", "/api/v5/public/time", signed=False)

    @pytest.mark.asyncio
    async def test_private_request_without_credentials_raises(self):
        async with OkxAPIClient() as client:
            with pytest.raises(RuntimeError, match="credentials"):
                await client._request("GET", "/api/v5/account/balance")

    @pytest.mark.asyncio
    async def test_signed_get_builds_query_and_headers(self, api_client):
        """Verify empty params are dropped and the query string is signed"""
        request = await with_http_response(api_client, '{"code":"0","msg":"","data":[]}')

        await api_client._request("GET", "/api/v5/trade/orders-pending", {"instId": "BTC-USDT", "ordType": ""})

        method, url = request.call_args.args
        headers = request.call_args.kwargs["headers"]
        assert method == "GET"
        assert url == "https://www.okx.com/api/v5/trade/orders-pending?instId=BTC-USDT"
        assert headers["OK-ACCESS-SIGN"] == api_client.signer.sign(
            headers["OK-ACCESS-TIMESTAMP"], "GET", "/api/v5/trade/orders-pending?instId=BTC-USDT"
        )
        assert request.call_args.kwargs["data"] is None

    @pytest.mark.asyncio
    async def test_post_body_is_compact_json(self, api_client):
        request = await with_http_response(api_client, '{"code":"0","data":[]}')
        await api_client._request("POST", "/api/v5/trade/order", body={"instId": "BTC-USDT", "sz": "1"})
        assert request.call_args.kwargs["data"] == '{"instId":"BTC-USDT","sz":"1"}'

    @pytest.mark.asyncio
    async def test_non_json_response_is_transient(self, api_client):
        await with_http_response(api_client, "<html>502 Bad Gateway</html>", status=502)
        with pytest.raises(TransientNetworkError, match="502"):
            await api_client._request("GET", "/api/v5/public/time", signed=False)

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, api_client):
        request = await with_http_response(api_client, "")
        request.side_effect = aiohttp.ClientConnectionError("reset")
        with pytest.raises(TransientNetworkError):
            await api_client._request("GET", "/api/v5/public/time", signed=False)

    @pytest.mark.asyncio
    async def test_get_raises_api_error(self, api_client, monkeypatch):
        monkeypatch.setattr(api_client, "_request", AsyncMock(return_value=RestResponse(code="50011", msg="Too Many Requests")))
        with pytest.raises(ApiError) as exc_info:
            await api_client._get("/api/v5/public/time")
        assert exc_info.value.code == "50011"

    @pytest.mark.asyncio
    async def test_get_retries_transient_errors(self, api_client, monkeypatch):
        request = AsyncMock(side_effect=[
            TransientNetworkError("timeout"),
            RestResponse(data=[{"ts": "1"}]),
        ])
        monkeypatch.setattr(api_client, "_request", request)
        assert await api_client._get("/api/v5/public/time") == [{"ts": "1"}]
        assert request.await_count == 2

    @pytest.mark.asyncio
    async def test_get_gives_up_after_max_retries(self, monkeypatch):
        async with OkxAPIClient(max_retries=1) as client:
            monkeypatch.setattr(client, "_request", AsyncMock(side_effect=TransientNetworkError("down")))
            with pytest.raises(TransientNetworkError):
                await client._get("/api/v5/public/time")


# ============================================
# Tests for Public Endpoints
# ============================================

class TestPublicEndpoints:
    """Tests for market data and metadata endpoints"""

    @pytest.mark.asyncio
    async def test_get_server_time(self, api_client, monkeypatch):
        async def mock_get(path, params=None, signed=False):
            assert path == "/api/v5/public/time"
            return [{"ts": "1704110400123"}]

        monkeypatch.setattr(api_client, "_get", mock_get)
        assert await api_client.get_server_time() == 1704110400123

    @pytest.mark.asyncio
    async def test_get_instruments_skips_unsupported(self, api_client, monkeypatch):
        rows = [
            {"instType": "SWAP", "instId": "BTC-USDT-SWAP", "uly": "BTC-USDT", "settleCcy": "USDT",
             "ctVal": "0.01", "ctValCcy": "BTC", "tickSz": "0.1", "lotSz": "1", "minSz": "1", "lever": "100"},
            {"instType": "SWAP", "instId": "BTC-USDC-SWAP", "uly": "BTC-USDC", "settleCcy": "USDC",
             "ctVal": "0.0001", "tickSz": "0.1", "lotSz": "1", "minSz": "1", "lever": "100"},
        ]
        called_params = {}

        async def mock_get(path, params=None, signed=False):
            called_params.update(params)
            return rows

        monkeypatch.setattr(api_client, "_get", mock_get)
        instruments = await api_client.get_instruments("SWAP")

        assert called_params == {"instType": "SWAP"}
        assert [i.inst_id for i in instruments] == ["BTC-USDT-SWAP"]
        assert instruments[0].contract_type == ContractType.USDT_SWAP

    @pytest.mark.asyncio
    async def test_get_ticker_missing(self, api_client, monkeypatch):
        monkeypatch.setattr(api_client, "_get", AsyncMock(return_value=[]))
        assert await api_client.get_ticker("BTC-USDT") is None

    @pytest.mark.asyncio
    async def test_get_price_limit(self, api_client, monkeypatch):
        monkeypatch.setattr(api_client, "_get", AsyncMock(return_value=[
            {"instId": "BTC-USDT-SWAP", "buyLmt": "105", "sellLmt": "95", "ts": "1704110400000"}
        ]))
        limit = await api_client.get_price_limit("BTC-USDT-SWAP")
        assert limit.buy_limit == Decimal("105")


# ============================================
# Tests for Account and Trading Endpoints
# ============================================

class TestTradingEndpoints:
    """Tests for request bodies of private endpoints"""

    @pytest.mark.asyncio
    async def test_get_leverage(self, api_client, monkeypatch):
        get = AsyncMock(return_value=[{"instId": "BTC-USDT-SWAP", "lever": "5", "mgnMode": "cross"}])
        monkeypatch.setattr(api_client, "_get", get)
        assert await api_client.get_leverage("BTC-USDT-SWAP") == 5
        assert get.call_args.kwargs["signed"] is True

    @pytest.mark.asyncio
    async def test_set_leverage_refused(self, api_client, monkeypatch):
        monkeypatch.setattr(api_client, "_request", AsyncMock(return_value=RestResponse(code="59000", msg="")))
        with pytest.raises(ApiError):
            await api_client.set_leverage("BTC-USDT-SWAP", 5)

    @pytest.mark.asyncio
    async def test_place_order_body(self, api_client, monkeypatch):
        request = AsyncMock(return_value=RestResponse(data=[{"ordId": "1", "clOrdId": "c1", "sCode": "0"}]))
        monkeypatch.setattr(api_client, "_request", request)

        await api_client.place_order(
            "BTC-USDT-SWAP", "c1", "grid01", "buy", "post_only", "cross",
            Decimal("100.1"), Decimal("5"), pos_side="long"
        )

        method, path = request.call_args.args
        body = request.call_args.kwargs["body"]
        assert (method, path) == ("POST", "/api/v5/trade/order")
        assert body == {
            "instId": "BTC-USDT-SWAP", "tdMode": "cross", "clOrdId": "c1", "tag": "grid01",
            "side": "buy", "ordType": "post_only", "px": "100.1", "sz": "5", "posSide": "long",
        }

    @pytest.mark.asyncio
    async def test_place_spot_order_has_no_pos_side(self, api_client, monkeypatch):
        request = AsyncMock(return_value=RestResponse())
        monkeypatch.setattr(api_client, "_request", request)
        await api_client.place_order("ETH-USDT", "c2", "t", "sell", "limit", "cash", Decimal("2000"), Decimal("0.1"),
                                     reduce_only=True)
        body = request.call_args.kwargs["body"]
        assert "posSide" not in body
        assert body["reduceOnly"] is True

    @pytest.mark.asyncio
    async def test_amend_omits_unchanged_fields(self, api_client, monkeypatch):
        request = AsyncMock(return_value=RestResponse())
        monkeypatch.setattr(api_client, "_request", request)
        await api_client.amend_order("BTC-USDT-SWAP", "c1", "amend1", new_price=Decimal("101.2"))
        body = request.call_args.kwargs["body"]
        assert body == {"instId": "BTC-USDT-SWAP", "clOrdId": "c1", "cxlOnFail": True,
                        "reqId": "amend1", "newPx": "101.2"}

    @pytest.mark.asyncio
    async def test_decimals_sent_in_positional_form(self, api_client, monkeypatch):
        """Prices aligned to a tick of 10 carry an exponent; the venue gets plain digits"""
        request = AsyncMock(return_value=RestResponse())
        monkeypatch.setattr(api_client, "_request", request)

        await api_client.place_order(
            "BTC-USDT-SWAP", "c1", "grid01", "buy", "limit", "cross", Decimal("1.000E+4"), Decimal("2E+1")
        )
        body = request.call_args.kwargs["body"]
        assert (body["px"], body["sz"]) == ("10000", "20")

        await api_client.amend_order(
            "BTC-USDT-SWAP", "c1", "amend1", new_price=Decimal("1.23E-7"), new_size=Decimal("1E+1")
        )
        body = request.call_args.kwargs["body"]
        assert (body["newPx"], body["newSz"]) == ("0.000000123", "10")

    @pytest.mark.asyncio
    async def test_cancel_orders_capped_at_batch_size(self, api_client, monkeypatch):
        request = AsyncMock(return_value=RestResponse())
        monkeypatch.setattr(api_client, "_request", request)
        orders = [{"instId": "BTC-USDT", "ordId": str(i)} for i in range(25)]
        await api_client.cancel_orders(orders)
        assert len(request.call_args.kwargs["body"]) == 20

    @pytest.mark.asyncio
    async def test_get_pending_orders(self, api_client, monkeypatch):
        monkeypatch.setattr(api_client, "_get", AsyncMock(return_value=[{
            "instId": "BTC-USDT", "ordId": "9", "clOrdId": "grid0100001", "tag": "grid01",
            "px": "100", "sz": "1", "accFillSz": "0", "state": "live", "uTime": "1704110400000",
        }]))
        (order,) = await api_client.get_pending_orders()
        assert order.tag == "grid01"
        assert order.source == "rest"

