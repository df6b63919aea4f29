"""
Unit tests for the OKX WebSocket client.

This test suite verifies:
- Subscribe/unsubscribe payloads and acknowledgement keywords
- Public frames reach the handler of their instId or instType only
- Private handlers only accept account, positions and orders
- A refused login is reported as a ConfigurationError

Run with:
    pytest tests/unit/test_okx_ws_client.py -v
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors import ConfigurationError
from exchanges.okx.signer import OkxSigner
from exchanges.okx.ws_client import OkxWSClient, ack_keys, channel_payload


def frame(channel: str, data, **arg) -> str:
    return json.dumps({"arg": {"channel": channel, **arg}, "data": data}, separators=(",", ":"))


@pytest.fixture
def client():
    return OkxWSClient()


@pytest.fixture
def private_client():
    return OkxWSClient(OkxSigner("key", "secret", "pass"), on_fatal=MagicMock())


class TestPayloads:
    """Test subscription payloads"""

    def test_subscribe_payload(self):
        assert channel_payload("subscribe", "books", inst_id="BTC-USDT") == \
            '{"op":"subscribe","args":[{"channel":"books","instId":"BTC-USDT"}]}'

    def test_inst_type_payload(self):
        payload = json.loads(channel_payload("unsubscribe", "orders", inst_type="ANY"))
        assert payload == {"op": "unsubscribe", "args": [{"channel": "orders", "instType": "ANY"}]}

    def test_ack_keys_match_venue_ack(self):
        ack = '{"event":"subscribe","arg":{"channel":"tickers","instId":"BTC-USDT"},"connId":"a4d3ae55"}'
        assert all(key in ack for key in ack_keys("tickers", inst_id="BTC-USDT"))
        assert not all(key in ack for key in ack_keys("tickers", inst_id="ETH-USDT"))

    def test_subscribe_registers_subscriber(self, client):
        subscriber = client.subscribe("books", inst_id="BTC-USDT")
        assert subscriber in client.public.subscribers
        assert subscriber.name == "books:BTC-USDT"
        assert '"op":"unsubscribe"' in subscriber.unsubscribe_text


# ============================================
# Dispatch
# ============================================

class TestDispatch:
    """Test frame routing"""

    def test_public_frame_by_inst_id(self, client):
        btc, eth = MagicMock(), MagicMock()
        client.add_public_handler("tickers", "BTC-USDT", btc)
        client.add_public_handler("tickers", "ETH-USDT", eth)

        client.public.handle_frame(frame("tickers", [{"instId": "BTC-USDT"}], instId="BTC-USDT"))

        btc.assert_called_once()
        assert btc.call_args.args[0]["data"] == [{"instId": "BTC-USDT"}]
        eth.assert_not_called()

    def test_public_frame_by_inst_type(self, client):
        handler = MagicMock()
        client.add_public_handler("liquidation-orders", "SWAP", handler)
        client.public.handle_frame(frame("liquidation-orders", [], instType="SWAP"))
        handler.assert_called_once()

    def test_removed_handler_not_called(self, client):
        handler = MagicMock()
        client.add_public_handler("tickers", "BTC-USDT", handler)
        client.remove_public_handler("tickers", "BTC-USDT")
        client.public.handle_frame(frame("tickers", [], instId="BTC-USDT"))
        handler.assert_not_called()

    def test_private_handler(self, private_client):
        handler = MagicMock()
        private_client.add_private_handler("orders", handler)
        private_client.private.handle_frame(frame("orders", [{"clOrdId": "x"}], instType="ANY"))
        assert handler.call_args.args[0]["data"] == [{"clOrdId": "x"}]

    def test_unknown_private_channel_rejected(self, private_client):
        with pytest.raises(ValueError):
            private_client.add_private_handler("books", MagicMock())

    def test_private_subscribe_without_credentials(self, client):
        assert client.private is None
        with pytest.raises(RuntimeError):
            client.subscribe("orders", inst_type="ANY", private=True)
        assert not client.private_ready()


# ============================================
# Login
# ============================================

class TestLogin:
    """Test the private login handshake"""

    @pytest.mark.asyncio
    async def test_login_sent_first(self, private_client):
        session = private_client.private
        session.connected = True
        session.send = AsyncMock(return_value=True)
        private_client.subscribe("orders", inst_type="ANY", private=True)

        await session.tick_subscribers(now=0)
        payload = json.loads(session.send.call_args.args[0])
        assert payload["op"] == "login"

        session.handle_frame('{"event":"login","code":"0","msg":"","connId":"a4d3ae55"}')
        await session.tick_subscribers(now=1)
        assert '"channel":"orders"' in session.send.call_args.args[0]

    @pytest.mark.asyncio
    async def test_login_refused_is_fatal(self, private_client):
        session = private_client.private
        session.connected = True
        session.send = AsyncMock(return_value=True)
        await session.tick_subscribers(now=0)

        session.handle_frame('{"event":"error","code":"60009","msg":"Login failed.","connId":"a4d3ae55"}')

        private_client.on_fatal.assert_called_once()
        error = private_client.on_fatal.call_args.args[0]
        assert isinstance(error, ConfigurationError)
        assert not private_client.private_ready()
