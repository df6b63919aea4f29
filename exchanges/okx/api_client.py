"""
OKX REST API Client

Async HTTP client for the OKX v5 REST API.
It handles:
- Public GET requests with retry and exponential backoff
- Signed private requests (never retried: a replayed order is worse than a
  lost response, the order manager polls to learn the truth)
- Parsing the {code, msg, data} envelope into typed records

API Documentation:
    https://www.okx.com/docs-v5/en/

Usage:
    async with OkxAPIClient(signer) as client:
        instruments = await client.get_instruments("SWAP")
        resp = await client.place_order(...)
"""

import asyncio
import json
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from core.errors import ApiError, TransientNetworkError
from core.logging import get_logger, log_api_request, log_api_response
from core.schemas import FundingRate, Instrument, MarkPrice, OrderSnapshot, PriceLimit, Ticker
from core.utils.time import current_utc_datetime
from .helpers import EXCHANGE_NAME
from .models import (
    RestResponse,
    parse_funding_rate,
    parse_instrument,
    parse_mark_price,
    parse_order,
    parse_price_limit,
    parse_ticker,
)
from .signer import OkxSigner

MAX_BATCH_CANCEL = 20


class OkxAPIClient:
    """
    Async HTTP client for the OKX REST API

    Attributes:
        base_url: REST root (e.g. "https://www.okx.com")
        signer: Credentials and server clock offset
        session: aiohttp ClientSession for HTTP requests

    Example:
        >>> async with OkxAPIClient(signer) as client:
        ...     server_ms = await client.get_server_time()

    Notes:
        - Uses context manager for automatic session cleanup
        - Public methods raise ApiError when the venue answers code != "0"
        - Trading methods return the raw envelope; the order manager reads
          the per-order sCode itself
    """

    def __init__(
        self,
        signer: Optional[OkxSigner] = None,
        base_url: str = "https://www.okx.com",
        request_timeout: float = 10.0,
        max_retries: int = 3
    ):
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = get_logger(__name__)

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            trust_env=True
        )
        self.logger.debug("OkxAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("OkxAPIClient session closed")

    # ============================================
    # HTTP Request Handlers
    # ============================================

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
        signed: bool = True
    ) -> RestResponse:
        """
        Send one request and parse the envelope.

        Args:
            method: "GET" or "POST"
            path: Endpoint path (e.g. "/api/v5/trade/order")
            params: Query parameters (empty values are dropped)
            body: JSON body for POST requests
            signed: Add the OK-ACCESS-* headers

        Returns:
            RestResponse envelope (code may be non-zero)

        Raises:
            RuntimeError: If the session is not initialized
            TransientNetworkError: If no parseable response was received
        """
        if self.session is None:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        query = {k: v for k, v in (params or {}).items() if v not in (None, "")}
        request_path = f"{path}?{urlencode(query)}" if query else path
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""

        if signed:
            if self.signer is None:
                raise RuntimeError(f"Private endpoint {path} needs API credentials")
            headers = self.signer.rest_headers(method, request_path, body_text)
        else:
            headers = {"Content-Type": "application/json"}

        log_api_request(EXCHANGE_NAME, method, path, query or None)
        started = time.monotonic()
        try:
            async with self.session.request(
                method,
                f"{self.base_url}{request_path}",
                data=body_text or None,
                headers=headers
            ) as response:
                text = await response.text()
                log_api_response(EXCHANGE_NAME, path, response.status, time.monotonic() - started)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{method} {path} failed: {e!r}") from e

        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            raise TransientNetworkError(f"HTTP {response.status}: {text[:200]}")
        return RestResponse.model_validate(payload)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> List[Any]:
        """
        GET with retry logic.

        Returns:
            The envelope's data list

        Raises:
            ApiError: If the venue refused the request
            TransientNetworkError: If all retry attempts fail
        """
        for attempt in range(self.max_retries):
            try:
                resp = await self._request("GET", path, params, signed=signed)
            except TransientNetworkError as e:
                if attempt == self.max_retries - 1:
                    self.logger.error(f"OKX request {path} failed after {self.max_retries} attempts: {e}")
                    raise
                wait_time = 2 ** attempt
                self.logger.warning(f"OKX request {path} failed (attempt {attempt + 1}), retrying in {wait_time}s: {e}")
                await asyncio.sleep(wait_time)
                continue

            if not resp.ok:
                raise ApiError(resp.code, resp.msg)
            return resp.data

        return []

    # ============================================
    # Public Endpoints
    # ============================================

    async def get_server_time(self) -> int:
        """
        Server time in milliseconds.

        OKX Endpoint:
            GET /api/v5/public/time
        """
        data = await self._get("/api/v5/public/time")
        return int(data[0]["ts"])

    async def get_instruments(self, inst_type: str) -> List[Instrument]:
        """
        All instruments of one category.

        Args:
            inst_type: "SPOT" or "SWAP"

        OKX Endpoint:
            GET /api/v5/public/instruments
        """
        rows = await self._get("/api/v5/public/instruments", {"instType": inst_type})
        instruments = [inst for inst in (parse_instrument(row) for row in rows) if inst is not None]
        self.logger.info(f"Fetched {len(instruments)} {inst_type} instruments")
        return instruments

    async def get_ticker(self, inst_id: str) -> Optional[Ticker]:
        """OKX Endpoint: GET /api/v5/market/ticker"""
        rows = await self._get("/api/v5/market/ticker", {"instId": inst_id})
        return parse_ticker(rows[0]) if rows else None

    async def get_tickers(self, inst_type: str) -> List[Ticker]:
        """OKX Endpoint: GET /api/v5/market/tickers"""
        rows = await self._get("/api/v5/market/tickers", {"instType": inst_type})
        return [parse_ticker(row) for row in rows]

    async def get_mark_price(self, inst_id: str, inst_type: str = "SWAP") -> Optional[MarkPrice]:
        """OKX Endpoint: GET /api/v5/public/mark-price"""
        rows = await self._get("/api/v5/public/mark-price", {"instType": inst_type, "instId": inst_id})
        return parse_mark_price(rows[0]) if rows else None

    async def get_price_limit(self, inst_id: str) -> Optional[PriceLimit]:
        """OKX Endpoint: GET /api/v5/public/price-limit"""
        rows = await self._get("/api/v5/public/price-limit", {"instId": inst_id})
        return parse_price_limit(rows[0]) if rows else None

    async def get_funding_rate(self, inst_id: str) -> Optional[FundingRate]:
        """OKX Endpoint: GET /api/v5/public/funding-rate"""
        rows = await self._get("/api/v5/public/funding-rate", {"instId": inst_id})
        return parse_funding_rate(rows[0]) if rows else None

    # ============================================
    # Account Endpoints
    # ============================================

    async def get_account_config(self) -> Dict[str, Any]:
        """
        Account level and position mode.

        OKX Endpoint:
            GET /api/v5/account/config
        """
        data = await self._get("/api/v5/account/config", signed=True)
        return data[0] if data else {}

    async def get_balance(self) -> List[Dict[str, Any]]:
        """OKX Endpoint: GET /api/v5/account/balance"""
        return await self._get("/api/v5/account/balance", signed=True)

    async def get_positions(self) -> List[Dict[str, Any]]:
        """OKX Endpoint: GET /api/v5/account/positions"""
        return await self._get("/api/v5/account/positions", signed=True)

    async def get_leverage(self, inst_id: str, margin_mode: str = "cross") -> int:
        """
        Current leverage of an instrument.

        OKX Endpoint:
            GET /api/v5/account/leverage-info
        """
        data = await self._get(
            "/api/v5/account/leverage-info",
            {"instId": inst_id, "mgnMode": margin_mode},
            signed=True
        )
        return int(Decimal(data[0]["lever"])) if data else 0

    async def set_leverage(self, inst_id: str, leverage: int, margin_mode: str = "cross") -> int:
        """
        Set the leverage of an instrument.

        OKX Endpoint:
            POST /api/v5/account/set-leverage

        Raises:
            ApiError: If the venue refused the new leverage
        """
        resp = await self._request("POST", "/api/v5/account/set-leverage", body={
            "instId": inst_id,
            "mgnMode": margin_mode,
            "lever": str(leverage),
        })
        if not resp.ok:
            raise ApiError(resp.code, resp.msg)
        return int(Decimal(resp.data[0]["lever"])) if resp.data else leverage

    # ============================================
    # Trading Endpoints
    # ============================================

    async def place_order(
        self,
        inst_id: str,
        client_id: str,
        tag: str,
        side: str,
        order_type: str,
        trade_mode: str,
        price: Decimal,
        size: Decimal,
        pos_side: str = "",
        reduce_only: bool = False
    ) -> RestResponse:
        """OKX Endpoint: POST /api/v5/trade/order"""
        body = {
            "instId": inst_id,
            "tdMode": trade_mode,
            "clOrdId": client_id,
            "tag": tag,
            "side": side,
            "ordType": order_type,
            "px": f"{price:f}",
            "sz": f"{size:f}",
        }
        if pos_side:
            body["posSide"] = pos_side
        if reduce_only:
            body["reduceOnly"] = True
        return await self._request("POST", "/api/v5/trade/order", body=body)

    async def cancel_order(self, inst_id: str, client_id: str = "", order_id: str = "") -> RestResponse:
        """OKX Endpoint: POST /api/v5/trade/cancel-order"""
        body = {"instId": inst_id}
        if order_id:
            body["ordId"] = order_id
        if client_id:
            body["clOrdId"] = client_id
        return await self._request("POST", "/api/v5/trade/cancel-order", body=body)

    async def cancel_orders(self, orders: List[Dict[str, str]]) -> RestResponse:
        """
        Cancel up to 20 orders at once.

        Args:
            orders: [{"instId": ..., "ordId": ...}, ...]

        OKX Endpoint:
            POST /api/v5/trade/cancel-batch-orders
        """
        return await self._request("POST", "/api/v5/trade/cancel-batch-orders", body=orders[:MAX_BATCH_CANCEL])

    async def amend_order(
        self,
        inst_id: str,
        client_id: str,
        request_id: str,
        new_price: Decimal = Decimal(0),
        new_size: Decimal = Decimal(0)
    ) -> RestResponse:
        """
        Change price and/or size; zero fields are left unchanged.

        OKX Endpoint:
            POST /api/v5/trade/amend-order
        """
        body: Dict[str, Any] = {"instId": inst_id, "clOrdId": client_id, "cxlOnFail": True}
        if request_id:
            body["reqId"] = request_id
        if new_price > 0:
            body["newPx"] = f"{new_price:f}"
        if new_size > 0:
            body["newSz"] = f"{new_size:f}"
        return await self._request("POST", "/api/v5/trade/amend-order", body=body)

    async def get_order(self, inst_id: str, client_id: str) -> RestResponse:
        """OKX Endpoint: GET /api/v5/trade/order"""
        return await self._request("GET", "/api/v5/trade/order", {"instId": inst_id, "clOrdId": client_id})

    async def get_pending_orders(self, inst_id: str = "") -> List[OrderSnapshot]:
        """
        Live orders, optionally of one instrument.

        OKX Endpoint:
            GET /api/v5/trade/orders-pending
        """
        rows = await self._get("/api/v5/trade/orders-pending", {"instId": inst_id}, signed=True)
        now = current_utc_datetime()
        return [parse_order(row, "rest", now) for row in rows]
