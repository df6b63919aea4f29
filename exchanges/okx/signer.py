"""
OKX request signing.

Signature:
    base64(HMAC-SHA256(secret, timestamp + METHOD + request_path + body))

REST requests use an ISO-8601 timestamp with milliseconds and "Z"; the
WebSocket login uses Unix seconds and signs "GET /users/self/verify".
Both are taken from the server-corrected clock: the offset between the
venue clock and ours is measured at boot and refreshed periodically.
"""

import base64
import hashlib
import hmac
import json
from datetime import timedelta
from typing import Dict, Optional

from core.logging import get_logger
from core.utils.time import current_utc_datetime, current_utc_timestamp, to_iso8601_ms

LOGIN_PATH = "/users/self/verify"


class OkxSigner:
    """
    Holds the API credentials and the server clock offset.

    Attributes:
        offset_ms: server time minus local time, in milliseconds
    """

    def __init__(self, api_key: str, secret_key: str, passphrase: str):
        self.api_key = api_key
        self._secret = secret_key.encode()
        self.passphrase = passphrase
        self.offset_ms = 0
        self.logger = get_logger(__name__)

    def update_offset(self, server_ms: int, local_ms: Optional[int] = None) -> None:
        if local_ms is None:
            local_ms = current_utc_timestamp(milliseconds=True)
        offset = server_ms - local_ms
        if abs(offset - self.offset_ms) > 1000:
            self.logger.info(f"Server clock offset changed: {self.offset_ms}ms -> {offset}ms")
        self.offset_ms = offset

    def iso_timestamp(self) -> str:
        return to_iso8601_ms(current_utc_datetime() + timedelta(milliseconds=self.offset_ms))

    def unix_timestamp(self) -> str:
        return str((current_utc_timestamp(milliseconds=True) + self.offset_ms) // 1000)

    def sign(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(self._secret, message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def rest_headers(self, method: str, request_path: str, body: str = "") -> Dict[str, str]:
        """Headers of a private REST request; `request_path` includes the query string"""
        timestamp = self.iso_timestamp()
        return {
            "OK-ACCESS-KEY": self.api_key,
            "OK-ACCESS-SIGN": self.sign(timestamp, method, request_path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self.passphrase,
            "Content-Type": "application/json",
        }

    def login_payload(self) -> str:
        timestamp = self.unix_timestamp()
        return json.dumps({
            "op": "login",
            "args": [{
                "apiKey": self.api_key,
                "passphrase": self.passphrase,
                "timestamp": timestamp,
                "sign": self.sign(timestamp, "GET", LOGIN_PATH),
            }],
        }, separators=(",", ":"))
