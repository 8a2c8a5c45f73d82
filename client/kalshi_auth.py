"""
Kalshi RSA-based API key authentication.

Kalshi API v2 requires RSA-PSS signed requests:
  - Header: KALSHI-ACCESS-KEY = api_key_id
  - Header: KALSHI-ACCESS-SIGNATURE = base64(RSA_PSS_SIGN(timestamp + method + path + body))
  - Header: KALSHI-ACCESS-TIMESTAMP = unix_ms
  - Header: KALSHI-ACCESS-EMAIL = account email (optional)
"""

from __future__ import annotations

import base64
import json
import time
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


class SigningError(Exception):
    """Request could not be signed. The request must not be sent."""
    pass


def serialize_body(body: Any) -> str:
    """Compact JSON exactly as sent on the wire. Empty for no body or {}."""
    if body is None:
        return ""
    if isinstance(body, str):
        return "" if body in ("", "{}") else body
    if isinstance(body, dict) and not body:
        return ""
    return json.dumps(body, separators=(",", ":"))


class KalshiAuth:
    """Handles RSA key loading and request signing for Kalshi API v2."""

    def __init__(
        self,
        api_key_id: str,
        private_key_path: str = "",
        private_key_pem: str = "",
        email: str = "",
    ) -> None:
        if not api_key_id:
            raise SigningError("Kalshi API key id is empty")
        self.api_key_id = api_key_id
        self.email = email
        self._private_key = self._load_private_key(private_key_path, private_key_pem)

    @staticmethod
    def _load_private_key(path: str, pem: str) -> rsa.RSAPrivateKey:
        """Load RSA private key from a PEM file or an inline PEM string."""
        if pem:
            # .env files usually carry the key on one line with literal \n
            pem_data = pem.replace("\\n", "\n").encode("utf-8")
        elif path:
            try:
                pem_data = Path(path).read_bytes()
            except OSError as e:
                raise SigningError(f"Cannot read Kalshi private key {path}: {e}") from e
        else:
            raise SigningError("No Kalshi private key configured")
        try:
            key = serialization.load_pem_private_key(pem_data, password=None)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Invalid Kalshi private key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningError(f"Expected RSA private key, got {type(key).__name__}")
        return key

    def sign_request(
        self,
        method: str,
        path: str,
        body: str = "",
        timestamp_ms: int | None = None,
    ) -> dict[str, str]:
        """
        Generate authentication headers for a Kalshi API request.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: Full request path including the API prefix (e.g. /trade-api/v2/markets)
            body: Serialized request body, see serialize_body()
            timestamp_ms: Unix timestamp in milliseconds (auto-generated if None)

        Returns:
            Dict of headers to add to the request.

        Raises:
            SigningError: the signature could not be produced.
        """
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)

        message = f"{timestamp_ms}{method.upper()}{path}{body}"
        try:
            signature = self._private_key.sign(
                message.encode("utf-8"),
                padding.PSS(
                    mgf=padding.MGF1(hashes.SHA256()),
                    salt_length=padding.PSS.DIGEST_LENGTH,
                ),
                hashes.SHA256(),
            )
        except Exception as e:
            raise SigningError(f"Kalshi signing failed: {e}") from e
        sig_b64 = base64.b64encode(signature).decode("utf-8")

        headers = {
            "KALSHI-ACCESS-KEY": self.api_key_id,
            "KALSHI-ACCESS-SIGNATURE": sig_b64,
            "KALSHI-ACCESS-TIMESTAMP": str(timestamp_ms),
        }
        if self.email:
            headers["KALSHI-ACCESS-EMAIL"] = self.email
        if body:
            headers["Content-Type"] = "application/json"
        return headers
