"""
Kalshi RSA-based API key authentication.

Kalshi API v2 requires RSA-signed requests:
  - Header: KALSHI-ACCESS-KEY = api_key_id
  - Header: KALSHI-ACCESS-SIGNATURE = base64(RSA_PSS_SIGN(timestamp + method + path))
  - Header: KALSHI-ACCESS-TIMESTAMP = unix_ms
"""

from __future__ import annotations

import base64
import re
import time
from pathlib import Path

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

_PEM_RE = re.compile(r"-----(BEGIN|END) ([A-Z ]+)-----")


def normalize_pem(value: str) -> str:
    """
    Rebuild a PEM block with 64-char base64 lines.
    Env files often collapse the key onto one line; the loader rejects that.
    """
    trimmed = value.strip()
    match = _PEM_RE.search(trimmed)
    label = match.group(2) if match else "RSA PRIVATE KEY"
    body = re.sub(r"\s+", "", _PEM_RE.sub("", trimmed))
    if not body:
        return trimmed
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----\n"


class KalshiAuth:
    """Handles RSA key loading and request signing for Kalshi API v2."""

    def __init__(
        self,
        api_key_id: str,
        private_key_path: str = "",
        private_key_pem: str = "",
    ) -> None:
        self.api_key_id = api_key_id
        if private_key_path:
            pem_data = Path(private_key_path).read_bytes()
        elif private_key_pem:
            pem_data = normalize_pem(private_key_pem).encode("utf-8")
        else:
            raise ValueError("Kalshi private key path or PEM is required")
        self._private_key = self._load_private_key(pem_data)

    @staticmethod
    def _load_private_key(pem_data: bytes) -> rsa.RSAPrivateKey:
        key = serialization.load_pem_private_key(pem_data, password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError(f"Expected RSA private key, got {type(key).__name__}")
        return key

    def sign_request(self, method: str, path: str, timestamp_ms: int | None = None) -> dict[str, str]:
        """
        Generate authentication headers for a Kalshi API request.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: Request path without query string (e.g., /trade-api/v2/markets)
            timestamp_ms: Unix timestamp in milliseconds (auto-generated if None)
        """
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)

        message = f"{timestamp_ms}{method.upper()}{path}"
        signature = self._private_key.sign(
            message.encode("utf-8"),
            padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.DIGEST_LENGTH,
            ),
            hashes.SHA256(),
        )

        return {
            "KALSHI-ACCESS-KEY": self.api_key_id,
            "KALSHI-ACCESS-SIGNATURE": base64.b64encode(signature).decode("utf-8"),
            "KALSHI-ACCESS-TIMESTAMP": str(timestamp_ms),
        }
