"""
Authentication: wallet setup and API credential derivation.
"""

import json
from pathlib import Path

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds

from config import Config


def load_api_creds(path: str) -> ApiCreds:
    """
    Read L2 credentials saved as {"key", "secret", "passphrase"}.
    Secrets exported as URL-safe base64 are converted to standard base64.
    """
    raw = json.loads(Path(path).read_text())
    secret = (raw.get("secret") or "").replace("-", "+").replace("_", "/")
    return ApiCreds(
        api_key=raw["key"],
        api_secret=secret,
        api_passphrase=raw.get("passphrase", ""),
    )


def build_clob_client(cfg: Config) -> ClobClient:
    """
    Build an authenticated ClobClient ready for trading.
    Steps:
      1. Create L1 client with private key and proxy funder
      2. Load saved API credentials, or derive them (creates if first time)
      3. Return fully authenticated client
    """
    key = cfg.private_key if cfg.private_key.startswith("0x") else f"0x{cfg.private_key}"
    client = ClobClient(
        host=cfg.clob_host,
        chain_id=cfg.chain_id,
        key=key,
        signature_type=cfg.signature_type,
        funder=cfg.polymarket_profile_address,
    )

    if cfg.polymarket_credential_path and Path(cfg.polymarket_credential_path).exists():
        creds = load_api_creds(cfg.polymarket_credential_path)
    else:
        creds = client.create_or_derive_api_creds()
    client.set_api_creds(creds)

    return client


def build_public_clob_client(cfg: Config) -> ClobClient:
    """Unauthenticated client; enough for order book reads."""
    return ClobClient(host=cfg.clob_host, chain_id=cfg.chain_id)
