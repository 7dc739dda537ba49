"""
CLOB REST client wrapper. Thin layer converting SDK types to our domain models.
"""

from __future__ import annotations

import logging
import re
import time

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)
from py_clob_client.order_builder.constants import BUY, SELL

from scanner.models import OrderBook, PriceLevel

logger = logging.getLogger(__name__)

# Retry config for flaky CLOB API (HTTP/2 connection resets, SSL errors)
_MAX_RETRIES = 3
_RETRY_BACKOFF_SEC = 0.25

# USDC and CTF outcome tokens both use 6 decimals.
_TOKEN_DECIMALS = 1_000_000

# Errors the CLOB returns when a FOK/FAK order cannot be (fully) matched.
_FILL_FAILURE_RE = re.compile(
    r"couldn't be fully filled|\bFOK\b|\bFAK\b|fill.or.kill|fill.and.kill|no orders found to match",
    re.IGNORECASE,
)

# Patch py_clob_client's shared httpx client:
#   - Disable HTTP/2: the CLOB server sends GOAWAY frames that crash the shared
#     connection pool (httpcore.RemoteProtocolError: ConnectionTerminated)
#   - Add a 15s timeout (SDK default has none)
import httpx as _httpx
from py_clob_client.http_helpers import helpers as _clob_helpers
_clob_helpers._http_client = _httpx.Client(http2=False, timeout=15.0)


def is_fill_failure(error: str | None) -> bool:
    """True when an order error means 'not immediately/fully fillable'."""
    return bool(error) and _FILL_FAILURE_RE.search(error) is not None


def _sort_book_levels(
    raw_bids: list, raw_asks: list,
) -> tuple[tuple[PriceLevel, ...], tuple[PriceLevel, ...]]:
    """
    Convert raw SDK levels to sorted PriceLevel tuples.
    Asks ascending, bids descending (best first). The SDK does not guarantee order.
    """
    bids = tuple(sorted(
        (PriceLevel(price=float(b.price), size=float(b.size)) for b in (raw_bids or [])),
        key=lambda lvl: lvl.price,
        reverse=True,
    ))
    asks = tuple(sorted(
        (PriceLevel(price=float(a.price), size=float(a.size)) for a in (raw_asks or [])),
        key=lambda lvl: lvl.price,
    ))
    return bids, asks


def _retry_api_call(fn, *args, max_retries: int = _MAX_RETRIES, **kwargs):
    """Retry a py_clob_client call with exponential backoff on connection errors."""
    for attempt in range(max_retries):
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            err_str = str(exc)
            # Only retry on connection-level errors (status_code=None), not 4xx/5xx
            is_connection_error = "Request exception" in err_str or "status_code=None" in err_str
            if not is_connection_error or attempt == max_retries - 1:
                raise
            wait = _RETRY_BACKOFF_SEC * (2 ** attempt)
            logger.debug("CLOB API retry %d/%d after %.2fs: %s", attempt + 1, max_retries, wait, exc)
            time.sleep(wait)
    raise RuntimeError("unreachable")


def get_orderbook(client: ClobClient, token_id: str) -> OrderBook:
    """Fetch full orderbook for a token and convert to our OrderBook model."""
    raw = _retry_api_call(client.get_order_book, token_id)
    bids, asks = _sort_book_levels(raw.bids, raw.asks)
    return OrderBook(token_id=token_id, bids=bids, asks=asks)


def get_best_ask(client: ClobClient, token_id: str) -> float | None:
    """
    Current best ask for a token, or None when the book is empty or unreachable.
    Stateless; used for price reads, retry re-pricing and balance checks.
    """
    try:
        book = get_orderbook(client, token_id)
    except Exception as e:
        logger.warning("Best ask fetch failed for %s...: %s", token_id[:12], e)
        return None
    return book.best_ask.price if book.best_ask else None


def create_limit_buy(
    client: ClobClient,
    token_id: str,
    price: float,
    size: float,
    tick_size: str = "0.01",
    neg_risk: bool = False,
) -> object:
    """Create and sign a limit BUY. Returns a SignedOrder ready to post."""
    args = OrderArgs(token_id=token_id, price=price, size=size, side=BUY)
    options = PartialCreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk)
    return client.create_order(args, options)


def create_market_sell(
    client: ClobClient,
    token_id: str,
    shares: float,
    tick_size: str = "0.01",
    neg_risk: bool = False,
) -> object:
    """Create and sign a FAK market SELL of *shares* tokens."""
    args = MarketOrderArgs(token_id=token_id, amount=shares, side=SELL, order_type=OrderType.FAK)
    options = PartialCreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk)
    return client.create_market_order(args, options)


def post_order(
    client: ClobClient,
    signed_order: object,
    order_type: OrderType = OrderType.GTC,
) -> dict:
    """Post a signed order to the CLOB. Returns the response dict."""
    return client.post_order(signed_order, order_type)


def get_order(client: ClobClient, order_id: str) -> dict | None:
    """Order status by ID (None when the CLOB no longer knows it)."""
    return client.get_order(order_id)


def get_collateral_balance_usd(client: ClobClient) -> float:
    """USDC collateral balance in dollars."""
    resp = client.get_balance_allowance(
        params=BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
    )
    return float(resp.get("balance", 0) or 0) / _TOKEN_DECIMALS


def get_token_balance(client: ClobClient, token_id: str) -> float:
    """Held outcome tokens (shares) for *token_id*."""
    resp = client.get_balance_allowance(
        params=BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=token_id)
    )
    return float(resp.get("balance", 0) or 0) / _TOKEN_DECIMALS
