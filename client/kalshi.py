"""
Kalshi REST API v2 client. Series discovery, market quotes, order placement, balance.

Kalshi API docs: https://trading-api.readme.io/reference
Prices stay in cents (0-100) here; the snapshot layer converts to dollars.
"""

from __future__ import annotations

import logging
import random
import time
from urllib.parse import urlparse

import httpx

from client.kalshi_auth import KalshiAuth
from scanner.models import KalshiMarket, KalshiQuote

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEMO_HOST = "https://demo-api.kalshi.co/trade-api/v2"
_PAGE_SIZE = 200
_PAGE_DELAY_SEC = 0.1
_429_MAX_RETRIES = 3
_429_BACKOFF_SEC = 1.0
_429_JITTER_FRAC = 0.15


def dollars_to_cents(value: str | float | None) -> float | None:
    """Convert a *_dollars field ("0.5500") to cents. None when absent or unparseable."""
    if value is None or value == "":
        return None
    try:
        return round(float(value) * 100, 2)
    except (TypeError, ValueError):
        return None


def _price_cents(market: dict, field: str) -> float | None:
    """Prefer the integer cents field, fall back to the *_dollars string."""
    cents = market.get(field)
    if cents is not None:
        try:
            return float(cents)
        except (TypeError, ValueError):
            return None
    return dollars_to_cents(market.get(f"{field}_dollars"))


def clamp_price_cents(cents: float) -> int:
    """Kalshi limit prices must be whole cents in 1-99."""
    return max(1, min(99, int(round(cents))))


class KalshiClient:
    """
    Kalshi REST API v2 client (synchronous, httpx).

    Callers on the event loop wrap these methods with asyncio.to_thread.
    """

    def __init__(
        self,
        auth: KalshiAuth,
        host: str = "https://api.elections.kalshi.com/trade-api/v2",
        demo: bool = False,
    ) -> None:
        self._auth = auth
        self._host = DEMO_HOST if demo else host.rstrip("/")
        self._http = httpx.Client(timeout=DEFAULT_TIMEOUT)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Make an authenticated request to Kalshi API. Retries on 429."""
        url = f"{self._host}{path}"
        # Sign with the full URL path (e.g. /trade-api/v2/markets), not the relative path.
        full_path = urlparse(url).path

        for attempt in range(_429_MAX_RETRIES + 1):
            headers = self._auth.sign_request(method, full_path)
            headers["Content-Type"] = "application/json"
            headers["Accept"] = "application/json"

            resp = self._http.request(method, url, headers=headers, **kwargs)
            if resp.status_code != 429 or attempt == _429_MAX_RETRIES:
                resp.raise_for_status()
                return resp.json()

            wait = _429_BACKOFF_SEC * (2 ** attempt)
            wait *= 1.0 + random.uniform(-_429_JITTER_FRAC, _429_JITTER_FRAC)
            logger.warning(
                "Kalshi 429 rate limited on %s %s (attempt %d/%d, waiting %.1fs)",
                method, path, attempt + 1, _429_MAX_RETRIES + 1, wait,
            )
            time.sleep(wait)

        raise RuntimeError("unreachable")

    # -- Market Discovery --

    def get_markets(
        self,
        series_ticker: str | None = None,
        status: str = "open",
        limit: int = _PAGE_SIZE,
        cursor: str | None = None,
    ) -> tuple[list[KalshiMarket], str | None]:
        """Fetch one page of markets. Returns (markets, next_cursor)."""
        params: dict = {"limit": limit, "status": status}
        if series_ticker:
            params["series_ticker"] = series_ticker
        if cursor:
            params["cursor"] = cursor

        data = self._request("GET", "/markets", params=params)
        markets = [
            KalshiMarket(
                ticker=m["ticker"],
                event_ticker=m.get("event_ticker", ""),
                title=m.get("title", ""),
                status=m.get("status", ""),
                close_time=m.get("close_time", ""),
            )
            for m in data.get("markets", [])
        ]
        # Empty cursor means no more pages
        next_cursor = data.get("cursor") or None
        return markets, next_cursor

    def get_open_markets(self, series_ticker: str, max_markets: int = 1) -> list[KalshiMarket]:
        """Open markets of a series, paginated, truncated to *max_markets*."""
        found: list[KalshiMarket] = []
        cursor = None
        while True:
            markets, cursor = self.get_markets(series_ticker=series_ticker, cursor=cursor)
            found.extend(markets)
            if not cursor or not markets or len(found) >= max_markets:
                break
            time.sleep(_PAGE_DELAY_SEC)
        return found[:max_markets]

    def get_market_quote(self, ticker: str) -> KalshiQuote | None:
        """Best YES/NO asks for a single market, in cents."""
        data = self._request("GET", f"/markets/{ticker}")
        m = data.get("market")
        if not m:
            return None
        return KalshiQuote(
            ticker=m.get("ticker", ticker),
            up_ask_cents=_price_cents(m, "yes_ask"),
            down_ask_cents=_price_cents(m, "no_ask"),
            last_price_cents=_price_cents(m, "last_price"),
        )

    # -- Orders --

    def place_order(
        self,
        ticker: str,
        side: str,
        action: str,
        count: int,
        price_cents: int,
        time_in_force: str = "good_till_canceled",
    ) -> dict:
        """
        Place a limit order.

        Args:
            side: "yes" or "no"
            action: "buy" or "sell"
            price_cents: limit price for *side*, 1-99
            time_in_force: "good_till_canceled", "immediate_or_cancel" or "fill_or_kill"
        """
        body: dict = {
            "ticker": ticker,
            "side": side,
            "action": action,
            "count": count,
            "type": "limit",
            "time_in_force": time_in_force,
        }
        body["yes_price" if side == "yes" else "no_price"] = price_cents
        return self._request("POST", "/portfolio/orders", json=body)

    def get_order(self, order_id: str) -> dict:
        """Get order status by ID."""
        return self._request("GET", f"/portfolio/orders/{order_id}")

    # -- Account --

    def get_balance_cents(self) -> int:
        """Account balance in cents."""
        data = self._request("GET", "/portfolio/balance")
        return int(data.get("balance", 0))

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http.close()
