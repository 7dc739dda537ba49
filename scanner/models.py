"""
Data models for the dual-venue monitor. Pure data, no I/O.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

# Kalshi quotes in cents; 100 means the venue treats the outcome as decided.
KALSHI_CERTAIN_CENTS = 100
# Highest price the Polymarket CLOB accepts for a buy.
POLY_PRICE_MAX = 0.99


class Side(Enum):
    UP = "UP"
    DOWN = "DOWN"

    @property
    def opposite(self) -> Side:
        return Side.DOWN if self is Side.UP else Side.UP

    @property
    def kalshi_side(self) -> str:
        """Kalshi contract side: YES pays on UP, NO pays on DOWN."""
        return "yes" if self is Side.UP else "no"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    token_id: str
    bids: tuple[PriceLevel, ...]
    asks: tuple[PriceLevel, ...]

    @property
    def best_ask(self) -> PriceLevel | None:
        return self.asks[0] if self.asks else None


@dataclass(frozen=True)
class KalshiMarket:
    """Minimal representation of a Kalshi market."""
    ticker: str
    event_ticker: str
    title: str
    status: str  # "open", "closed", "settled"
    close_time: str


@dataclass(frozen=True)
class KalshiQuote:
    """Kalshi ask prices for one market, in cents."""
    ticker: str
    up_ask_cents: float | None
    down_ask_cents: float | None
    last_price_cents: float | None = None


@dataclass(frozen=True)
class PolymarketTokens:
    """Token ids and condition id for one Polymarket up/down market."""
    slug: str
    up_token_id: str
    down_token_id: str
    condition_id: str

    def token_for(self, side: Side) -> str:
        return self.up_token_id if side is Side.UP else self.down_token_id

    def side_of(self, token_id: str) -> Side | None:
        if token_id == self.up_token_id:
            return Side.UP
        if token_id == self.down_token_id:
            return Side.DOWN
        return None


@dataclass(frozen=True)
class PolymarketQuote:
    """Polymarket best asks for one market, in probability units."""
    tokens: PolymarketTokens
    up_ask: float | None
    down_ask: float | None


def _valid_cents(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and 0 <= value <= 100


def _valid_prob(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and 0.0 <= value <= 1.0


@dataclass(frozen=True)
class MarketSnapshot:
    """
    Both venues' asks for the same market instance at one instant.
    Construct through build_snapshot(); a snapshot always carries four valid prices.
    """
    market_key: str
    kalshi_ticker: str
    kalshi_up_cents: float
    kalshi_down_cents: float
    poly_up: float
    poly_down: float
    tokens: PolymarketTokens
    sampled_at: datetime

    @property
    def kalshi_up(self) -> float:
        return self.kalshi_up_cents / 100.0

    @property
    def kalshi_down(self) -> float:
        return self.kalshi_down_cents / 100.0

    def kalshi_ask(self, side: Side) -> float:
        return self.kalshi_up if side is Side.UP else self.kalshi_down

    def kalshi_ask_cents(self, side: Side) -> float:
        return self.kalshi_up_cents if side is Side.UP else self.kalshi_down_cents

    def poly_ask(self, side: Side) -> float:
        return self.poly_up if side is Side.UP else self.poly_down

    def kalshi_certain(self, side: Side) -> bool:
        return self.kalshi_ask_cents(side) >= KALSHI_CERTAIN_CENTS


def build_snapshot(
    market_key: str,
    kalshi: KalshiQuote | None,
    polymarket: PolymarketQuote | None,
    sampled_at: datetime,
) -> MarketSnapshot | None:
    """
    Assemble a snapshot from two venue reads.
    Returns None when either read is missing or any price is non-finite or out of range.
    """
    if kalshi is None or polymarket is None:
        return None
    if not (_valid_cents(kalshi.up_ask_cents) and _valid_cents(kalshi.down_ask_cents)):
        return None
    if not (_valid_prob(polymarket.up_ask) and _valid_prob(polymarket.down_ask)):
        return None
    return MarketSnapshot(
        market_key=market_key,
        kalshi_ticker=kalshi.ticker,
        kalshi_up_cents=float(kalshi.up_ask_cents),
        kalshi_down_cents=float(kalshi.down_ask_cents),
        poly_up=float(polymarket.up_ask),
        poly_down=float(polymarket.down_ask),
        tokens=polymarket.tokens,
        sampled_at=sampled_at,
    )


@dataclass
class Position:
    """Open follow-confidence position on Polymarket."""
    side: Side
    token_id: str
    size: float
    condition_id: str
    entry_price: float | None = None  # unknown when restored from the ledger


@dataclass(frozen=True)
class ArbPosition:
    """Filled two-venue hedge for one leg."""
    leg: Side
    kalshi_side: str
    kalshi_count: int
    poly_token_id: str
    poly_size: float


@dataclass(frozen=True)
class OrderResult:
    """Uniform outcome of an order placement: an order id or an error message."""
    order_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.order_id is not None

    @classmethod
    def success(cls, order_id: str) -> OrderResult:
        return cls(order_id=order_id)

    @classmethod
    def failure(cls, error: str) -> OrderResult:
        return cls(error=error)
