"""
Order coordinator for both venues. Every placement returns an OrderResult;
venue exceptions never escape to the strategies.

Blocking SDK calls run via asyncio.to_thread so the event loop keeps polling.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass

from client import clob
from client.clob import is_fill_failure
from client.kalshi import KalshiClient, clamp_price_cents
from executor.tick_size import round_to_tick
from py_clob_client.clob_types import OrderType
from scanner.models import POLY_PRICE_MAX, OrderResult, Side
from state.holdings import PositionStore

logger = logging.getLogger(__name__)

__all__ = [
    "DRY_RUN_ORDER_ID",
    "FULFILMENT_CHECK_SEC",
    "KalshiOrders",
    "PolymarketOrders",
    "VenueGateway",
    "is_fill_failure",
]

DRY_RUN_ORDER_ID = "dry-run"
FULFILMENT_CHECK_SEC = 0.2
# Kalshi exits sell at the floor price so IOC matches any resting bid.
KALSHI_EXIT_PRICE_CENTS = 1


def _error_text(exc: Exception) -> str:
    """Exception text including the CLOB error payload when present."""
    msg = str(exc)
    detail = getattr(exc, "error_msg", None)
    if detail and str(detail) not in msg:
        msg = f"{msg} {detail}"
    return msg


class _FulfilmentChecks:
    """Fire-and-forget order status lookups. Keeps task references alive."""

    def __init__(self, delay: float = FULFILMENT_CHECK_SEC) -> None:
        self._delay = delay
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, coro_fn, order_id: str) -> None:
        task = asyncio.create_task(self._run(coro_fn, order_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, coro_fn, order_id: str) -> None:
        await asyncio.sleep(self._delay)
        try:
            await coro_fn(order_id)
        except Exception as e:
            logger.info("Order %s not found (may be filled or cancelled): %s", order_id, e)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class KalshiOrders:
    """Kalshi limit buys (GTC) and floor-price IOC sells."""

    def __init__(
        self,
        client: KalshiClient | None,
        dry_run: bool = False,
        fulfilment_delay: float = FULFILMENT_CHECK_SEC,
    ) -> None:
        self._client = client
        self._dry_run = dry_run
        self._checks = _FulfilmentChecks(fulfilment_delay)

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def buy(self, ticker: str, side: Side, price_cents: float, count: int) -> OrderResult:
        price = clamp_price_cents(price_cents)
        return await self._place(ticker, side, "buy", count, price, "good_till_canceled")

    async def sell(self, ticker: str, side: Side, count: int) -> OrderResult:
        return await self._place(
            ticker, side, "sell", count, KALSHI_EXIT_PRICE_CENTS, "immediate_or_cancel",
        )

    async def _place(
        self, ticker: str, side: Side, action: str, count: int, price_cents: int, tif: str,
    ) -> OrderResult:
        desc = f"{action} {side.kalshi_side.upper()} x{count} @ {price_cents}c on {ticker} ({tif})"
        if self._dry_run:
            logger.info("[DRY RUN] Kalshi would %s", desc)
            return OrderResult.success(DRY_RUN_ORDER_ID)
        if self._client is None:
            return OrderResult.failure("Kalshi client not configured")
        if count <= 0:
            return OrderResult.failure("Kalshi order count must be positive")

        try:
            resp = await asyncio.to_thread(
                self._client.place_order, ticker, side.kalshi_side, action, count, price_cents, tif,
            )
        except Exception as e:
            logger.error("Kalshi %s failed: %s", desc, e)
            return OrderResult.failure(str(e))

        order = resp.get("order") or {}
        order_id = order.get("order_id")
        if not order_id:
            msg = resp.get("error") or "No order ID in response"
            logger.error("Kalshi %s failed: %s", desc, msg)
            return OrderResult.failure(str(msg))

        logger.info("Kalshi order placed: %s %s", order_id, desc)
        self._checks.schedule(self._check_fulfilment, order_id)
        return OrderResult.success(str(order_id))

    async def _check_fulfilment(self, order_id: str) -> None:
        resp = await asyncio.to_thread(self._client.get_order, order_id)
        order = resp.get("order") or {}
        status = order.get("status", "?")
        remaining = order.get("remaining_count")
        fulfilled = status == "executed" or remaining == 0
        logger.info(
            "[Kalshi order] %s orderId=%s status=%s remaining=%s",
            "Fulfilled" if fulfilled else "Not fulfilled", order_id, status, remaining,
        )

    async def drain(self) -> None:
        await self._checks.drain()


class PolymarketOrders:
    """Polymarket GTC limit buys, FAK market sells, book and balance reads."""

    def __init__(
        self,
        client,
        store: PositionStore | None = None,
        tick_size: str = "0.01",
        neg_risk: bool = False,
        min_usd: float = 1.0,
        dry_run: bool = False,
        fulfilment_delay: float = FULFILMENT_CHECK_SEC,
    ) -> None:
        self._client = client
        self._store = store
        self._tick_size = tick_size
        self._neg_risk = neg_risk
        self._min_usd = min_usd if min_usd > 0 else 1.0
        self._dry_run = dry_run
        self._checks = _FulfilmentChecks(fulfilment_delay)

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def min_usd(self) -> float:
        return self._min_usd

    def limit_price(self, price: float, markup: float = 0.0) -> float:
        """Observed price plus markup, capped at the CLOB maximum and rounded to tick."""
        return round_to_tick(min(price + markup, POLY_PRICE_MAX), self._tick_size)

    async def buy(
        self,
        token_id: str,
        price: float,
        size: float,
        markup: float = 0.0,
        condition_id: str | None = None,
    ) -> OrderResult:
        """
        GTC limit buy at min(price + markup, 0.99). A confirmed buy is recorded in
        the holdings ledger when *condition_id* is given.
        """
        limit = self.limit_price(price, markup)
        notional = limit * size
        if notional < self._min_usd:
            msg = (
                f"Polymarket order notional ${notional:.2f} below min ${self._min_usd:g}. "
                f"Use size >= {math.ceil(self._min_usd / limit) if limit > 0 else '?'}"
            )
            logger.error(msg)
            return OrderResult.failure(msg)

        desc = f"token={token_id[:12]}... limitPrice={limit} size={size} notional=${notional:.2f}"
        if self._dry_run:
            logger.info("[DRY RUN] Polymarket would buy %s", desc)
            return OrderResult.success(DRY_RUN_ORDER_ID)
        if self._client is None:
            return OrderResult.failure("Polymarket client not configured")

        try:
            signed = await asyncio.to_thread(
                clob.create_limit_buy, self._client, token_id, limit, size,
                self._tick_size, self._neg_risk,
            )
            resp = await asyncio.to_thread(clob.post_order, self._client, signed, OrderType.GTC)
        except Exception as e:
            msg = _error_text(e)
            logger.error("Polymarket limit buy failed: %s", msg)
            return OrderResult.failure(msg)

        result = self._result_from_response(resp)
        if not result.ok:
            logger.error("Polymarket limit buy failed: %s", result.error)
            return result

        logger.info("Polymarket limit buy placed: %s %s", result.order_id, desc)
        if condition_id and self._store is not None:
            self._store.add(condition_id, token_id, size)
        self._checks.schedule(self._check_fulfilment, result.order_id)
        return result

    async def sell(self, token_id: str, size: float) -> OrderResult:
        """FAK market sell of *size* shares."""
        if size <= 0:
            return OrderResult.failure("Sell size must be positive")

        desc = f"token={token_id[:12]}... size={size}"
        if self._dry_run:
            logger.info("[DRY RUN] Polymarket would sell %s", desc)
            return OrderResult.success(DRY_RUN_ORDER_ID)
        if self._client is None:
            return OrderResult.failure("Polymarket client not configured")

        try:
            signed = await asyncio.to_thread(
                clob.create_market_sell, self._client, token_id, size,
                self._tick_size, self._neg_risk,
            )
            resp = await asyncio.to_thread(clob.post_order, self._client, signed, OrderType.FAK)
        except Exception as e:
            msg = _error_text(e)
            logger.error("Polymarket FAK sell failed: %s", msg)
            return OrderResult.failure(msg)

        result = self._result_from_response(resp)
        if not result.ok:
            logger.error("Polymarket FAK sell failed: %s", result.error)
            return result

        logger.info("Polymarket FAK sell placed: %s %s", result.order_id, desc)
        self._checks.schedule(self._check_fulfilment, result.order_id)
        return result

    @staticmethod
    def _result_from_response(resp: dict | None) -> OrderResult:
        resp = resp or {}
        order_id = resp.get("orderID") or resp.get("orderId")
        error = resp.get("error") or resp.get("errorMsg")
        if error or not order_id:
            return OrderResult.failure(str(error or "No order ID in response"))
        return OrderResult.success(str(order_id))

    async def _check_fulfilment(self, order_id: str) -> None:
        order = await asyncio.to_thread(clob.get_order, self._client, order_id)
        if not order:
            logger.info("[Polymarket order] Not found (may be filled or cancelled): orderId=%s", order_id)
            return
        original = float(order.get("original_size") or 0)
        matched = float(order.get("size_matched") or 0)
        fulfilled = original > 0 and matched >= original
        logger.info(
            "[Polymarket order] %s orderId=%s status=%s matched=%s original=%s",
            "Fulfilled" if fulfilled else "Not fulfilled",
            order_id, order.get("status", "?"), matched, original,
        )

    async def best_ask(self, token_id: str) -> float | None:
        if self._client is None:
            return None
        return await asyncio.to_thread(clob.get_best_ask, self._client, token_id)

    async def collateral_balance(self) -> float | None:
        """USDC balance in dollars, None when unavailable."""
        if self._client is None:
            return None
        try:
            return await asyncio.to_thread(clob.get_collateral_balance_usd, self._client)
        except Exception as e:
            logger.warning("Polymarket balance fetch failed: %s", e)
            return None

    async def token_balance(self, token_id: str) -> float:
        """Held shares of *token_id*; 0.0 when unavailable."""
        if self._client is None:
            return 0.0
        try:
            return await asyncio.to_thread(clob.get_token_balance, self._client, token_id)
        except Exception as e:
            logger.warning("Token balance fetch failed for %s...: %s", token_id[:12], e)
            return 0.0

    async def drain(self) -> None:
        await self._checks.drain()


@dataclass
class VenueGateway:
    """Everything a strategy needs to trade: both order families plus the ledger."""
    kalshi: KalshiOrders
    polymarket: PolymarketOrders
    store: PositionStore

    async def drain(self) -> None:
        """Wait for outstanding fulfilment checks."""
        await asyncio.gather(self.kalshi.drain(), self.polymarket.drain())
