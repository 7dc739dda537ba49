"""
Follow-confidence: once Kalshi prices a side at 1.00, buy the same side on
Polymarket while it still trades in [poly_buy_min, 0.99]. One buy/sell cycle
per market; exit when the held side falls below the sell threshold.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Awaitable, Callable

from executor.orders import VenueGateway, is_fill_failure
from executor.tick_size import floor_to
from scanner.models import POLY_PRICE_MAX, MarketSnapshot, OrderResult, Position, Side
from scanner.slots import minutes_since_slot_start, seconds_until, slot_key
from strategy.context import FollowState, StrategyContext

logger = logging.getLogger(__name__)

FILL_RETRY_DELAY_SEC = 0.1
FILL_RETRY_MARKUP = 0.01
BALANCE_FETCH_DELAY_SEC = 1.5
SELL_MAX_ATTEMPTS = 20
SELL_RETRY_DELAY_SEC = 1.0
SELL_SAFETY_MARGIN = 0.02
MIN_SHARES = 0.01
MINUTES_PAST_QUARTER_USE_BALANCE = 5


class BalanceCache:
    """
    Collateral balance fetched once per quarter, MINUTES_PAST_QUARTER_USE_BALANCE
    minutes into it (immediately when already past). The buy path only reads the cache.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[float | None]],
        minutes_past: float = MINUTES_PAST_QUARTER_USE_BALANCE,
    ) -> None:
        self._fetch = fetch
        self._minutes_past = minutes_past
        self._slot: str | None = None
        self._value: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def value(self) -> float | None:
        return self._value

    def ensure_scheduled(self, now: datetime) -> None:
        key = slot_key(now)
        if key == self._slot:
            return
        self.cancel()
        self._slot = key
        self._value = None
        delay = seconds_until(now, self._minutes_past)
        if delay > 0:
            logger.info(
                "[Follow] Scheduling balance fetch in %.1fm (at %dm past quarter)",
                delay / 60, self._minutes_past,
            )
        self._task = asyncio.create_task(self._fetch_after(delay, key))

    async def _fetch_after(self, delay: float, key: str) -> None:
        await asyncio.sleep(delay)
        balance = await self._fetch()
        if balance is None or key != self._slot:
            return
        self._value = balance
        logger.info("[Follow] Fetched balance $%.2f (cached for buy size)", balance)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class FollowConfidenceStrategy:
    name = "follow"

    def __init__(
        self,
        gateway: VenueGateway,
        buy_min: float = 0.80,
        sell_below: float = 0.70,
        range_buffer: float = 0.15,
        size: int = 5,
        limit_buffer: float = 0.01,
        retry_delay: float = FILL_RETRY_DELAY_SEC,
        balance_delay: float = BALANCE_FETCH_DELAY_SEC,
        sell_attempts: int = SELL_MAX_ATTEMPTS,
        sell_retry_delay: float = SELL_RETRY_DELAY_SEC,
    ) -> None:
        self._gateway = gateway
        self._buy_min = buy_min
        self._sell_below = sell_below
        self._range_buffer = range_buffer
        self._size = size
        self._limit_buffer = limit_buffer
        self._retry_delay = retry_delay
        self._balance_delay = balance_delay
        self._sell_attempts = sell_attempts
        self._sell_retry_delay = sell_retry_delay
        self._busy = False
        self._context: StrategyContext[FollowState] = StrategyContext(FollowState, self._restore)
        self.balance = BalanceCache(gateway.polymarket.collateral_balance)

    @classmethod
    def from_config(cls, cfg, gateway: VenueGateway) -> FollowConfidenceStrategy:
        return cls(
            gateway,
            buy_min=cfg.poly_buy_min,
            sell_below=cfg.poly_sell_below,
            range_buffer=cfg.poly_sell_range_buffer,
            size=cfg.follow_size,
            limit_buffer=cfg.poly_buy_limit_buffer,
        )

    @property
    def state(self) -> FollowState | None:
        return self._context.state

    @property
    def busy(self) -> bool:
        return self._busy

    def exit_threshold(self, snapshot: MarketSnapshot, side: Side) -> float:
        """Sell threshold for a held side; widened by the range buffer while Kalshi is at 1.00."""
        if snapshot.kalshi_certain(side):
            return self._sell_below - self._range_buffer
        return self._sell_below

    def buy_size(self, now: datetime) -> int:
        balance = self.balance.value
        if (
            minutes_since_slot_start(now) >= MINUTES_PAST_QUARTER_USE_BALANCE
            and balance is not None
            and balance >= 1
        ):
            return max(1, math.floor(balance))
        return self._size

    def _restore(self, state: FollowState, snapshot: MarketSnapshot) -> None:
        held = self._gateway.store.tokens_for(snapshot.tokens.condition_id)
        for token_id, size in held.items():
            side = snapshot.tokens.side_of(token_id)
            if side is None:
                continue
            state.position = Position(side, token_id, size, snapshot.tokens.condition_id)
            state.entry_side = side
            state.seen = True
            logger.info("[Follow] Restored %s position x%.2f from holdings", side.value, size)
            return

    def close(self) -> None:
        self.balance.cancel()

    async def on_snapshot(self, snapshot: MarketSnapshot) -> None:
        # Ticks arriving while a trade is in flight are dropped, not queued.
        if self._busy:
            return
        self._busy = True
        try:
            await self._evaluate(snapshot)
        finally:
            self._busy = False

    async def _evaluate(self, snapshot: MarketSnapshot) -> None:
        state = self._context.for_snapshot(snapshot)
        self.balance.ensure_scheduled(snapshot.sampled_at)

        if state.position is not None:
            await self._maybe_exit(state, snapshot)
            return

        if not state.seen:
            state.seen = True
            if snapshot.kalshi_certain(Side.UP) or snapshot.kalshi_certain(Side.DOWN):
                state.skipped = True
                logger.info(
                    "[Follow] Skip market %s: initial Kalshi UP %.2f DOWN %.2f (either already 1.00)",
                    state.ticker, snapshot.kalshi_up, snapshot.kalshi_down,
                )
        if state.skipped:
            return

        state.seen_certain_up = state.seen_certain_up or snapshot.kalshi_certain(Side.UP)
        state.seen_certain_down = state.seen_certain_down or snapshot.kalshi_certain(Side.DOWN)

        if state.cycle_done:
            return

        for side in (Side.UP, Side.DOWN):
            ask = snapshot.poly_ask(side)
            if state.seen_certain(side) and self._buy_min <= ask <= POLY_PRICE_MAX:
                await self._enter(state, snapshot, side)
                return

    async def _enter(self, state: FollowState, snapshot: MarketSnapshot, side: Side) -> None:
        size = self.buy_size(snapshot.sampled_at)
        ask = snapshot.poly_ask(side)
        token_id = snapshot.tokens.token_for(side)
        condition_id = snapshot.tokens.condition_id
        logger.info(
            "[Follow] Entry %s: Kalshi %s %.2f Poly %s %.2f; buy Poly %s x%d",
            side.value, side.value, snapshot.kalshi_ask(side), side.value, ask, side.value, size,
        )
        if self._gateway.polymarket.dry_run:
            # No position is held, so there is nothing to sell later this market.
            logger.info("[Follow] DRY RUN: no order placed for %s", side.value)
            state.cycle_done = True
            return

        result = await self._buy_with_retry(token_id, ask, size, condition_id)
        if not result.ok:
            logger.warning("[Follow] Buy %s failed (will retry next tick): %s", side.value, result.error)
            return

        state.position = Position(side, token_id, float(size), condition_id, entry_price=ask)
        state.entry_side = side
        await self._reconcile_size(state)

    async def _buy_with_retry(self, token_id: str, ask: float, size: float, condition_id: str) -> OrderResult:
        poly = self._gateway.polymarket
        result = await poly.buy(token_id, ask, size, markup=self._limit_buffer, condition_id=condition_id)
        if result.ok or not is_fill_failure(result.error):
            return result

        await asyncio.sleep(self._retry_delay)
        current = await poly.best_ask(token_id)
        retry_price = min(POLY_PRICE_MAX, current + FILL_RETRY_MARKUP) if current is not None else POLY_PRICE_MAX
        logger.info(
            "[Follow] Fill failed; retry @ %.3f (ask=%s)",
            retry_price, f"{current:.3f}" if current is not None else "?",
        )
        return await poly.buy(token_id, retry_price, size, markup=self._limit_buffer, condition_id=condition_id)

    async def _reconcile_size(self, state: FollowState) -> None:
        """After settlement, sell size follows the on-venue token balance."""
        await asyncio.sleep(self._balance_delay)
        position = state.position
        if position is None:
            return
        balance = await self._gateway.polymarket.token_balance(position.token_id)
        sell_size = floor_to(balance)
        logger.info(
            "[Follow] After buy, token balance %.4f shares -> will sell %s",
            balance, f"{sell_size:.2f}" if sell_size >= MIN_SHARES else "(stored)",
        )
        if sell_size >= MIN_SHARES:
            position.size = sell_size
            self._gateway.store.set(position.condition_id, position.token_id, sell_size)

    async def _maybe_exit(self, state: FollowState, snapshot: MarketSnapshot) -> None:
        position = state.position
        price = snapshot.poly_ask(position.side)
        threshold = self.exit_threshold(snapshot, position.side)
        if price >= threshold:
            return

        poly = self._gateway.polymarket
        for attempt in range(1, self._sell_attempts + 1):
            balance = await poly.token_balance(position.token_id)
            if balance >= MIN_SHARES:
                size = floor_to(balance)
            else:
                size = floor_to(position.size - SELL_SAFETY_MARGIN)
                if balance == 0 and attempt == 1:
                    logger.warning("[Follow] Token balance 0; using conservative sell size %.2f", size)

            logger.info(
                "[Follow] Exit: %s price %.2f < %.2f%s; selling %.2f (balance %.4f) attempt %d/%d",
                position.side.value, price, threshold,
                " (Kalshi at 1.00, buffer applied)" if snapshot.kalshi_certain(position.side) else "",
                size, balance, attempt, self._sell_attempts,
            )
            if size < MIN_SHARES:
                logger.warning("[Follow] Sell skipped: balance and stored size < %.2f", MIN_SHARES)
                break

            result = await poly.sell(position.token_id, size)
            if result.ok:
                logger.info("[Follow] Sell successful: %.2f shares (one cycle done for this market)", size)
                break

            logger.warning("[Follow] Sell failed (attempt %d): %s", attempt, result.error)
            if attempt < self._sell_attempts:
                await asyncio.sleep(self._sell_retry_delay)
            else:
                logger.error("[Follow] Clearing position after %d sell attempts", self._sell_attempts)

        self._finish_cycle(state, position)

    def _finish_cycle(self, state: FollowState, position: Position) -> None:
        state.position = None
        state.cycle_done = True
        self._gateway.store.clear(position.condition_id)
