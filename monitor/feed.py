"""
Dual-venue price feed: polls Kalshi and Polymarket at a fixed rate, builds a
MarketSnapshot per tick and hands it to the strategy callback.

Reads for one tick run concurrently; ticks never overlap. Coroutine callbacks
are scheduled as tasks so a slow strategy never delays polling.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Union

from client.gamma import TokenCache
from client.kalshi import KalshiClient
from scanner.models import (
    KalshiQuote,
    MarketSnapshot,
    PolymarketQuote,
    build_snapshot,
)
from scanner.slots import iso_timestamp, slot_key, updown_slug, utcnow

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[MarketSnapshot], Union[None, Awaitable[None]]]
AskReader = Callable[[str], Union[float, None]]


class FeedExit(Enum):
    STOPPED = "stopped"
    ROLLOVER = "rollover"


@dataclass(frozen=True)
class FeedOptions:
    """
    ticker: pin one Kalshi market; empty means auto-discover from *series_ticker*.
    restart_on_rollover: None means on when auto-discovering, off when pinned.
    """
    ticker: str = ""
    series_ticker: str = "KXBTC15M"
    asset: str = "btc"
    interval_ms: int = 200
    restart_on_rollover: bool | None = None

    @property
    def pinned(self) -> bool:
        return bool(self.ticker)

    @property
    def restart(self) -> bool:
        if self.restart_on_rollover is None:
            return not self.pinned
        return self.restart_on_rollover and not self.pinned


def format_snapshot_line(snapshot: MarketSnapshot) -> str:
    """`[ISO] Kalshi UP 0.55 DOWN 0.46  |  Polymarket UP 0.53 DOWN 0.48`"""
    return (
        f"[{iso_timestamp(snapshot.sampled_at)}] "
        f"Kalshi UP {snapshot.kalshi_up:.2f} DOWN {snapshot.kalshi_down:.2f}  |  "
        f"Polymarket UP {snapshot.poly_up:.2f} DOWN {snapshot.poly_down:.2f}"
    )


class FeedHandle:
    """Returned by DualPriceFeed.start(); stop() ends polling, wait() yields the exit reason."""

    def __init__(self, feed: DualPriceFeed, task: asyncio.Task) -> None:
        self._feed = feed
        self._task = task

    def stop(self) -> None:
        self._feed.request_stop()

    async def wait(self) -> FeedExit:
        """Wait for the poll loop and any strategy tasks still running."""
        exit_reason = await self._task
        await self._feed.drain_callbacks()
        return exit_reason

    @property
    def done(self) -> bool:
        return self._task.done()


class DualPriceFeed:
    """
    Usage:
        feed = DualPriceFeed(kalshi, ask_reader, TokenCache(gamma_host), FeedOptions())
        await feed.prime()
        handle = feed.start(strategy.on_snapshot)
        reason = await handle.wait()
    """

    def __init__(
        self,
        kalshi: KalshiClient,
        ask_reader: AskReader,
        tokens: TokenCache,
        options: FeedOptions,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._kalshi = kalshi
        self._ask_reader = ask_reader
        self._tokens = tokens
        self._options = options
        self._clock = clock
        self._ticker: str | None = options.ticker or None
        self._slot: str | None = None
        self._stop = asyncio.Event()
        self._callback_tasks: set[asyncio.Task] = set()
        self._tick_count = 0

    @property
    def ticker(self) -> str | None:
        return self._ticker

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def request_stop(self) -> None:
        self._stop.set()

    # -- Discovery --

    def _discover_ticker(self) -> str | None:
        markets = self._kalshi.get_open_markets(self._options.series_ticker, max_markets=1)
        if not markets:
            logger.warning("No open Kalshi market in series %s", self._options.series_ticker)
            return None
        logger.info("Kalshi market discovered: %s (%s)", markets[0].ticker, markets[0].title)
        return markets[0].ticker

    async def _ensure_ticker(self) -> str | None:
        if self._ticker is None:
            try:
                self._ticker = await asyncio.to_thread(self._discover_ticker)
            except Exception as e:
                logger.warning("Kalshi discovery failed: %s", e)
        return self._ticker

    async def prime(self) -> None:
        """Resolve the Kalshi ticker and this slot's Polymarket tokens before the first tick."""
        now = self._clock()
        self._slot = slot_key(now)
        await self._ensure_ticker()
        slug = updown_slug(self._options.asset, now)
        try:
            tokens = await asyncio.to_thread(self._tokens.get, slug)
            logger.info("Polymarket tokens primed for %s (condition %s...)", slug, tokens.condition_id[:12])
        except Exception as e:
            logger.warning("Polymarket token prime failed for %s: %s", slug, e)

    # -- Venue reads --

    def _read_kalshi(self, ticker: str) -> KalshiQuote | None:
        try:
            return self._kalshi.get_market_quote(ticker)
        except Exception as e:
            logger.warning("Kalshi read failed for %s: %s", ticker, e)
            return None

    async def _read_polymarket(self, slug: str) -> PolymarketQuote | None:
        try:
            tokens = await asyncio.to_thread(self._tokens.get, slug)
        except Exception as e:
            logger.warning("Polymarket token lookup failed for %s: %s", slug, e)
            return None
        up_ask, down_ask = await asyncio.gather(
            asyncio.to_thread(self._ask_reader, tokens.up_token_id),
            asyncio.to_thread(self._ask_reader, tokens.down_token_id),
        )
        return PolymarketQuote(tokens=tokens, up_ask=up_ask, down_ask=down_ask)

    # -- Poll loop --

    def _rolled_over(self, key: str) -> bool:
        """Handle a slot change. Returns True when the feed should end for a restart."""
        previous, self._slot = self._slot, key
        if previous is None or previous == key or self._options.pinned:
            return False
        logger.info("Slot rollover %s -> %s", previous, key)
        if self._options.restart:
            return True
        self._ticker = None
        return False

    async def _tick(self, on_snapshot: SnapshotCallback) -> bool:
        """One poll. Returns False when the feed should end."""
        now = self._clock()
        key = slot_key(now)
        if self._rolled_over(key):
            return False

        ticker = await self._ensure_ticker()
        if ticker is None:
            return True
        slug = updown_slug(self._options.asset, now)

        kalshi, polymarket = await asyncio.gather(
            asyncio.to_thread(self._read_kalshi, ticker),
            self._read_polymarket(slug),
        )
        snapshot = build_snapshot(key, kalshi, polymarket, self._clock())
        if snapshot is None:
            logger.debug("Tick dropped: incomplete or invalid prices (kalshi=%s poly=%s)", kalshi, polymarket)
            return True

        self._tick_count += 1
        logger.info(format_snapshot_line(snapshot), extra={"timestamped": True})
        self._dispatch(on_snapshot, snapshot)
        return True

    def _dispatch(self, on_snapshot: SnapshotCallback, snapshot: MarketSnapshot) -> None:
        try:
            result = on_snapshot(snapshot)
        except Exception as e:
            logger.error("Strategy callback failed: %s", e, exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Strategy task failed: %s", exc, exc_info=exc)

    async def drain_callbacks(self) -> None:
        if self._callback_tasks:
            await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)

    async def _run(self, on_snapshot: SnapshotCallback) -> FeedExit:
        loop = asyncio.get_running_loop()
        interval = self._options.interval_ms / 1000.0
        while not self._stop.is_set():
            started = loop.time()
            try:
                keep_going = await self._tick(on_snapshot)
            except Exception as e:
                logger.error("Feed tick failed: %s", e, exc_info=True)
                keep_going = True
            if not keep_going:
                return FeedExit.ROLLOVER
            delay = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        return FeedExit.STOPPED

    def start(self, on_snapshot: SnapshotCallback) -> FeedHandle:
        """Begin polling on the running loop."""
        task = asyncio.create_task(self._run(on_snapshot))
        return FeedHandle(self, task)
