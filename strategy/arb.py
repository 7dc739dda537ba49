"""
Cross-venue arbitrage on one up/down market.

Leg UP buys Kalshi YES + Polymarket DOWN; leg DOWN buys Kalshi NO + Polymarket UP.
A leg is entered when its summed asks fall in [low, high); an open leg is sold
on both venues once its sum drops below low.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum

from executor.orders import VenueGateway, is_fill_failure
from scanner.models import POLY_PRICE_MAX, ArbPosition, MarketSnapshot, OrderResult, Side
from strategy.context import ArbState, StrategyContext

logger = logging.getLogger(__name__)

FILL_RETRY_DELAY_SEC = 0.2


@dataclass(frozen=True)
class ArbBand:
    """Half-open entry band [low, high)."""
    low: float
    high: float

    def contains(self, total: float) -> bool:
        return math.isfinite(total) and self.low <= total < self.high


class ArbAction(Enum):
    ENTER = "enter"
    EXIT = "exit"


@dataclass(frozen=True)
class ArbDecision:
    action: ArbAction
    leg: Side
    leg_sum: float
    position: ArbPosition | None = None


def leg_sum(snapshot: MarketSnapshot, leg: Side) -> float:
    """Kalshi ask of *leg* plus Polymarket ask of the opposite outcome."""
    return snapshot.kalshi_ask(leg) + snapshot.poly_ask(leg.opposite)


def decide_arb(snapshot: MarketSnapshot, state: ArbState, band: ArbBand) -> ArbDecision | None:
    """
    Pure decision for one snapshot. Never mutates *state*.

    Exits are checked first. UP is checked before DOWN; when the UP sum is in
    band the DOWN leg is not considered on the same snapshot.
    """
    for leg in (Side.UP, Side.DOWN):
        position = state.positions.get(leg)
        if position is None:
            continue
        total = leg_sum(snapshot, leg)
        if math.isfinite(total) and total < band.low:
            return ArbDecision(ArbAction.EXIT, leg, total, position)

    sum_up = leg_sum(snapshot, Side.UP)
    if band.contains(sum_up):
        if state.was_attempted(Side.UP):
            return None
        return ArbDecision(ArbAction.ENTER, Side.UP, sum_up)

    sum_down = leg_sum(snapshot, Side.DOWN)
    if band.contains(sum_down) and not state.was_attempted(Side.DOWN):
        return ArbDecision(ArbAction.ENTER, Side.DOWN, sum_down)
    return None


class CrossVenueArbStrategy:
    name = "arb"

    def __init__(
        self,
        gateway: VenueGateway,
        band: ArbBand,
        price_buffer: float = 0.02,
        limit_buffer: float = 0.01,
        size: float = 5.0,
        kalshi_min: int = 5,
        poly_min: int = 5,
        dry_run: bool = False,
        retry_delay: float = FILL_RETRY_DELAY_SEC,
    ) -> None:
        self._gateway = gateway
        self._band = band
        self._price_buffer = price_buffer
        self._limit_buffer = limit_buffer
        self._size = size
        self._kalshi_min = kalshi_min
        self._poly_min = poly_min
        self._dry_run = dry_run
        self._retry_delay = retry_delay
        self._context: StrategyContext[ArbState] = StrategyContext(ArbState, self._restore)

    @classmethod
    def from_config(cls, cfg, gateway: VenueGateway) -> CrossVenueArbStrategy:
        return cls(
            gateway,
            ArbBand(cfg.arb_sum_low, cfg.arb_sum_high),
            price_buffer=cfg.arb_price_buffer,
            limit_buffer=cfg.poly_buy_limit_buffer,
            size=cfg.arb_size,
            kalshi_min=cfg.arb_kalshi_min,
            poly_min=cfg.arb_poly_min,
            dry_run=cfg.arb_dry_run,
        )

    @property
    def state(self) -> ArbState | None:
        return self._context.state

    @property
    def poly_markup(self) -> float:
        """Arb buffer plus the Polymarket limit buffer added on every buy."""
        return self._price_buffer + self._limit_buffer

    @property
    def kalshi_count(self) -> int:
        return max(self._kalshi_min, round(self._size))

    def poly_size(self, poly_price: float) -> float:
        min_usd = self._gateway.polymarket.min_usd
        floor_for_notional = math.ceil(min_usd / poly_price) if poly_price > 0 else self._poly_min
        return max(self._poly_min, self._size, floor_for_notional)

    def _restore(self, state: ArbState, snapshot: MarketSnapshot) -> None:
        """Rebuild open legs from the holdings ledger for this market."""
        held = self._gateway.store.tokens_for(snapshot.tokens.condition_id)
        for token_id, size in held.items():
            poly_side = snapshot.tokens.side_of(token_id)
            if poly_side is None:
                continue
            leg = poly_side.opposite
            state.positions[leg] = ArbPosition(
                leg=leg,
                kalshi_side=leg.kalshi_side,
                kalshi_count=self.kalshi_count,
                poly_token_id=token_id,
                poly_size=size,
            )
            state.mark_attempted(leg)
            logger.info("[Arb] Restored open %s leg from holdings: Poly x%.2f", leg.value, size)

    async def on_snapshot(self, snapshot: MarketSnapshot) -> None:
        state = self._context.for_snapshot(snapshot)
        decision = decide_arb(snapshot, state, self._band)
        if decision is None:
            return

        # State changes happen before any await so a concurrent tick sees them.
        if decision.action is ArbAction.EXIT:
            state.positions.pop(decision.leg, None)
            await self._exit(snapshot, decision)
        else:
            state.mark_attempted(decision.leg)
            await self._enter(snapshot, state, decision)

    async def _enter(self, snapshot: MarketSnapshot, state: ArbState, decision: ArbDecision) -> None:
        leg = decision.leg
        poly_side = leg.opposite
        kalshi_ask = snapshot.kalshi_ask(leg)
        poly_ask = snapshot.poly_ask(poly_side)
        kalshi_cents = round((kalshi_ask + self._price_buffer) * 100)
        # Size from the tick-rounded limit so the placed notional clears the minimum.
        poly_price = self._gateway.polymarket.limit_price(poly_ask, self.poly_markup)
        poly_size = self.poly_size(poly_price)
        kalshi_count = self.kalshi_count
        token_id = snapshot.tokens.token_for(poly_side)

        msg = (
            f"[Arb] Opportunity ({leg.value} leg): sum={decision.leg_sum:.3f} "
            f"(Kalshi {leg.value} {kalshi_ask:.2f} + Poly {poly_side.value} {poly_ask:.2f}) - "
            f"{'DRY RUN, would place' if self._dry_run else 'placing'} "
            f"Kalshi {leg.kalshi_side.upper()} @ {kalshi_cents / 100:.2f} x{kalshi_count}, "
            f"Poly {poly_side.value} @ {poly_price:.3f} x{poly_size}"
        )
        logger.info(msg)
        if self._dry_run:
            return

        kalshi_result, poly_result = await asyncio.gather(
            self._gateway.kalshi.buy(snapshot.kalshi_ticker, leg, kalshi_cents, kalshi_count),
            self._gateway.polymarket.buy(
                token_id, poly_ask, poly_size,
                markup=self.poly_markup, condition_id=snapshot.tokens.condition_id,
            ),
        )

        if not poly_result.ok:
            logger.warning("[Arb] Polymarket order failed: %s", poly_result.error)
            if is_fill_failure(poly_result.error):
                poly_result = await self._retry_poly(token_id, poly_size, snapshot.tokens.condition_id)
        if not kalshi_result.ok:
            logger.warning("[Arb] Kalshi order failed: %s", kalshi_result.error)

        if kalshi_result.ok and poly_result.ok:
            state.positions[leg] = ArbPosition(
                leg=leg,
                kalshi_side=leg.kalshi_side,
                kalshi_count=kalshi_count,
                poly_token_id=token_id,
                poly_size=poly_size,
            )
            logger.info("[Arb] %s leg filled on both venues", leg.value)
        elif kalshi_result.ok != poly_result.ok:
            logger.warning(
                "[Arb] Partial hedge on %s leg (Kalshi %s, Polymarket %s); not unwound",
                leg.value,
                "ok" if kalshi_result.ok else "failed",
                "ok" if poly_result.ok else "failed",
            )

    async def _retry_poly(self, token_id: str, size: float, condition_id: str) -> OrderResult:
        """One retry after a fill failure, repriced from the current best ask."""
        await asyncio.sleep(self._retry_delay)
        ask = await self._gateway.polymarket.best_ask(token_id)
        if ask is not None:
            price, markup = ask, self.poly_markup
        else:
            price, markup = POLY_PRICE_MAX, 0.0
        logger.info(
            "[Arb] Polymarket fill failed; retrying %.0fms later with price %.3f (ask=%s)",
            self._retry_delay * 1000, self._gateway.polymarket.limit_price(price, markup),
            f"{ask:.3f}" if ask is not None else "?",
        )
        return await self._gateway.polymarket.buy(
            token_id, price, size, markup=markup, condition_id=condition_id,
        )

    async def _exit(self, snapshot: MarketSnapshot, decision: ArbDecision) -> None:
        position = decision.position
        logger.info(
            "[Arb] Sum %.3f < %.2f; exiting %s leg: selling Kalshi %s x%d, Poly token x%s",
            decision.leg_sum, self._band.low, position.leg.value,
            position.kalshi_side, position.kalshi_count, position.poly_size,
        )
        kalshi_result, poly_result = await asyncio.gather(
            self._gateway.kalshi.sell(snapshot.kalshi_ticker, position.leg, position.kalshi_count),
            self._gateway.polymarket.sell(position.poly_token_id, position.poly_size),
        )
        if not kalshi_result.ok:
            logger.warning("[Arb] Exit Kalshi sell failed: %s", kalshi_result.error)
        if not poly_result.ok:
            # Tokens are still held; the ledger keeps them for redemption.
            logger.warning("[Arb] Exit Polymarket sell failed: %s", poly_result.error)
            return
        self._gateway.store.remove(snapshot.tokens.condition_id, position.poly_token_id)
