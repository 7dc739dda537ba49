"""
Tests for strategy/arb.py -- cross-venue arbitrage decisions and order flow.
"""

import copy
import logging
import math
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from executor.orders import PolymarketOrders, VenueGateway
from executor.tick_size import round_to_tick
from scanner.models import ArbPosition, MarketSnapshot, OrderResult, PolymarketTokens, Side
from state.holdings import PositionStore
from strategy.arb import ArbAction, ArbBand, CrossVenueArbStrategy, decide_arb, leg_sum
from strategy.context import ArbState

BAND = ArbBand(0.75, 0.92)
TOKENS = PolymarketTokens(slug="btc-updown-15m-1", up_token_id="up", down_token_id="down", condition_id="cond")
NOW = datetime(2025, 1, 1, 7, 31, tzinfo=timezone.utc)


def _snap(k_up=55, k_down=46, p_up=0.60, p_down=0.30, ticker="KXBTC15M-A") -> MarketSnapshot:
    return MarketSnapshot(
        market_key="2025-01-01_07-30",
        kalshi_ticker=ticker,
        kalshi_up_cents=k_up,
        kalshi_down_cents=k_down,
        poly_up=p_up,
        poly_down=p_down,
        tokens=TOKENS,
        sampled_at=NOW,
    )


def _gateway(tmp_path) -> VenueGateway:
    kalshi = MagicMock()
    kalshi.buy = AsyncMock(return_value=OrderResult.success("k1"))
    kalshi.sell = AsyncMock(return_value=OrderResult.success("k2"))
    poly = MagicMock()
    poly.min_usd = 1.0
    poly.limit_price.side_effect = lambda price, markup=0.0: round_to_tick(min(price + markup, 0.99))
    poly.buy = AsyncMock(return_value=OrderResult.success("p1"))
    poly.sell = AsyncMock(return_value=OrderResult.success("p2"))
    poly.best_ask = AsyncMock(return_value=None)
    return VenueGateway(kalshi=kalshi, polymarket=poly, store=PositionStore(tmp_path / "holdings.json"))


def _strategy(gateway, **kwargs) -> CrossVenueArbStrategy:
    kwargs.setdefault("retry_delay", 0.0)
    return CrossVenueArbStrategy(gateway, BAND, **kwargs)


class TestArbBand:
    def test_half_open(self):
        assert BAND.contains(0.75)
        assert BAND.contains(0.9199)
        assert not BAND.contains(0.92)
        assert not BAND.contains(0.7499)

    def test_non_finite(self):
        assert not BAND.contains(math.nan)
        assert not BAND.contains(math.inf)


class TestDecideArb:
    def test_leg_sum_pairs_opposite_outcomes(self):
        snap = _snap(k_up=55, p_down=0.30, k_down=46, p_up=0.60)
        assert leg_sum(snap, Side.UP) == pytest.approx(0.85)
        assert leg_sum(snap, Side.DOWN) == pytest.approx(1.06)

    def test_enters_up_leg(self):
        decision = decide_arb(_snap(), ArbState("T"), BAND)
        assert decision.action is ArbAction.ENTER
        assert decision.leg is Side.UP
        assert decision.leg_sum == pytest.approx(0.85)

    def test_lower_bound_enters(self):
        decision = decide_arb(_snap(k_up=50, p_down=0.25), ArbState("T"), BAND)
        assert decision is not None and decision.leg is Side.UP

    def test_above_band_no_action(self):
        assert decide_arb(_snap(k_up=70, p_down=0.30), ArbState("T"), BAND) is None

    def test_down_leg_when_up_out_of_band(self):
        decision = decide_arb(_snap(k_up=60, p_down=0.40, k_down=40, p_up=0.45), ArbState("T"), BAND)
        assert decision.leg is Side.DOWN

    def test_up_in_band_blocks_down_same_tick(self):
        state = ArbState("T")
        snap = _snap(k_up=55, p_down=0.30, k_down=50, p_up=0.30)
        assert decide_arb(snap, state, BAND).leg is Side.UP
        state.mark_attempted(Side.UP)
        assert decide_arb(snap, state, BAND) is None

    def test_attempted_leg_not_reentered(self):
        state = ArbState("T")
        state.mark_attempted(Side.UP)
        assert decide_arb(_snap(), state, BAND) is None

    def test_does_not_mutate_state(self):
        state = ArbState("T")
        before = copy.deepcopy(state)
        decide_arb(_snap(), state, BAND)
        assert state == before

    def test_exit_checked_first(self):
        state = ArbState("T")
        position = ArbPosition(Side.UP, "yes", 5, "down", 5.0)
        state.positions[Side.UP] = position
        decision = decide_arb(_snap(k_up=40, p_down=0.30), state, BAND)
        assert decision.action is ArbAction.EXIT
        assert decision.position is position


class TestCrossVenueArbStrategy:
    @pytest.mark.asyncio
    async def test_enters_once_with_buffered_prices(self, tmp_path):
        gateway = _gateway(tmp_path)
        strategy = _strategy(gateway)

        await strategy.on_snapshot(_snap())
        await strategy.on_snapshot(_snap())

        gateway.kalshi.buy.assert_awaited_once_with("KXBTC15M-A", Side.UP, 57, 5)
        gateway.polymarket.buy.assert_awaited_once()
        buy = gateway.polymarket.buy.await_args
        assert buy.args == ("down", 0.30, 5)
        assert buy.kwargs["markup"] == pytest.approx(0.03)
        assert buy.kwargs["condition_id"] == "cond"
        assert Side.UP in strategy.state.positions
        assert strategy.state.positions[Side.UP].poly_token_id == "down"

    def test_poly_size_raised_to_min_notional(self, tmp_path):
        gateway = _gateway(tmp_path)
        gateway.polymarket.min_usd = 10.0
        strategy = _strategy(gateway)
        assert strategy.poly_size(0.32) == 32

    @pytest.mark.asyncio
    async def test_fill_failure_retried_at_current_ask(self, tmp_path):
        gateway = _gateway(tmp_path)
        gateway.polymarket.buy.side_effect = [
            OrderResult.failure("order couldn't be fully filled"),
            OrderResult.success("p2"),
        ]
        gateway.polymarket.best_ask.return_value = 0.33
        strategy = _strategy(gateway)

        await strategy.on_snapshot(_snap())

        assert gateway.polymarket.buy.await_count == 2
        retry = gateway.polymarket.buy.await_args_list[1]
        assert retry.args == ("down", 0.33, 5)
        assert retry.kwargs["markup"] == pytest.approx(0.03)
        assert Side.UP in strategy.state.positions

    @pytest.mark.asyncio
    async def test_retry_without_book_uses_cap(self, tmp_path):
        gateway = _gateway(tmp_path)
        gateway.polymarket.buy.side_effect = [
            OrderResult.failure("FOK order not filled"),
            OrderResult.failure("FOK order not filled"),
        ]
        strategy = _strategy(gateway)

        await strategy.on_snapshot(_snap())

        retry = gateway.polymarket.buy.await_args_list[1]
        assert retry.args[1] == 0.99
        assert retry.kwargs["markup"] == 0.0
        assert strategy.state.positions == {}

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, tmp_path):
        gateway = _gateway(tmp_path)
        gateway.polymarket.buy.return_value = OrderResult.failure("insufficient balance")
        strategy = _strategy(gateway)
        await strategy.on_snapshot(_snap())
        assert gateway.polymarket.buy.await_count == 1

    @pytest.mark.asyncio
    async def test_partial_hedge_logged_not_recorded(self, tmp_path, caplog):
        gateway = _gateway(tmp_path)
        gateway.kalshi.buy.return_value = OrderResult.failure("market closed")
        strategy = _strategy(gateway)

        with caplog.at_level(logging.WARNING, logger="strategy.arb"):
            await strategy.on_snapshot(_snap())

        assert strategy.state.positions == {}
        assert strategy.state.was_attempted(Side.UP)
        assert "Partial hedge" in caplog.text

    @pytest.mark.asyncio
    async def test_exit_sells_both_venues_and_clears_ledger(self, tmp_path):
        gateway = _gateway(tmp_path)
        strategy = _strategy(gateway)
        await strategy.on_snapshot(_snap())
        gateway.store.add("cond", "down", 5)

        await strategy.on_snapshot(_snap(k_up=40, p_down=0.30))

        gateway.kalshi.sell.assert_awaited_once_with("KXBTC15M-A", Side.UP, 5)
        gateway.polymarket.sell.assert_awaited_once_with("down", 5)
        assert gateway.store.tokens_for("cond") == {}
        assert strategy.state.positions == {}

    @pytest.mark.asyncio
    async def test_exit_happens_once(self, tmp_path):
        gateway = _gateway(tmp_path)
        strategy = _strategy(gateway)
        await strategy.on_snapshot(_snap())
        await strategy.on_snapshot(_snap(k_up=40))
        await strategy.on_snapshot(_snap(k_up=40))
        assert gateway.kalshi.sell.await_count == 1

    @pytest.mark.asyncio
    async def test_dry_run_logs_only(self, tmp_path, caplog):
        gateway = _gateway(tmp_path)
        strategy = _strategy(gateway, dry_run=True)

        with caplog.at_level(logging.INFO, logger="strategy.arb"):
            await strategy.on_snapshot(_snap())
            await strategy.on_snapshot(_snap())

        gateway.kalshi.buy.assert_not_awaited()
        gateway.polymarket.buy.assert_not_awaited()
        assert caplog.text.count("DRY RUN, would place") == 1

    @pytest.mark.asyncio
    async def test_restores_open_leg_from_ledger(self, tmp_path):
        gateway = _gateway(tmp_path)
        gateway.store.add("cond", "down", 7.5)
        strategy = _strategy(gateway)

        await strategy.on_snapshot(_snap(k_up=40, p_down=0.30))

        gateway.kalshi.buy.assert_not_awaited()
        gateway.kalshi.sell.assert_awaited_once_with("KXBTC15M-A", Side.UP, 5)
        gateway.polymarket.sell.assert_awaited_once_with("down", 7.5)

    @pytest.mark.asyncio
    async def test_new_ticker_resets_state(self, tmp_path):
        gateway = _gateway(tmp_path)
        strategy = _strategy(gateway)
        await strategy.on_snapshot(_snap(ticker="KXBTC15M-A"))
        await strategy.on_snapshot(_snap(ticker="KXBTC15M-B"))
        assert gateway.kalshi.buy.await_count == 2
        assert strategy.state.ticker == "KXBTC15M-B"

    @pytest.mark.asyncio
    async def test_failed_poly_exit_keeps_ledger(self, tmp_path):
        gateway = _gateway(tmp_path)
        gateway.polymarket.sell.return_value = OrderResult.failure("no orders found to match")
        strategy = _strategy(gateway)
        await strategy.on_snapshot(_snap())
        gateway.store.add("cond", "down", 5)

        await strategy.on_snapshot(_snap(k_up=40, p_down=0.30))

        gateway.polymarket.sell.assert_awaited_once()
        assert gateway.store.tokens_for("cond") == {"down": 5.0}

    def test_markup_stacks_limit_buffer(self, tmp_path):
        strategy = _strategy(_gateway(tmp_path), price_buffer=0.02, limit_buffer=0.01)
        assert strategy.poly_markup == pytest.approx(0.03)

    @pytest.mark.asyncio
    async def test_size_covers_min_notional_after_tick_rounding(self, tmp_path):
        store = PositionStore(tmp_path / "holdings.json")
        kalshi = MagicMock()
        kalshi.buy = AsyncMock(return_value=OrderResult.success("k1"))
        poly = PolymarketOrders(None, store=store, min_usd=1.0, dry_run=True)
        strategy = _strategy(VenueGateway(kalshi=kalshi, polymarket=poly, store=store))

        # 0.123 + 0.03 rounds down to a 0.15 limit
        await strategy.on_snapshot(_snap(k_up=70, p_down=0.123))

        position = strategy.state.positions[Side.UP]
        assert position.poly_size == 7
        assert 0.15 * position.poly_size >= 1.0
