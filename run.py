#!/usr/bin/env python3
"""
Kalshi x Polymarket 15-minute up/down monitor.

Pipeline:
  1. Validate credentials, take the single-instance lock
  2. Balance gate (both venues above MIN_BALANCE_USD)
  3. Poll both venues every MONITOR_INTERVAL_MS and feed snapshots to a strategy
  4. On the quarter-hour rollover rebuild all per-slot state and continue

Usage:
  python run.py --strategy arb            # cross-venue arbitrage
  python run.py --strategy follow         # follow Kalshi 1.00 signal on Polymarket
  python run.py --dry-run                 # log intended orders, never transmit
  python run.py --ticker KXBTC15M-...     # pin one Kalshi market (no rollover restart)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from functools import partial
from pathlib import Path

from client.auth import build_clob_client, build_public_clob_client
from client.clob import get_best_ask, get_collateral_balance_usd
from client.gamma import TokenCache
from client.kalshi import KalshiClient
from client.kalshi_auth import KalshiAuth
from config import Config, ConfigError, load_config, polymarket_configured, validate_credentials
from executor.orders import KalshiOrders, PolymarketOrders, VenueGateway
from monitor.feed import DualPriceFeed, FeedExit, FeedOptions
from monitor.logger import setup_logging
from state.holdings import PositionStore
from state.lock import LockError, ProcessLock
from strategy.arb import CrossVenueArbStrategy
from strategy.follow import FollowConfidenceStrategy

logger = logging.getLogger(__name__)

STRATEGIES = {
    "arb": CrossVenueArbStrategy,
    "follow": FollowConfidenceStrategy,
}


class BalanceTooLow(Exception):
    """Raised by the startup balance gate when trading should not start."""
    pass


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kalshi x Polymarket up/down monitor")
    parser.add_argument("--strategy", choices=sorted(STRATEGIES), default="arb", help="Strategy to run (default: arb)")
    parser.add_argument("--ticker", type=str, default=None, help="Pin a Kalshi market ticker instead of auto-discovery")
    parser.add_argument("--interval-ms", type=int, default=None, help="Poll interval in milliseconds (default: MONITOR_INTERVAL_MS)")
    parser.add_argument("--no-restart", action="store_true", help="Keep running across slot rollovers instead of rebuilding state")
    parser.add_argument("--dry-run", action="store_true", help="Log intended orders on both venues, never transmit")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    return parser.parse_args(argv)


def apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    """CLI flags win over environment settings."""
    update: dict = {}
    if args.ticker:
        update["monitor_ticker"] = args.ticker
    if args.interval_ms is not None:
        update["monitor_interval_ms"] = args.interval_ms
    if args.no_restart:
        update["monitor_restart_on_rollover"] = False
    if args.dry_run:
        update.update(
            kalshi_dry_run=True,
            polymarket_dry_run=True,
            arb_dry_run=True,
            follow_dry_run=True,
        )
    return cfg.model_copy(update=update) if update else cfg


def check_balances(kalshi_cents: int | None, poly_usd: float | None, cfg: Config) -> None:
    """
    Both venues must hold at least MIN_BALANCE_USD (Polymarket only when configured).
    Raises BalanceTooLow when halting is enabled, otherwise logs a warning.
    """
    min_cents = round(cfg.min_balance_usd * 100)
    kalshi_ok = kalshi_cents is not None and kalshi_cents >= min_cents
    poly_ok = poly_usd is None or poly_usd >= cfg.min_balance_usd
    if kalshi_ok and poly_ok:
        logger.info(
            "[Balance] Kalshi $%.2f, Polymarket %s",
            kalshi_cents / 100, f"${poly_usd:.2f}" if poly_usd is not None else "(not configured)",
        )
        return

    kalshi_str = f"Kalshi ${kalshi_cents / 100:.2f}" if kalshi_cents is not None else "Kalshi (unavailable)"
    poly_str = f"Polymarket ${poly_usd:.2f}" if poly_usd is not None else "Polymarket (not configured)"
    msg = f"[Balance] Below minimum ${cfg.min_balance_usd:g}. {kalshi_str}, {poly_str}."
    if cfg.halt_on_low_balance:
        raise BalanceTooLow(msg)
    logger.warning("%s Continuing (HALT_ON_LOW_BALANCE=false).", msg)


def fetch_balances(kalshi: KalshiClient, poly_client, cfg: Config) -> tuple[int | None, float | None]:
    try:
        kalshi_cents = kalshi.get_balance_cents()
    except Exception as e:
        logger.warning("Kalshi balance fetch failed: %s", e)
        kalshi_cents = None
    poly_usd = None
    if poly_client is not None and polymarket_configured(cfg):
        try:
            poly_usd = get_collateral_balance_usd(poly_client)
        except Exception as e:
            logger.warning("Polymarket balance fetch failed: %s", e)
            poly_usd = 0.0
    return kalshi_cents, poly_usd


def build_gateway(cfg: Config, strategy: str, kalshi: KalshiClient, poly_client, store: PositionStore) -> VenueGateway:
    poly_dry_run = cfg.polymarket_dry_run or (strategy == "follow" and cfg.follow_dry_run)
    return VenueGateway(
        kalshi=KalshiOrders(kalshi, dry_run=cfg.kalshi_dry_run),
        polymarket=PolymarketOrders(
            poly_client if polymarket_configured(cfg) else None,
            store=store,
            tick_size=cfg.polymarket_tick_size,
            neg_risk=cfg.polymarket_neg_risk,
            min_usd=cfg.polymarket_min_usd,
            dry_run=poly_dry_run,
        ),
        store=store,
    )


def feed_options(cfg: Config) -> FeedOptions:
    return FeedOptions(
        ticker=cfg.monitor_ticker,
        series_ticker=cfg.kalshi_series_ticker,
        asset=cfg.polymarket_asset,
        interval_ms=cfg.monitor_interval_ms,
        restart_on_rollover=cfg.monitor_restart_on_rollover,
    )


async def run_monitor(
    cfg: Config,
    strategy_name: str,
    kalshi: KalshiClient,
    read_client,
    gateway: VenueGateway,
) -> None:
    """
    Supervisor loop: one feed + strategy per slot. A rollover exit rebuilds both;
    a stop request (signal) ends the loop.
    """
    loop = asyncio.get_running_loop()
    options = feed_options(cfg)
    shutdown = asyncio.Event()
    current: dict = {}

    def handle_signal(signum: int) -> None:
        logger.info("Received %s, stopping after the current tick", signal.Signals(signum).name)
        shutdown.set()
        handle = current.get("handle")
        if handle is not None:
            handle.stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle_signal, signum)
        except (NotImplementedError, RuntimeError):
            pass

    logger.info(
        "Starting %s monitor (poll every %dms, %s%s)",
        strategy_name, options.interval_ms,
        f"ticker={options.ticker}" if options.pinned else f"first open {options.series_ticker} market",
        ", rebuild state at :00/:15/:30/:45" if options.restart else "",
    )

    while not shutdown.is_set():
        strategy = STRATEGIES[strategy_name].from_config(cfg, gateway)
        feed = DualPriceFeed(kalshi, partial(get_best_ask, read_client), TokenCache(cfg.gamma_host), options)
        await feed.prime()
        handle = feed.start(strategy.on_snapshot)
        current["handle"] = handle
        reason = await handle.wait()
        current.pop("handle", None)
        if hasattr(strategy, "close"):
            strategy.close()
        if reason is FeedExit.STOPPED:
            break
        logger.info("Slot rollover: rebuilding monitor state")

    await gateway.drain()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = apply_overrides(load_config(), args)

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log, logs_dir=cfg.logs_dir)
    logger.info("  Log file: %s", log_file_path)

    try:
        validate_credentials(cfg)
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    lock = ProcessLock(Path(cfg.logs_dir) / "monitor.lock")
    try:
        lock.acquire()
    except LockError as e:
        logger.error("Could not acquire monitor lock: %s", e)
        return 1

    kalshi = None
    try:
        auth = KalshiAuth(cfg.kalshi_api_key_id, cfg.kalshi_private_key_path, cfg.kalshi_private_key_pem)
        kalshi = KalshiClient(auth, host=cfg.kalshi_host, demo=cfg.kalshi_demo)
        if polymarket_configured(cfg):
            logger.debug("Authenticating with Polymarket CLOB...")
            poly_client = build_clob_client(cfg)
        else:
            logger.warning("Polymarket not configured (PRIVATE_KEY unset); Polymarket orders will be refused")
            poly_client = build_public_clob_client(cfg)

        try:
            check_balances(*fetch_balances(kalshi, poly_client, cfg), cfg)
        except BalanceTooLow as e:
            logger.error("%s Stopping.", e)
            return 1

        store = PositionStore(cfg.holdings_path)
        gateway = build_gateway(cfg, args.strategy, kalshi, poly_client, store)
        asyncio.run(run_monitor(cfg, args.strategy, kalshi, poly_client, gateway))
        return 0
    finally:
        if kalshi is not None:
            kalshi.close()
        lock.release()


if __name__ == "__main__":
    sys.exit(main())
