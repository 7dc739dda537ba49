"""
Per-ticker strategy state. A new Kalshi ticker (slot rollover) starts from a
fresh state object; nothing carries over between markets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar

from scanner.models import ArbPosition, MarketSnapshot, Position, Side

logger = logging.getLogger(__name__)


@dataclass
class ArbState:
    ticker: str
    attempted: set[Side] = field(default_factory=set)
    positions: dict[Side, ArbPosition] = field(default_factory=dict)

    def was_attempted(self, leg: Side) -> bool:
        return leg in self.attempted

    def mark_attempted(self, leg: Side) -> None:
        self.attempted.add(leg)


@dataclass
class FollowState:
    ticker: str
    seen: bool = False
    skipped: bool = False
    seen_certain_up: bool = False
    seen_certain_down: bool = False
    position: Position | None = None
    cycle_done: bool = False
    entry_side: Side | None = None

    def seen_certain(self, side: Side) -> bool:
        return self.seen_certain_up if side is Side.UP else self.seen_certain_down


S = TypeVar("S")


class StrategyContext(Generic[S]):
    """
    Holds the state of the ticker currently being traded.

    for_snapshot() returns the live state, replacing it when the ticker changes.
    *on_new* runs once per fresh state with the snapshot that created it
    (used to restore positions from the ledger).
    """

    def __init__(self, factory: Callable[[str], S], on_new: Callable[[S, MarketSnapshot], None] | None = None) -> None:
        self._factory = factory
        self._on_new = on_new
        self._state: S | None = None
        self._ticker: str | None = None

    @property
    def state(self) -> S | None:
        return self._state

    def for_snapshot(self, snapshot: MarketSnapshot) -> S:
        ticker = snapshot.kalshi_ticker
        if self._state is None or self._ticker != ticker:
            if self._ticker is not None:
                logger.info("New market %s (was %s); strategy state reset", ticker, self._ticker)
            self._ticker = ticker
            self._state = self._factory(ticker)
            if self._on_new is not None:
                self._on_new(self._state, snapshot)
        return self._state

    def reset(self) -> None:
        self._state = None
        self._ticker = None
