"""
Durable token-holdings ledger: {condition_id: {token_id: size}} in one JSON file.

Single writer per process; cross-process exclusion comes from the monitor lock.
Writes go to a temp file then os.replace so a crash never leaves half a file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_HOLDINGS_PATH = Path("data/token-holding.json")


class PositionStore:
    """
    Usage:
        store = PositionStore("data/token-holding.json")
        store.add(condition_id, token_id, 5.0)
        store.remove(condition_id, token_id)
    """

    def __init__(self, path: str | Path = DEFAULT_HOLDINGS_PATH) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, dict[str, float]]:
        """Whole ledger. Missing, unreadable or malformed file -> empty ledger."""
        try:
            raw = json.loads(self._path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Holdings file %s unreadable, treating as empty: %s", self._path, e)
            return {}
        if not isinstance(raw, dict):
            return {}

        ledger: dict[str, dict[str, float]] = {}
        for condition_id, tokens in raw.items():
            if not isinstance(tokens, dict):
                continue
            clean: dict[str, float] = {}
            for token_id, size in tokens.items():
                try:
                    clean[str(token_id)] = float(size)
                except (TypeError, ValueError):
                    continue
            if clean:
                ledger[str(condition_id)] = clean
        return ledger

    def save(self, ledger: dict[str, dict[str, float]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(ledger, indent=2, sort_keys=True))
        os.replace(tmp, self._path)

    def add(self, condition_id: str, token_id: str, size: float) -> float:
        """Increase the held size of a token. Returns the new total."""
        if not condition_id or not token_id or size <= 0:
            return self.get(condition_id, token_id)
        ledger = self.load()
        tokens = ledger.setdefault(condition_id, {})
        tokens[token_id] = round(tokens.get(token_id, 0.0) + size, 6)
        self.save(ledger)
        logger.debug("Holdings +%.2f %s... (condition %s...)", size, token_id[:12], condition_id[:12])
        return tokens[token_id]

    def set(self, condition_id: str, token_id: str, size: float) -> None:
        """Overwrite the held size (after balance reconciliation)."""
        if size <= 0:
            self.remove(condition_id, token_id)
            return
        ledger = self.load()
        ledger.setdefault(condition_id, {})[token_id] = round(size, 6)
        self.save(ledger)

    def remove(self, condition_id: str, token_id: str) -> None:
        """Drop one token; drops the condition too once it holds nothing."""
        ledger = self.load()
        tokens = ledger.get(condition_id)
        if not tokens or token_id not in tokens:
            return
        del tokens[token_id]
        if not tokens:
            del ledger[condition_id]
        self.save(ledger)

    def clear(self, condition_id: str) -> None:
        ledger = self.load()
        if ledger.pop(condition_id, None) is not None:
            self.save(ledger)

    def get(self, condition_id: str, token_id: str) -> float:
        return self.load().get(condition_id, {}).get(token_id, 0.0)

    def tokens_for(self, condition_id: str) -> dict[str, float]:
        """Held tokens of one condition (copy)."""
        return dict(self.load().get(condition_id, {}))
