"""
Gamma API client for up/down market discovery. Pure REST, no SDK dependency.
"""

from __future__ import annotations

import json

import httpx

from scanner.models import PolymarketTokens

_TIMEOUT = 10.0


def _get(base_url: str, path: str, params: dict | None = None) -> dict | list:
    """Make a GET request to the Gamma API. Raises on non-200."""
    url = f"{base_url}{path}"
    resp = httpx.get(url, params=params, timeout=_TIMEOUT)
    resp.raise_for_status()
    return resp.json()


def _json_list(raw: object) -> list:
    """Gamma encodes some list fields as JSON strings."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def get_updown_tokens(gamma_host: str, slug: str) -> PolymarketTokens:
    """
    Resolve the Up/Down token ids and condition id of a market by slug.
    Raises ValueError when the market lacks Up/Down outcomes or token ids.
    """
    data = _get(gamma_host, f"/markets/slug/{slug}")
    outcomes = _json_list(data.get("outcomes"))
    token_ids = _json_list(data.get("clobTokenIds") or data.get("clob_token_ids"))

    try:
        up_idx = outcomes.index("Up")
        down_idx = outcomes.index("Down")
    except ValueError:
        raise ValueError(f"Missing Up/Down outcomes for slug={slug} (outcomes: {outcomes})") from None
    if max(up_idx, down_idx) >= len(token_ids):
        raise ValueError(f"Missing token ids for slug={slug}")

    return PolymarketTokens(
        slug=slug,
        up_token_id=str(token_ids[up_idx]),
        down_token_id=str(token_ids[down_idx]),
        condition_id=str(data.get("conditionId", data.get("condition_id", ""))),
    )


class TokenCache:
    """Single-entry cache of the current slot's tokens (slug -> tokens)."""

    def __init__(self, gamma_host: str) -> None:
        self._gamma_host = gamma_host
        self._cached: PolymarketTokens | None = None

    def get(self, slug: str) -> PolymarketTokens:
        if self._cached is not None and self._cached.slug == slug:
            return self._cached
        tokens = get_updown_tokens(self._gamma_host, slug)
        self._cached = tokens
        return tokens
