"""
Unit tests for client/gamma.py -- up/down token discovery.
"""

import json

import httpx
import pytest
import respx

from client.gamma import TokenCache, get_updown_tokens

GAMMA = "https://gamma.test"


def _market(outcomes, token_ids) -> dict:
    return {
        "slug": "btc-updown-15m-1735716600",
        "conditionId": "0xcond",
        "outcomes": json.dumps(outcomes),
        "clobTokenIds": json.dumps(token_ids),
    }


class TestGetUpdownTokens:
    @respx.mock
    def test_maps_outcomes_to_tokens(self):
        respx.get(f"{GAMMA}/markets/slug/btc-updown-15m-1735716600").mock(
            return_value=httpx.Response(200, json=_market(["Up", "Down"], ["111", "222"]))
        )

        tokens = get_updown_tokens(GAMMA, "btc-updown-15m-1735716600")
        assert tokens.up_token_id == "111"
        assert tokens.down_token_id == "222"
        assert tokens.condition_id == "0xcond"

    @respx.mock
    def test_outcome_order_respected(self):
        respx.get(f"{GAMMA}/markets/slug/s").mock(
            return_value=httpx.Response(200, json=_market(["Down", "Up"], ["111", "222"]))
        )

        tokens = get_updown_tokens(GAMMA, "s")
        assert tokens.up_token_id == "222"
        assert tokens.down_token_id == "111"

    @respx.mock
    def test_list_fields_accepted(self):
        data = _market(["Up", "Down"], ["1", "2"])
        data["outcomes"] = ["Up", "Down"]
        data["clobTokenIds"] = ["1", "2"]
        respx.get(f"{GAMMA}/markets/slug/s").mock(return_value=httpx.Response(200, json=data))

        assert get_updown_tokens(GAMMA, "s").down_token_id == "2"

    @respx.mock
    def test_missing_outcomes_raises(self):
        respx.get(f"{GAMMA}/markets/slug/s").mock(
            return_value=httpx.Response(200, json=_market(["Yes", "No"], ["1", "2"]))
        )
        with pytest.raises(ValueError):
            get_updown_tokens(GAMMA, "s")

    @respx.mock
    def test_missing_token_ids_raises(self):
        respx.get(f"{GAMMA}/markets/slug/s").mock(
            return_value=httpx.Response(200, json=_market(["Up", "Down"], ["1"]))
        )
        with pytest.raises(ValueError):
            get_updown_tokens(GAMMA, "s")

    @respx.mock
    def test_not_found_raises(self):
        respx.get(f"{GAMMA}/markets/slug/s").mock(return_value=httpx.Response(404))
        with pytest.raises(httpx.HTTPStatusError):
            get_updown_tokens(GAMMA, "s")


class TestTokenCache:
    @respx.mock
    def test_cached_per_slug(self):
        route_a = respx.get(f"{GAMMA}/markets/slug/a").mock(
            return_value=httpx.Response(200, json=_market(["Up", "Down"], ["1", "2"]))
        )
        route_b = respx.get(f"{GAMMA}/markets/slug/b").mock(
            return_value=httpx.Response(200, json=_market(["Up", "Down"], ["3", "4"]))
        )
        cache = TokenCache(GAMMA)

        assert cache.get("a").up_token_id == "1"
        assert cache.get("a").up_token_id == "1"
        assert route_a.call_count == 1

        assert cache.get("b").up_token_id == "3"
        assert route_b.call_count == 1
