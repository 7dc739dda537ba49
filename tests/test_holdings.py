"""
Tests for state/holdings.py -- the token-holdings ledger.
"""

import json

from state.holdings import PositionStore


class TestPositionStore:
    def test_missing_file_is_empty(self, tmp_path):
        store = PositionStore(tmp_path / "data" / "token-holding.json")
        assert store.load() == {}
        assert store.get("c", "t") == 0.0

    def test_add_accumulates(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("cond", "tok", 5)
        assert store.add("cond", "tok", 2.5) == 7.5
        assert json.loads((tmp_path / "h.json").read_text()) == {"cond": {"tok": 7.5}}

    def test_add_ignores_empty_ids_and_nonpositive_size(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("", "tok", 5)
        store.add("cond", "tok", 0)
        assert store.load() == {}

    def test_add_then_remove_leaves_condition_absent(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("cond", "tok", 5)
        store.remove("cond", "tok")
        assert "cond" not in store.load()

    def test_remove_keeps_other_tokens(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("cond", "up", 5)
        store.add("cond", "down", 3)
        store.remove("cond", "up")
        assert store.tokens_for("cond") == {"down": 3}

    def test_remove_unknown_is_noop(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.remove("cond", "tok")
        assert not (tmp_path / "h.json").exists()

    def test_clear_condition(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("cond", "up", 5)
        store.add("other", "x", 1)
        store.clear("cond")
        assert store.load() == {"other": {"x": 1}}

    def test_set_overwrites_and_zero_removes(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("cond", "tok", 5)
        store.set("cond", "tok", 4.99)
        assert store.get("cond", "tok") == 4.99
        store.set("cond", "tok", 0)
        assert store.load() == {}

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text("{not json")
        assert PositionStore(path).load() == {}

    def test_malformed_entries_dropped(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text(json.dumps({"a": {"t": "bad", "u": "2"}, "b": [1, 2], "c": {}}))
        assert PositionStore(path).load() == {"a": {"u": 2.0}}

    def test_no_temp_file_left(self, tmp_path):
        store = PositionStore(tmp_path / "h.json")
        store.add("cond", "tok", 1)
        assert [p.name for p in tmp_path.iterdir()] == ["h.json"]
