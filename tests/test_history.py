"""
Tests for the chat history log.
"""

import json

from memory import ChatHistoryLog


class TestChatHistoryLog:
    """Test persistence of chat exchanges."""

    def test_missing_file_is_empty(self, history):
        assert history.entries() == []
        assert len(history) == 0

    def test_append_writes_json_array(self, history):
        assert history.append("what?", 200, "because", ts="2024-01-01T00:00:00+00:00")

        raw = json.loads(history.path.read_text(encoding="utf-8"))
        assert raw == [{
            "ts": "2024-01-01T00:00:00+00:00",
            "user": "what?",
            "status": 200,
            "raw": "because",
        }]

    def test_append_keeps_order(self, history):
        for i in range(3):
            history.append(f"q{i}", 200, f"a{i}")

        assert [e.user for e in history.entries()] == ["q0", "q1", "q2"]
        assert len(history) == 3

    def test_default_timestamp(self, history):
        history.append("q", -1, "")
        ts = history.entries()[0].ts
        assert ts.endswith("+00:00")
        assert "T" in ts

    def test_recent(self, history):
        for i in range(5):
            history.append(f"q{i}", 200, "")

        assert [e.user for e in history.recent(2)] == ["q3", "q4"]
        assert history.recent(0) == []

    def test_non_array_file_ignored(self, history):
        history.path.write_text('{"ts": "x"}', encoding="utf-8")
        assert history.entries() == []

    def test_malformed_entries_skipped(self, history):
        history.path.write_text(
            json.dumps([{"ts": "t", "user": "u", "status": 200, "raw": "r"}, {"user": 1}]),
            encoding="utf-8",
        )
        assert [e.user for e in history.entries()] == ["u"]

    def test_clear(self, history):
        history.append("q", 200, "a")
        assert history.clear()
        assert history.entries() == []

    def test_no_temp_files_left(self, history, tmp_path):
        history.append("q", 200, "a")
        assert [p.name for p in tmp_path.iterdir()] == ["history.json"]
