"""
Tests for file persistence and path display helpers.
"""

import json

from utils.fileio import atomic_write_json, display_names, read_json


class TestJsonFiles:
    """Test atomic JSON writes and tolerant reads."""

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "store.json"

        assert atomic_write_json(path, {"items": [1, 2]}) is True

        assert read_json(path) == {"items": [1, 2]}
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]

    def test_missing_file_default(self, tmp_path):
        assert read_json(tmp_path / "nope.json", default=[]) == []

    def test_corrupt_file_default(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        assert read_json(path, default={}) == {}

    def test_overwrite(self, tmp_path):
        path = tmp_path / "history.json"
        atomic_write_json(path, [1])
        atomic_write_json(path, [1, 2])
        assert json.loads(path.read_text(encoding="utf-8")) == [1, 2]


class TestDisplayNames:
    """Test short labels for source paths."""

    def test_unique_names_use_basename(self):
        labels = display_names(["/a/manual.txt", "/b/notes.md"])
        assert labels == {"/a/manual.txt": "manual.txt", "/b/notes.md": "notes.md"}

    def test_colliding_names_relative_to_common_parent(self):
        labels = display_names(["/srv/a/docs/README.md", "/srv/b/README.md", "/srv/a/x.txt"])

        assert labels == {
            "/srv/a/docs/README.md": "a/docs/README.md",
            "/srv/b/README.md": "b/README.md",
            "/srv/a/x.txt": "x.txt",
        }

    def test_repeated_path_is_not_a_collision(self):
        assert display_names(["/a/manual.txt", "/a/manual.txt"]) == {"/a/manual.txt": "manual.txt"}

    def test_no_common_parent_uses_full_path(self):
        labels = display_names(["docs/README.md", "/abs/README.md"])
        assert labels == {"docs/README.md": "docs/README.md", "/abs/README.md": "/abs/README.md"}
