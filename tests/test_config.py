"""
Tests for settings and load_config.
"""

import pytest
from pydantic import ValidationError

from config import CONFIG_KEYS, Settings, load_config


@pytest.fixture
def paths(tmp_path):
    return {
        "storePath": str(tmp_path / "data" / "store.json"),
        "historyPath": str(tmp_path / "data" / "history.json"),
    }


class TestLoadConfig:
    """Test the flat key/value loader."""

    def test_camel_case_keys(self, paths):
        cfg = load_config({
            **paths,
            "provider": "gemini",
            "apiKey": "k",
            "chatModel": "gemini-pro",
            "timeoutMs": "1500",
            "temperature": 0.3,
            "showCitations": False,
            "citationMaxFiles": 2,
            "chunkSize": 500,
            "overlap": 50,
            "topKRetrieval": 6,
        })

        assert cfg.PROVIDER == "gemini"
        assert cfg.API_KEY == "k"
        assert cfg.CHAT_MODEL == "gemini-pro"
        assert cfg.TIMEOUT_MS == 1500
        assert cfg.TEMPERATURE == 0.3
        assert cfg.SHOW_CITATIONS is False
        assert cfg.CITATION_MAX_FILES == 2
        assert (cfg.CHUNK_SIZE, cfg.CHUNK_OVERLAP) == (500, 50)
        assert cfg.SIMILARITY_TOP_K == 6

    def test_field_names_accepted(self, paths):
        cfg = load_config({**paths, "chunk_pad": 12})
        assert cfg.CHUNK_PAD == 12

    def test_max_tokens_alias(self, paths):
        assert load_config({**paths, "max_tokens": 99}).MAX_OUTPUT_TOKENS == 99

    def test_stop_sequences_list(self, paths):
        cfg = load_config({**paths, "stopSequences": ["###", "END"]})
        assert cfg.get_stop_sequences() == ["###", "END"]

    def test_empty_and_unknown_values_ignored(self, paths):
        cfg = load_config({**paths, "apiKey": "  ", "chatModel": None, "favouriteColour": "blue"})
        assert cfg.API_KEY == ""
        assert cfg.CHAT_MODEL == ""

    def test_invalid_value_raises(self, paths):
        with pytest.raises(ValidationError):
            load_config({**paths, "provider": "carrier-pigeon"})
        with pytest.raises(ValidationError):
            load_config({**paths, "timeoutMs": -5})

    def test_embed_batch_size_bounds(self, paths):
        assert load_config({**paths, "embedBatchSize": 50}).EMBED_BATCH_SIZE == 50
        with pytest.raises(ValidationError):
            load_config({**paths, "embedBatchSize": 5000})

    def test_parent_directories_created(self, paths, tmp_path):
        load_config(paths)
        assert (tmp_path / "data").is_dir()

    def test_environment_used_when_key_absent(self, paths, monkeypatch):
        monkeypatch.setenv("PROVIDER", "ollama")
        assert load_config(paths).PROVIDER == "ollama"
        assert load_config({**paths, "provider": "openai"}).PROVIDER == "openai"

    def test_keys_map_to_fields(self):
        assert set(CONFIG_KEYS.values()) <= set(Settings.model_fields)


class TestSettings:
    """Test validators and helpers."""

    def test_overlap_clamped_below_chunk_size(self, tmp_path):
        cfg = Settings(STORE_PATH=tmp_path / "s.json", CHUNK_SIZE=100, CHUNK_OVERLAP=150)
        assert cfg.CHUNK_OVERLAP == 99

    def test_stop_sequences_parsing(self, tmp_path):
        cfg = Settings(STORE_PATH=tmp_path / "s.json", STOP_SEQUENCES=" a, ,b ")
        assert cfg.get_stop_sequences() == ["a", "b"]

    def test_safety_thresholds(self, tmp_path):
        cfg = Settings(
            STORE_PATH=tmp_path / "s.json",
            SAFETY_HATE_SPEECH="BLOCK_ONLY_HIGH",
            SAFETY_CIVIC="BLOCK_NONE",
        )
        assert cfg.get_safety_thresholds() == {
            "HARM_CATEGORY_HATE_SPEECH": "BLOCK_ONLY_HIGH",
            "HARM_CATEGORY_CIVIC_INTEGRITY": "BLOCK_NONE",
        }

    def test_defaults(self, tmp_path):
        cfg = Settings(STORE_PATH=tmp_path / "s.json")
        assert cfg.TIMEOUT_MS == 60000
        assert cfg.STREAM_STALL_MS == 20000
        assert cfg.CITATION_MATCH_THRESHOLD == 0.12
        assert cfg.CITATION_MAX_FILES == 3
