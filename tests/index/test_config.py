"""
Unit tests for codeindex.config

Covers defaults, the override > env > yaml > default precedence and
validation of resolution rules.
"""

from __future__ import annotations

import os

import pytest

from codeindex.config import Config, RESOLUTION_RULES


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CODEINDEX_"):
            monkeypatch.delenv(key, raising=False)


class TestDefaults:

    def test_builtin_defaults(self):
        cfg = Config()
        assert cfg.STORAGE_DIR == ".codeindex"
        assert cfg.DEBOUNCE_SECONDS == pytest.approx(0.3)
        assert cfg.EMBED_MAX_RETRIES == 2
        assert cfg.EMBEDDING_PROVIDER == "none"
        assert cfg.RESOLUTION_ORDER == list(RESOLUTION_RULES)
        assert "node_modules" in cfg.SKIP_DIRS

    def test_max_workers_defaults_to_cpu_count(self):
        assert Config().MAX_WORKERS == (os.cpu_count() or 4)


class TestPrecedence:

    def test_yaml_beats_default(self):
        cfg = Config({"debounce_seconds": 1.25, "segment_size": 64})
        assert cfg.DEBOUNCE_SECONDS == pytest.approx(1.25)
        assert cfg.SEGMENT_SIZE == 64

    def test_env_beats_yaml(self, monkeypatch):
        monkeypatch.setenv("CODEINDEX_DEBOUNCE_SECONDS", "2.5")
        cfg = Config({"debounce_seconds": 1.25})
        assert cfg.DEBOUNCE_SECONDS == pytest.approx(2.5)

    def test_override_beats_env(self, monkeypatch):
        monkeypatch.setenv("CODEINDEX_DEBOUNCE_SECONDS", "2.5")
        cfg = Config({"debounce_seconds": 1.25}, debounce_seconds=0.0)
        assert cfg.DEBOUNCE_SECONDS == 0.0

    def test_list_from_env_is_split_on_commas(self, monkeypatch):
        monkeypatch.setenv("CODEINDEX_IGNORE", "*.gen.py, build/*")
        assert Config().IGNORE == ["*.gen.py", "build/*"]

    def test_list_from_yaml(self):
        cfg = Config({"resolution_order": ["same_directory", "first_indexed"]})
        assert cfg.RESOLUTION_ORDER == ["same_directory", "first_indexed"]


class TestValidation:

    def test_unknown_override_raises(self):
        with pytest.raises(TypeError):
            Config(not_a_setting=1)

    def test_unknown_resolution_rule_raises(self):
        with pytest.raises(ValueError, match="nearest_neighbour"):
            Config(resolution_order=["nearest_neighbour"])


class TestLoad:

    def test_load_reads_yaml_from_search_dir(self, tmp_path):
        (tmp_path / ".codeindex.yaml").write_text(
            "embed_max_retries: 5\nignore:\n  - '*.min.js'\n", encoding="utf-8"
        )
        cfg = Config.load(search_dirs=[str(tmp_path)])
        assert cfg.EMBED_MAX_RETRIES == 5
        assert cfg.IGNORE == ["*.min.js"]

    def test_load_without_file_uses_defaults(self, tmp_path):
        cfg = Config.load(search_dirs=[str(tmp_path)])
        assert cfg.EMBED_MAX_RETRIES == 2

    def test_malformed_yaml_is_ignored(self, tmp_path):
        (tmp_path / ".codeindex.yml").write_text("key: [unclosed\n", encoding="utf-8")
        cfg = Config.load(search_dirs=[str(tmp_path)])
        assert cfg.STORAGE_DIR == ".codeindex"
