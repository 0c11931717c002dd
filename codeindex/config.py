"""
Configuration — loads settings from .codeindex.yaml, environment variables,
and built-in defaults (in that priority order: explicit overrides > env >
YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "storage_dir": ".codeindex",
    "debounce_seconds": 0.3,
    "resolve_delay_seconds": 0.5,
    "max_workers": 0,               # 0 -> os.cpu_count()
    "resolution_order": [
        "same_file",
        "same_directory",
        "enclosing_scope",
        "first_indexed",
    ],
    "embed_max_retries": 2,
    "embed_retry_delay": 0.5,
    "embedding_provider": "none",   # none | ollama | openai
    "embedding_model": "nomic-embed-text",
    "embedding_dimensions": 0,      # 0 -> accept the first vector size seen
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "max_chunk_chars": 6000,
    "segment_size": 1024,
    "compaction_threshold": 0.3,
    "ignore": [],
    "skip_dirs": [
        "node_modules", "dist", "build", "__pycache__",
        ".git", "vendor", ".codeindex",
        ".venv", "venv", "env", ".env",
        ".tox", ".mypy_cache", ".pytest_cache",
        "target", "bin", "obj", "coverage",
        ".next", ".nuxt", "out", ".output",
        "eggs", ".eggs", ".cache",
    ],
}

RESOLUTION_RULES = ("same_file", "same_directory", "enclosing_scope", "first_indexed")

# Config file search locations
_CONFIG_FILENAMES = [".codeindex.yaml", ".codeindex.yml"]


def _find_config_file(explicit_path: str | None = None,
                      search_dirs: list[str] | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    if search_dirs is None:
        search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def _split_list(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Config:
    """Engine configuration.

    Settings are resolved in priority order:
    1. Explicit overrides (keyword arguments)
    2. Environment variables (``CODEINDEX_*``)
    3. .codeindex.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None, **overrides):
        yd = yaml_data or {}
        unknown_keys = set(overrides) - set(_DEFAULTS)
        if unknown_keys:
            raise TypeError(f"Unknown config option(s): {sorted(unknown_keys)}")
        explicit = set(overrides)

        # Helper: override > env var > yaml > default
        def _get(key: str, cast=str):
            env_val = os.getenv(f"CODEINDEX_{key.upper()}")
            if key in explicit and overrides[key] is not None:
                return cast(overrides[key])
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(key)
            if yaml_val is not None:
                return cast(yaml_val)
            return _DEFAULTS[key]

        def _get_list(key: str) -> list[str]:
            if key in explicit and overrides[key] is not None:
                return list(overrides[key])
            env_val = os.getenv(f"CODEINDEX_{key.upper()}")
            if env_val is not None:
                return _split_list(env_val)
            yaml_val = yd.get(key)
            if isinstance(yaml_val, list):
                return [str(v) for v in yaml_val]
            if isinstance(yaml_val, str):
                return _split_list(yaml_val)
            return list(_DEFAULTS[key])

        self.STORAGE_DIR = _get("storage_dir")
        self.DEBOUNCE_SECONDS = _get("debounce_seconds", cast=float)
        self.RESOLVE_DELAY_SECONDS = _get("resolve_delay_seconds", cast=float)
        self.MAX_WORKERS = _get("max_workers", cast=int) or (os.cpu_count() or 4)

        self.RESOLUTION_ORDER = _get_list("resolution_order")
        unknown = [r for r in self.RESOLUTION_ORDER if r not in RESOLUTION_RULES]
        if unknown:
            raise ValueError(
                f"Unknown resolution rule(s) {unknown}; "
                f"expected any of {list(RESOLUTION_RULES)}"
            )

        self.EMBED_MAX_RETRIES = _get("embed_max_retries", cast=int)
        self.EMBED_RETRY_DELAY = _get("embed_retry_delay", cast=float)
        self.EMBEDDING_PROVIDER = _get("embedding_provider").lower()
        self.EMBEDDING_MODEL = _get("embedding_model")
        self.EMBEDDING_DIMENSIONS = _get("embedding_dimensions", cast=int)
        self.OLLAMA_BASE_URL = _get("ollama_base_url")

        # OpenAI section may be nested like the rest of the ecosystem configs
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _get("openai_api_key"))
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _get("openai_base_url"))

        self.MAX_CHUNK_CHARS = _get("max_chunk_chars", cast=int)
        self.SEGMENT_SIZE = _get("segment_size", cast=int)
        self.COMPACTION_THRESHOLD = _get("compaction_threshold", cast=float)

        self.IGNORE = _get_list("ignore")
        self.SKIP_DIRS = frozenset(_get_list("skip_dirs"))

    @classmethod
    def load(cls, config_path: str | None = None,
             search_dirs: list[str] | None = None, **overrides) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path, search_dirs)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data, **overrides)
