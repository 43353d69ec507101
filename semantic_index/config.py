"""
Configuration: loads settings from .semantic_index.yaml, environment
variables, and built-in defaults (in that priority order: CLI args > env >
YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "embedding_provider": "ollama",
    "embedding_model": "nomic-embed-text",
    "model_version": "",
    "embedding_dimension": 768,
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "embed_max_retries": 3,
    "embed_retry_delay": 2.0,
    "cache_capacity": 50_000,
    "query_cache_capacity": 256,
    "brute_force_threshold": 2048,
    "hnsw_m": 16,
    "ef_construction": 64,
    "ef_search": 64,
    "compact_ratio": 0.25,
    "max_workers": 4,
    "stale_version_lag": 1,
    "reconcile_interval": 300.0,
    "watch_debounce": 0.5,
    "overfetch_factor": 4,
    "weights": {"similarity": 0.8, "recency": 0.1, "dependency": 0.1},
    "recency_half_life_hours": 168.0,
    "persist": True,
    "state_dir": ".semantic_index",
}

# Config file search locations
_CONFIG_FILENAMES = [".semantic_index.yaml", ".semantic_index.yml"]


def _find_config_file(explicit_path: str | None = None,
                      project_root: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, project root, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [project_root or os.getcwd(), os.path.expanduser("~")]
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


class Config:
    """Index configuration.

    Settings are resolved in priority order:
    1. CLI arguments (applied with :meth:`with_overrides`)
    2. Environment variables (``SEMANTIC_INDEX_*``)
    3. .semantic_index.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(key: str, cast=str):
            env_val = os.getenv(f"SEMANTIC_INDEX_{key.upper()}")
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(key)
            if yaml_val is not None:
                return cast(yaml_val)
            return _DEFAULTS[key]

        def _get_bool(key: str) -> bool:
            env_val = os.getenv(f"SEMANTIC_INDEX_{key.upper()}")
            if env_val is not None:
                return env_val.lower() in ("1", "true", "yes")
            yaml_val = yd.get(key)
            if yaml_val is not None:
                return bool(yaml_val)
            return _DEFAULTS[key]

        # Embedding model
        self.EMBEDDING_PROVIDER = _get("embedding_provider").lower()
        self.EMBEDDING_MODEL = _get("embedding_model")
        self.MODEL_VERSION = (
            _get("model_version") or f"{self.EMBEDDING_PROVIDER}:{self.EMBEDDING_MODEL}"
        )
        self.EMBEDDING_DIMENSION = _get("embedding_dimension", cast=int)
        self.EMBED_MAX_RETRIES = _get("embed_max_retries", cast=int)
        self.EMBED_RETRY_DELAY = _get("embed_retry_delay", cast=float)

        self.OLLAMA_BASE_URL = _get("ollama_base_url")

        # OpenAI keeps its conventional variable names
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = (
            os.getenv("OPENAI_API_KEY")
            or openai_section.get("api_key")
            or yd.get("openai_api_key")
            or _DEFAULTS["openai_api_key"]
        )
        self.OPENAI_BASE_URL = (
            os.getenv("OPENAI_BASE_URL")
            or openai_section.get("base_url")
            or yd.get("openai_base_url")
            or _DEFAULTS["openai_base_url"]
        )

        # Cache and vector index
        self.CACHE_CAPACITY = _get("cache_capacity", cast=int)
        self.QUERY_CACHE_CAPACITY = _get("query_cache_capacity", cast=int)
        self.BRUTE_FORCE_THRESHOLD = _get("brute_force_threshold", cast=int)
        self.HNSW_M = _get("hnsw_m", cast=int)
        self.EF_CONSTRUCTION = _get("ef_construction", cast=int)
        self.EF_SEARCH = _get("ef_search", cast=int)
        self.COMPACT_RATIO = _get("compact_ratio", cast=float)

        # Pipeline
        self.MAX_WORKERS = _get("max_workers", cast=int)
        self.STALE_VERSION_LAG = _get("stale_version_lag", cast=int)
        # seconds between stale-file sweeps while watching; 0 disables
        self.RECONCILE_INTERVAL = _get("reconcile_interval", cast=float)
        self.WATCH_DEBOUNCE = _get("watch_debounce", cast=float)

        # Query ranking
        self.OVERFETCH_FACTOR = _get("overfetch_factor", cast=int)
        self.RECENCY_HALF_LIFE_HOURS = _get("recency_half_life_hours", cast=float)
        self.WEIGHTS: dict[str, float] = dict(_DEFAULTS["weights"])
        weights_section = yd.get("weights", {})
        if isinstance(weights_section, dict):
            for name in self.WEIGHTS:
                if name in weights_section:
                    self.WEIGHTS[name] = float(weights_section[name])
        for name in self.WEIGHTS:
            env_val = os.getenv(f"SEMANTIC_INDEX_WEIGHT_{name.upper()}")
            if env_val is not None:
                self.WEIGHTS[name] = float(env_val)

        # Snapshot
        self.PERSIST = _get_bool("persist")
        self.STATE_DIR = _get("state_dir")

    def with_overrides(self, **overrides) -> "Config":
        """Apply CLI-level overrides; ``None`` values are ignored."""
        for key, value in overrides.items():
            if value is None:
                continue
            attr = key.upper()
            if not hasattr(self, attr):
                raise AttributeError(f"Unknown config key: {key}")
            setattr(self, attr, value)
        return self

    @property
    def recency_half_life_seconds(self) -> float:
        return self.RECENCY_HALF_LIFE_HOURS * 3600.0

    @classmethod
    def load(cls, config_path: str | None = None,
             project_root: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path, project_root)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
