"""
Configuration: loads settings from .memorybank.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "db_path": ".memorybank/memory.db",
    "engine_order": ["portable", "native"],
    "embedding_backend": "local",
    "embedding_model": "all-MiniLM-L6-v2",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "semantic_weight": 0.7,
    "keyword_weight": 0.3,
    "blend_keyword_weight": 0.6,
    "blend_semantic_weight": 0.4,
    "min_relevance_threshold": 0.1,
    "default_budget": 4000,
    "max_age_days": None,
    "candidate_pool_limit": None,
    "log_dir": ".memorybank/logs",
    "backup_before_migration": True,
}

# Config file search locations
_CONFIG_FILENAMES = [".memorybank.yaml", ".memorybank.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

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


def _optional_int(value):
    if value is None or value == "":
        return None
    return int(value)


def _str_list(value) -> list[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return list(_DEFAULTS["engine_order"])


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller, via ``overrides``)
    2. Environment variables (``MEMORY_BANK_*``)
    3. .memorybank.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None, **overrides):
        yd = yaml_data or {}

        # Helper: override > env var > yaml > default
        def _get(key: str, default, cast=str):
            if overrides.get(key) is not None:
                return cast(overrides[key])
            env_val = os.getenv(f"MEMORY_BANK_{key.upper()}")
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(key: str, default: bool) -> bool:
            if overrides.get(key) is not None:
                return bool(overrides[key])
            env_val = os.getenv(f"MEMORY_BANK_{key.upper()}")
            if env_val is not None:
                return env_val.lower() == "true"
            yaml_val = yd.get(key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        self.DB_PATH = _get("db_path", _DEFAULTS["db_path"])
        self.ENGINE_ORDER = _get("engine_order", list(_DEFAULTS["engine_order"]),
                                 cast=_str_list)

        self.EMBEDDING_BACKEND = _get("embedding_backend",
                                      _DEFAULTS["embedding_backend"]).lower()
        self.EMBEDDING_MODEL = _get("embedding_model", _DEFAULTS["embedding_model"])

        # OpenAI embedding backend
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        # Search / allocator weights
        self.SEMANTIC_WEIGHT = _get("semantic_weight", _DEFAULTS["semantic_weight"],
                                    cast=float)
        self.KEYWORD_WEIGHT = _get("keyword_weight", _DEFAULTS["keyword_weight"],
                                   cast=float)
        self.BLEND_KEYWORD_WEIGHT = _get("blend_keyword_weight",
                                         _DEFAULTS["blend_keyword_weight"], cast=float)
        self.BLEND_SEMANTIC_WEIGHT = _get("blend_semantic_weight",
                                          _DEFAULTS["blend_semantic_weight"], cast=float)
        self.MIN_RELEVANCE_THRESHOLD = _get("min_relevance_threshold",
                                            _DEFAULTS["min_relevance_threshold"],
                                            cast=float)
        self.DEFAULT_BUDGET = _get("default_budget", _DEFAULTS["default_budget"],
                                   cast=int)
        self.MAX_AGE_DAYS = _get("max_age_days", _DEFAULTS["max_age_days"],
                                 cast=_optional_int)
        self.CANDIDATE_POOL_LIMIT = _get("candidate_pool_limit",
                                         _DEFAULTS["candidate_pool_limit"],
                                         cast=_optional_int)

        self.LOG_DIR = _get("log_dir", _DEFAULTS["log_dir"])
        self.BACKUP_BEFORE_MIGRATION = _get_bool("backup_before_migration",
                                                 _DEFAULTS["backup_before_migration"])

    @classmethod
    def load(cls, explicit_path: str | None = None, **overrides) -> "Config":
        """Locate and read the YAML file (if any) and build a Config."""
        path = _find_config_file(explicit_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data, **overrides)
