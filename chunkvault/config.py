"""Global configuration management for chunkvault."""

from __future__ import annotations

import hashlib
import json
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from .errors import InvalidInputError
from .text import Messages

DEFAULT_DATA_DIR = Path(os.path.expanduser("~")) / ".chunkvault"
DATA_DIR = DEFAULT_DATA_DIR
CONFIG_FILE = DATA_DIR / "config.json"
_DATA_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "chunkvault_data_dir_override",
    default=None,
)
DB_FILENAME = "index.db"
BACKUP_DIRNAME = "backups"

DEFAULT_STORE_BACKEND = "local"
SUPPORTED_STORE_BACKENDS: tuple[str, ...] = ("local", "remote")
DEFAULT_REMOTE_PROVIDER = "workers-ai"
SUPPORTED_REMOTE_PROVIDERS: tuple[str, ...] = ("workers-ai", "openai", "none")
DEFAULT_LOCAL_PROVIDER = "ollama"
SUPPORTED_LOCAL_PROVIDERS: tuple[str, ...] = ("ollama", "fastembed", "none")

DEFAULT_EMBEDDING_DIMENSION = 384
DEFAULT_CLOUDFLARE_ENDPOINT = "https://api.cloudflare.com/client/v4"
DEFAULT_WORKERS_AI_MODEL = "@cf/baai/bge-small-en-v1.5"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
DEFAULT_FASTEMBED_MODEL = "BAAI/bge-small-en-v1.5"
DEFAULT_MAX_FILE_SIZE = 1024 * 1024
DEFAULT_STORAGE_BATCH_SIZE = 100
DEFAULT_EMBED_BATCH_SIZE = 32
DEFAULT_EMBED_CONCURRENCY = 1
DEFAULT_EMBED_CACHE_SIZE = 1000
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    "node_modules/",
    "dist/",
    "build/",
    "__pycache__/",
    ".venv/",
    "venv/",
    "*.min.js",
    "*.lock",
)

ENV_ACCOUNT_ID = "CLOUDFLARE_ACCOUNT_ID"
ENV_API_KEY = "CLOUDFLARE_API_KEY"
ENV_D1_DATABASE_ID = "CHUNKVAULT_D1_DATABASE_ID"
ENV_OPENAI_API_KEY = "OPENAI_API_KEY"


@dataclass
class Config:
    store_backend: str = DEFAULT_STORE_BACKEND
    store_path: str | None = None
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    include_hidden: bool = False
    respect_gitignore: bool = True
    embedding_dimension: int = DEFAULT_EMBEDDING_DIMENSION
    remote_provider: str = DEFAULT_REMOTE_PROVIDER
    local_provider: str = DEFAULT_LOCAL_PROVIDER
    cloudflare_account_id: str | None = None
    cloudflare_api_key: str | None = None
    cloudflare_endpoint: str = DEFAULT_CLOUDFLARE_ENDPOINT
    workers_ai_model: str = DEFAULT_WORKERS_AI_MODEL
    d1_database_id: str | None = None
    openai_api_key: str | None = None
    openai_model: str = DEFAULT_OPENAI_MODEL
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    fastembed_model: str = DEFAULT_FASTEMBED_MODEL
    incremental: bool = True
    detect_deletions: bool = True
    auto_cleanup: bool = True
    storage_batch_size: int = DEFAULT_STORAGE_BATCH_SIZE
    embed_batch_size: int = DEFAULT_EMBED_BATCH_SIZE
    embed_concurrency: int = DEFAULT_EMBED_CONCURRENCY
    embed_cache_size: int = DEFAULT_EMBED_CACHE_SIZE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    extra: Dict[str, Any] = field(default_factory=dict)


_TUPLE_FIELDS = {"include_patterns", "exclude_patterns"}
_BOOL_FIELDS = {"include_hidden", "respect_gitignore", "incremental", "detect_deletions", "auto_cleanup"}
_INT_FIELDS = {
    "max_file_size",
    "embedding_dimension",
    "storage_batch_size",
    "embed_batch_size",
    "embed_concurrency",
    "embed_cache_size",
}


def _resolve_data_dir() -> Path:
    override = _DATA_DIR_OVERRIDE.get()
    return override if override is not None else DATA_DIR


def _resolve_config_file() -> Path:
    override = _DATA_DIR_OVERRIDE.get()
    if override is not None:
        return override / "config.json"
    return CONFIG_FILE


def data_dir() -> Path:
    return _resolve_data_dir()


@contextmanager
def config_dir_context(path: Path | str | None):
    """Temporarily override the data directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _DATA_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _DATA_DIR_OVERRIDE.reset(token)


def set_data_dir(path: Path | str | None) -> None:
    global DATA_DIR, CONFIG_FILE
    if path is None:
        DATA_DIR = DEFAULT_DATA_DIR
    else:
        dir_path = Path(path).expanduser().resolve()
        if dir_path.exists() and not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {dir_path}")
        DATA_DIR = dir_path
    CONFIG_FILE = DATA_DIR / "config.json"


def _coerce_value(name: str, value: Any, default: Any) -> Any:
    if value is None:
        return default
    if name in _TUPLE_FIELDS:
        if isinstance(value, str):
            value = [value]
        return tuple(str(item).strip() for item in value if str(item).strip())
    if name in _BOOL_FIELDS:
        return bool(value)
    if name in _INT_FIELDS:
        return int(value)
    if name == "request_timeout":
        return float(value)
    if isinstance(default, str) or default is None:
        text = str(value).strip()
        return text or default
    return value


def config_from_mapping(raw: Dict[str, Any], *, base: Config | None = None) -> Config:
    """Return a Config built from *raw* on top of *base* (defaults when omitted)."""

    config = replace(base) if base is not None else Config()
    known = {item.name for item in fields(Config)} - {"extra"}
    extra: Dict[str, Any] = dict(config.extra)
    for key, value in raw.items():
        if key in known:
            setattr(config, key, _coerce_value(key, value, getattr(Config(), key)))
        else:
            extra[key] = value
    config.extra = extra
    config.store_backend = _normalize_choice(
        config.store_backend, SUPPORTED_STORE_BACKENDS, DEFAULT_STORE_BACKEND
    )
    config.remote_provider = _normalize_choice(
        config.remote_provider, SUPPORTED_REMOTE_PROVIDERS, DEFAULT_REMOTE_PROVIDER
    )
    config.local_provider = _normalize_choice(
        config.local_provider, SUPPORTED_LOCAL_PROVIDERS, DEFAULT_LOCAL_PROVIDER
    )
    return config


def _normalize_choice(value: str | None, allowed: tuple[str, ...], default: str) -> str:
    normalized = (value or default).strip().lower()
    return normalized if normalized in allowed else default


def load_config() -> Config:
    config_file = _resolve_config_file()
    if not config_file.exists():
        return Config()
    raw = json.loads(config_file.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()
    return config_from_mapping(raw)


def save_config(config: Config) -> None:
    config_dir = _resolve_data_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    defaults = Config()
    data: Dict[str, Any] = {}
    for item in fields(Config):
        if item.name == "extra":
            continue
        value = getattr(config, item.name)
        if value is None:
            continue
        if item.name in _TUPLE_FIELDS:
            value = list(value)
        elif value == getattr(defaults, item.name) and item.name not in {
            "store_backend",
            "remote_provider",
            "local_provider",
        }:
            continue
        data[item.name] = value
    data.update(config.extra)
    config_file = _resolve_config_file()
    config_file.write_text(
        json.dumps(data, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def update_config(**updates: Any) -> Config:
    """Apply *updates* to the persisted config and save it."""

    for key, value in updates.items():
        if key == "store_backend" and value not in SUPPORTED_STORE_BACKENDS:
            raise InvalidInputError(
                Messages.ERROR_UNKNOWN_BACKEND.format(
                    value=value, allowed=", ".join(SUPPORTED_STORE_BACKENDS)
                )
            )
        if key == "remote_provider" and value not in SUPPORTED_REMOTE_PROVIDERS:
            raise InvalidInputError(
                Messages.ERROR_UNKNOWN_PROVIDER.format(
                    value=value, allowed=", ".join(SUPPORTED_REMOTE_PROVIDERS)
                )
            )
        if key == "local_provider" and value not in SUPPORTED_LOCAL_PROVIDERS:
            raise InvalidInputError(
                Messages.ERROR_UNKNOWN_PROVIDER.format(
                    value=value, allowed=", ".join(SUPPORTED_LOCAL_PROVIDERS)
                )
            )
    config = config_from_mapping(updates, base=load_config())
    save_config(config)
    return config


def _env_or_config(value: str | None, env_name: str) -> str | None:
    candidate = (value or "").strip()
    if candidate:
        return candidate
    load_dotenv()
    env_value = (os.getenv(env_name) or "").strip()
    return env_value or None


def resolve_account_id(config: Config) -> str | None:
    return _env_or_config(config.cloudflare_account_id, ENV_ACCOUNT_ID)


def resolve_api_key(config: Config) -> str | None:
    return _env_or_config(config.cloudflare_api_key, ENV_API_KEY)


def resolve_d1_database_id(config: Config) -> str | None:
    return _env_or_config(config.d1_database_id, ENV_D1_DATABASE_ID)


def resolve_openai_api_key(config: Config) -> str | None:
    return _env_or_config(config.openai_api_key, ENV_OPENAI_API_KEY)


def index_key(root: Path | str) -> str:
    """Return the stable key that names the index directory for *root*."""

    resolved = Path(root).expanduser().resolve()
    return hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:16]


def index_dir(root: Path | str) -> Path:
    return _resolve_data_dir() / "indexes" / index_key(root)


def resolve_store_path(config: Config, root: Path | str) -> Path:
    if config.store_path:
        return Path(config.store_path).expanduser().resolve()
    return index_dir(root) / DB_FILENAME


def resolve_backup_dir(config: Config, root: Path | str) -> Path:
    return resolve_store_path(config, root).parent / BACKUP_DIRNAME
