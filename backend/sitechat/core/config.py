"""
Application settings.

Settings are resolved in three layers:
- dataclass defaults
- an optional YAML file (config/chat_config.yaml, or the path in CHAT_CONFIG)
- environment variables (a .env file is loaded first)
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
import structlog
from dotenv import load_dotenv

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "chat_config.yaml"

# Limits shared by the pipeline, the orchestrator and the auth service
MAX_MESSAGE_LENGTH = 2000
CONTEXT_WINDOW = 10
CONTEXT_FETCH_LIMIT = 20
HISTORY_LIMIT = 100
DEFAULT_SESSION_TITLE = "New Chat"
MAX_TITLE_LENGTH = 100
USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 30
PASSWORD_MIN_LENGTH = 6


@dataclass
class Settings:
    """Runtime configuration for the chat service."""
    database_url: str = "sqlite:///./data.db"

    jwt_secret: str = "dev-secret-change-in-production"
    token_ttl_days: int = 7

    upload_dir: Path = field(default_factory=lambda: Path("uploads"))
    max_upload_bytes: int = 5 * 1024 * 1024
    frontend_url: Optional[str] = None

    provider: str = "openai"  # openai, ollama, anthropic
    provider_model: str = "qwen-vl-plus"
    provider_base_url: Optional[str] = None  # provider default when unset
    provider_api_key: Optional[str] = None
    provider_max_tokens: int = 500
    provider_temperature: float = 0.7
    provider_timeout: float = 30.0
    inline_images: bool = True

    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 60.0

    log_level: str = "INFO"
    log_format: str = "console"


# YAML section -> {yaml key: settings attribute}
_YAML_KEYS = {
    "database": {"url": "database_url"},
    "auth": {"jwt_secret": "jwt_secret", "token_ttl_days": "token_ttl_days"},
    "uploads": {"dir": "upload_dir", "max_bytes": "max_upload_bytes"},
    "cors": {"frontend_url": "frontend_url"},
    "provider": {
        "name": "provider",
        "model": "provider_model",
        "base_url": "provider_base_url",
        "max_tokens": "provider_max_tokens",
        "temperature": "provider_temperature",
        "timeout": "provider_timeout",
        "inline_images": "inline_images",
    },
    "circuit_breaker": {
        "failure_threshold": "circuit_failure_threshold",
        "recovery_timeout": "circuit_recovery_timeout",
    },
    "logging": {"level": "log_level", "format": "log_format"},
}

_ENV_KEYS = {
    "DATABASE_URL": "database_url",
    "JWT_SECRET": "jwt_secret",
    "TOKEN_TTL_DAYS": "token_ttl_days",
    "UPLOAD_DIR": "upload_dir",
    "MAX_UPLOAD_BYTES": "max_upload_bytes",
    "FRONTEND_URL": "frontend_url",
    "CHAT_PROVIDER": "provider",
    "CHAT_MODEL": "provider_model",
    "CHAT_BASE_URL": "provider_base_url",
    "CHAT_MAX_TOKENS": "provider_max_tokens",
    "CHAT_TEMPERATURE": "provider_temperature",
    "CHAT_TIMEOUT": "provider_timeout",
    "CHAT_INLINE_IMAGES": "inline_images",
    "LOG_LEVEL": "log_level",
    "LOG_FORMAT": "log_format",
}

# Checked in order; the first one set wins
_API_KEY_VARS = ("CHAT_API_KEY", "QWEN_API_KEY", "DEEPSEEK_API_KEY")


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of the settings field."""
    if value is None:
        return None

    field_type = {f.name: f.type for f in fields(Settings)}[name]
    if field_type is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if field_type is int:
        return int(value)
    if field_type is float:
        return float(value)
    if field_type is Path:
        return Path(value)
    return str(value)


def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    values = {}
    for section, keys in _YAML_KEYS.items():
        section_cfg = raw_config.get(section) or {}
        for yaml_key, attr in keys.items():
            if yaml_key in section_cfg:
                values[attr] = _coerce(attr, section_cfg[yaml_key])
    return values


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Build Settings from defaults, the YAML file and the environment.

    Args:
        config_path: YAML file to read (defaults to CHAT_CONFIG or the bundled file)
        **overrides: Explicit values that win over every other layer

    Returns:
        A populated Settings instance
    """
    load_dotenv()

    values: dict[str, Any] = {}

    path = config_path or Path(os.getenv("CHAT_CONFIG", str(DEFAULT_CONFIG_PATH)))
    if path.exists():
        values.update(_load_yaml(path))
        logger.debug("Configuration file loaded", path=str(path))

    for env_var, attr in _ENV_KEYS.items():
        raw = os.getenv(env_var)
        if raw is not None and raw != "":
            values[attr] = _coerce(attr, raw)

    for env_var in _API_KEY_VARS:
        api_key = os.getenv(env_var)
        if api_key:
            values["provider_api_key"] = api_key
            break

    values.update(overrides)
    return Settings(**values)
