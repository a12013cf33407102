"""Configuration loading and validation for revbot."""

import logging
import os
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.config/revbot/config.yaml"
ENV_PREFIX = "REVBOT__"

KNOWN_KEYS = {
    "gitlab",
    "webex",
    "server",
    "cache_ttl",
    "dedup_window",
    "retry",
    "drain_timeout",
}

KNOWN_SECTION_KEYS = {
    "gitlab": {"webhook_token", "webhook_path"},
    "webex": {"access_token", "api_url", "timeout"},
    "server": {"host", "port"},
    "retry": {"max_attempts", "base_delay", "max_delay", "jitter"},
}

# Secrets that may come from the environment instead of the file.
ENV_OVERRIDES = {
    "REVBOT__GITLAB__WEBHOOK_TOKEN": ("gitlab", "webhook_token"),
    "REVBOT__WEBEX__ACCESS_TOKEN": ("webex", "access_token"),
}


@dataclass
class GitlabConfig:
    webhook_token: str = ""
    webhook_path: str = "/webhook"


@dataclass
class WebexConfig:
    access_token: str = ""
    api_url: str = "https://webexapis.com/v1"
    timeout: float = 10


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 4001


@dataclass
class RetryConfig:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.5  # upper bound of the random seconds added per retry


@dataclass
class Config:
    gitlab: GitlabConfig = field(default_factory=GitlabConfig)
    webex: WebexConfig = field(default_factory=WebexConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache_ttl: float = 3600
    dedup_window: float = 600
    drain_timeout: float = 10


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_positive(value, field_name: str, allow_zero: bool = False) -> None:
    if not _is_number(value):
        raise ValueError(f"{field_name} must be a number, got {type(value).__name__}")
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{field_name} must be {qualifier}, got {value}")


def _validate_config(config: Config) -> None:
    """Validate config values, raising ValueError on invalid fields."""
    if not config.gitlab.webhook_token:
        raise ValueError("gitlab.webhook_token is required")
    if not config.webex.access_token:
        raise ValueError("webex.access_token is required")

    for field_name, value in (
        ("gitlab.webhook_path", config.gitlab.webhook_path),
        ("webex.api_url", config.webex.api_url),
        ("server.host", config.server.host),
    ):
        if not isinstance(value, str) or not value:
            raise ValueError(f"{field_name} must be a non-empty string, got {value!r}")
    if not config.gitlab.webhook_path.startswith("/"):
        raise ValueError(
            f"gitlab.webhook_path must start with '/', got {config.gitlab.webhook_path!r}"
        )

    if not isinstance(config.server.port, int) or isinstance(config.server.port, bool):
        raise ValueError(f"server.port must be an integer, got {type(config.server.port).__name__}")
    if not 1 <= config.server.port <= 65535:
        raise ValueError(f"server.port must be between 1 and 65535, got {config.server.port}")

    _require_positive(config.webex.timeout, "webex.timeout")
    _require_positive(config.cache_ttl, "cache_ttl")
    _require_positive(config.dedup_window, "dedup_window")
    _require_positive(config.drain_timeout, "drain_timeout", allow_zero=True)

    retry = config.retry
    if not isinstance(retry.max_attempts, int) or isinstance(retry.max_attempts, bool):
        raise ValueError(
            f"retry.max_attempts must be an integer, got {type(retry.max_attempts).__name__}"
        )
    if retry.max_attempts < 1:
        raise ValueError(f"retry.max_attempts must be at least 1, got {retry.max_attempts}")
    _require_positive(retry.base_delay, "retry.base_delay", allow_zero=True)
    _require_positive(retry.max_delay, "retry.max_delay", allow_zero=True)
    _require_positive(retry.jitter, "retry.jitter", allow_zero=True)
    if retry.max_delay < retry.base_delay:
        raise ValueError(
            f"retry.max_delay ({retry.max_delay}) must not be smaller than "
            f"retry.base_delay ({retry.base_delay})"
        )


def _apply_section(target, raw_section, section: str) -> None:
    """Copy known keys of one YAML mapping onto a section dataclass."""
    if not isinstance(raw_section, dict):
        raise ValueError(f"'{section}' must be a mapping")
    for key, value in raw_section.items():
        if key not in KNOWN_SECTION_KEYS[section]:
            logger.warning("Unknown config key '%s.%s'; ignoring", section, key)
            continue
        setattr(target, key, value)


def load_config(path: str | None = None) -> Config:
    """Load configuration from a YAML file plus environment overrides.

    Config path resolution order:
    1. Explicit path argument
    2. REVBOT_CONFIG_PATH environment variable
    3. ~/.config/revbot/config.yaml

    REVBOT__GITLAB__WEBHOOK_TOKEN and REVBOT__WEBEX__ACCESS_TOKEN take
    precedence over the values in the file.
    """
    if path is None:
        path = os.environ.get("REVBOT_CONFIG_PATH")
    if path is None:
        path = os.path.expanduser(DEFAULT_CONFIG_PATH)

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a YAML mapping, got {type(raw).__name__}")

    for key in raw:
        if key not in KNOWN_KEYS:
            logger.warning("Unknown config key '%s'; ignoring", key)

    config = Config()

    for section in KNOWN_SECTION_KEYS:
        if section in raw:
            _apply_section(getattr(config, section), raw[section], section)

    if "cache_ttl" in raw:
        config.cache_ttl = raw["cache_ttl"]
    if "dedup_window" in raw:
        config.dedup_window = raw["dedup_window"]
    if "drain_timeout" in raw:
        config.drain_timeout = raw["drain_timeout"]

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            setattr(getattr(config, section), key, value)

    for name in os.environ:
        if name.startswith(ENV_PREFIX) and name not in ENV_OVERRIDES:
            logger.warning("Unknown environment override '%s'; ignoring", name)

    # YAML may hand us ints or quoted strings for secrets.
    config.gitlab.webhook_token = str(config.gitlab.webhook_token or "")
    config.webex.access_token = str(config.webex.access_token or "")
    if isinstance(config.webex.api_url, str):
        config.webex.api_url = config.webex.api_url.rstrip("/")

    _validate_config(config)

    return config
