import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from loguru import logger


# ===========================
# Constants
# ===========================

class Constants:
    """Centralized constants for relay configuration."""

    CONFIG_FILE = "config.yaml"
    CONFIG_PATH_ENV = "GEMINI_RELAY_CONFIG"

    # Gemini API
    GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
    GEMINI_DEFAULT_MODEL = "gemini-2.5-flash"
    GEMINI_KEY_ENV_VARS = ["GEMINI_API_KEY"]

    # HTTP timeouts
    REQUEST_TIMEOUT = 20.0

    # Connection limits
    MAX_KEEPALIVE_CONNECTIONS = 10
    MAX_CONNECTIONS = 50

    # Inbound limits (express.json default)
    MAX_BODY_BYTES = 100 * 1024

    # Error response truncation
    ERROR_TEXT_MAX_LENGTH = 1000

    # Server
    DEFAULT_HOST = "0.0.0.0"
    DEFAULT_PORT = 3000
    DEFAULT_LOG_LEVEL = "INFO"
    INDEX_FILE = "index.html"


# ===========================
# Configuration Management
# ===========================

@dataclass(frozen=True)
class RelaySettings:
    """Immutable relay settings, resolved once at startup."""

    credentials: Tuple[str, ...] = ()
    model: str = Constants.GEMINI_DEFAULT_MODEL
    base_url: str = Constants.GEMINI_BASE_URL
    request_timeout: float = Constants.REQUEST_TIMEOUT
    max_body_bytes: int = Constants.MAX_BODY_BYTES
    cors_origins: Tuple[str, ...] = ()
    index_file: str = Constants.INDEX_FILE
    log_level: str = Constants.DEFAULT_LOG_LEVEL
    host: str = Constants.DEFAULT_HOST
    port: int = Constants.DEFAULT_PORT

    @property
    def endpoint(self) -> str:
        """Upstream generateContent URL, without the key parameter."""
        return f"{self.base_url.rstrip('/')}/{self.model}:generateContent"


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    config_path = path or os.environ.get(Constants.CONFIG_PATH_ENV, Constants.CONFIG_FILE)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"{config_path} not found, using defaults and environment.")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing {config_path}: {e}")
        return {}


def resolve_credentials(
    gemini_config: Dict[str, Any],
    environ: Mapping[str, str]
) -> Tuple[str, ...]:
    """Collect credentials in priority order: env vars first, then literal keys.

    Blank entries are dropped. Order is kept as configured.
    """
    env_names: List[str] = gemini_config.get("key_env_vars", Constants.GEMINI_KEY_ENV_VARS) or []
    literal_keys: List[Any] = gemini_config.get("keys", []) or []

    candidates = [environ.get(name, "") for name in env_names] + list(literal_keys)
    return tuple(
        str(value).strip()
        for value in candidates
        if value is not None and str(value).strip()
    )


def load_settings(
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> RelaySettings:
    """Build RelaySettings from config.yaml and the environment."""
    if config is None:
        config = load_config()
    if environ is None:
        environ = os.environ

    gemini_config = config.get("gemini", {}) or {}
    http_config = config.get("http", {}) or {}
    static_config = config.get("static", {}) or {}
    server_config = config.get("server", {}) or {}

    credentials = resolve_credentials(gemini_config, environ)
    if not credentials:
        logger.error("--- CONFIGURATION ERROR --- No Gemini API keys found in environment or config.")

    model = environ.get("GEMINI_MODEL") or gemini_config.get("model", Constants.GEMINI_DEFAULT_MODEL)
    port = environ.get("PORT") or server_config.get("port", Constants.DEFAULT_PORT)

    return RelaySettings(
        credentials=credentials,
        model=model,
        base_url=gemini_config.get("base_url", Constants.GEMINI_BASE_URL),
        request_timeout=float(gemini_config.get("request_timeout", Constants.REQUEST_TIMEOUT)),
        max_body_bytes=int(http_config.get("max_body_bytes", Constants.MAX_BODY_BYTES)),
        cors_origins=tuple(http_config.get("cors_origins", []) or []),
        index_file=static_config.get("index_file", Constants.INDEX_FILE),
        log_level=str(config.get("log_level", Constants.DEFAULT_LOG_LEVEL)).upper(),
        host=server_config.get("host", Constants.DEFAULT_HOST),
        port=int(port),
    )


def setup_logging(level: str = Constants.DEFAULT_LOG_LEVEL) -> None:
    """Route loguru output to stderr at the given level."""
    logger.remove()
    logger.add(sys.stderr, level=level)
