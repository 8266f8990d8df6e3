import os
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from loguru import logger

from .constants import Constants
from .models import ErrorKind

API_KEY_PATTERN = re.compile(r"^API_KEY_(\d+)$")

# Kinds a status code can be remapped to from config.yaml
CONFIGURABLE_KINDS = {
    ErrorKind.RATE_LIMIT,
    ErrorKind.CREDENTIAL,
    ErrorKind.REQUEST_SHAPE,
    ErrorKind.UPSTREAM_SERVER,
    ErrorKind.NON_RECOVERABLE,
}


# ===========================
# Configuration Management
# ===========================

class Settings:
    """Application settings loaded from config.yaml and the environment."""

    def __init__(
        self,
        keys: List[Tuple[str, str]],
        upstream_url: str = Constants.UPSTREAM_API_URL,
        host: str = Constants.DEFAULT_HOST,
        port: int = Constants.DEFAULT_PORT,
        log_level: str = Constants.DEFAULT_LOG_LEVEL,
        request_timeout: float = Constants.REQUEST_TIMEOUT,
        status_policy: Optional[Dict[int, ErrorKind]] = None,
    ):
        self.keys = keys
        self.upstream_url = upstream_url
        self.host = host
        self.port = port
        self.log_level = log_level
        self.request_timeout = request_timeout
        self.status_policy = status_policy or {}

    @staticmethod
    def load_config(path: str) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info(f"{path} not found, using environment only.")
            return {}
        except Exception as e:
            logger.error(f"Error loading {path}: {e}")
            return {}

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment, falling back to config.yaml."""
        environ = os.environ if environ is None else environ
        config = cls.load_config(environ.get("KEY_RELAY_CONFIG", Constants.CONFIG_FILE))

        server_config = config.get("server") or {}
        upstream_config = config.get("upstream") or {}

        return cls(
            keys=load_keys(environ, upstream_config.get("keys") or []),
            upstream_url=environ.get("UPSTREAM_URL") or upstream_config.get("url", Constants.UPSTREAM_API_URL),
            host=environ.get("HOST") or server_config.get("host", Constants.DEFAULT_HOST),
            port=_parse_port(environ.get("PORT") or server_config.get("port")),
            log_level=(environ.get("LOG_LEVEL") or server_config.get("log_level", Constants.DEFAULT_LOG_LEVEL)).upper(),
            status_policy=parse_status_policy(upstream_config.get("status_policy") or {}),
        )


def load_keys(environ: Mapping[str, str], configured: List[Any]) -> List[Tuple[str, str]]:
    """Collect (identifier, secret) pairs from API_KEY_<n> variables and config.

    Blank secrets are dropped here and again by the registry.
    """
    numbered = []
    for name, value in environ.items():
        match = API_KEY_PATTERN.match(name)
        if match and value and value.strip():
            numbered.append((int(match.group(1)), name, value.strip()))
    keys = [(name, value) for _, name, value in sorted(numbered)]

    for i, value in enumerate(configured, start=1):
        if isinstance(value, str) and value.strip():
            keys.append((f"config_key_{i}", value.strip()))
        elif value:
            logger.warning(f"Item {i} in 'upstream.keys' is not a string. Skipping.")
    return keys


def parse_status_policy(raw: Mapping[Any, Any]) -> Dict[int, ErrorKind]:
    """Normalize ``upstream.status_policy`` into a status -> ErrorKind map."""
    if not isinstance(raw, Mapping):
        logger.warning("'upstream.status_policy' is not a mapping. Ignoring it.")
        return {}

    policy: Dict[int, ErrorKind] = {}
    for status, kind_name in raw.items():
        try:
            code = int(status)
        except (TypeError, ValueError):
            logger.warning(f"Status '{status}' in 'upstream.status_policy' is not an integer. Skipping.")
            continue
        try:
            kind = ErrorKind(kind_name)
        except ValueError:
            kind = None
        if kind not in CONFIGURABLE_KINDS:
            logger.warning(f"Unknown error kind '{kind_name}' for status {code}. Skipping.")
            continue
        policy[code] = kind
    return policy


def _parse_port(value: Any) -> int:
    if value in (None, ""):
        return Constants.DEFAULT_PORT
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid port '{value}', using default: {Constants.DEFAULT_PORT}")
        return Constants.DEFAULT_PORT
