# ===========================
# Constants
# ===========================

class Constants:
    """Centralized constants for the relay."""

    # API Configuration
    UPSTREAM_API_URL = "https://openrouter.ai/api/v1/chat/completions"
    CONFIG_FILE = "config.yaml"

    # Server
    DEFAULT_HOST = "0.0.0.0"
    DEFAULT_PORT = 10000
    DEFAULT_LOG_LEVEL = "INFO"

    # Request configuration
    REQUEST_TIMEOUT = 30.0  # Per attempt, in seconds
    DEFAULT_TEMPERATURE = 0.7
    MAX_KEEPALIVE_CONNECTIONS = 20
    MAX_CONNECTIONS = 100

    # Cooldowns, in milliseconds
    RATE_LIMIT_COOLDOWN_MS = 60_000
    CREDENTIAL_COOLDOWN_MS = 6 * 60 * 60 * 1000
    TRANSPORT_COOLDOWN_MS = 10_000

    # Error score penalties
    RATE_LIMIT_PENALTY = 2
    CREDENTIAL_PENALTY = 5
    SERVER_ERROR_PENALTY = 1
    TRANSPORT_PENALTY = 1

    # Status code groups
    REQUEST_SHAPE_STATUS_CODES = {400, 404, 422}
    CREDENTIAL_STATUS_CODES = {401, 403}
    RATE_LIMIT_STATUS_CODE = 429
    SERVER_ERROR_THRESHOLD = 500

    # Attempt trail sentinels
    TRANSPORT_ERROR_STATUS = "transport_error"
    SKIPPED_STATUS = "skipped"

    # Logging
    KEY_MASK_LENGTH = 4
    ERROR_TEXT_MAX_LENGTH = 500
