import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from .constants import Constants


def mask_key(key: str) -> str:
    """Mask an API key for logging purposes."""
    if not key:
        return key
    if len(key) <= 8:
        return "****"
    return f"...{key[-Constants.KEY_MASK_LENGTH:]}"


def truncate(text: str, max_length: int = Constants.ERROR_TEXT_MAX_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


# ===========================
# Error Taxonomy
# ===========================

class ErrorKind(Enum):
    """Failure categories understood by the relay."""
    INPUT = "input"
    CONFIG = "config"
    CREDENTIAL = "credential"
    RATE_LIMIT = "rate_limit"
    REQUEST_SHAPE = "request_shape"
    UPSTREAM_SERVER = "upstream_server"
    TRANSPORT = "transport"
    NON_RECOVERABLE = "non_recoverable"


# ===========================
# Credentials
# ===========================

@dataclass
class Credential:
    """One upstream key plus its health bookkeeping.

    ``error_score`` and ``cooldown_until`` are always read and written
    together under the credential's own lock.
    """
    identifier: str
    secret: str
    error_score: int = 0
    cooldown_until: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def masked(self) -> str:
        return mask_key(self.secret)

    def snapshot(self) -> Tuple[int, float]:
        """Return the (error_score, cooldown_until) pair."""
        with self._lock:
            return self.error_score, self.cooldown_until

    def is_ready(self, now: float) -> bool:
        _, cooldown_until = self.snapshot()
        return cooldown_until <= now

    def reset(self) -> None:
        with self._lock:
            self.error_score = 0
            self.cooldown_until = 0.0

    def penalize(self, score_delta: int, cooldown_until: Optional[float] = None) -> None:
        """Add to the error score and extend the cooldown, never shortening it."""
        with self._lock:
            self.error_score += score_delta
            if cooldown_until is not None:
                self.cooldown_until = max(self.cooldown_until, cooldown_until)


@dataclass
class AttemptRecord:
    """Outcome of trying one credential for one request."""
    key: str
    status: Union[int, str]
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"key": self.key, "status": self.status}
        if self.message:
            data["message"] = self.message
        return data


# ===========================
# Request Context
# ===========================

@dataclass
class ChatRequest:
    """Validated inbound chat request."""
    model: str
    messages: List[Any]
    temperature: float = Constants.DEFAULT_TEMPERATURE

    def to_upstream_payload(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "stream": False,
        }


# ===========================
# Upstream Bodies
# ===========================

@dataclass
class JsonBody:
    """A structured JSON body."""
    data: Any

    def to_json(self) -> Any:
        return self.data

    def summary(self) -> str:
        return truncate(str(self.data))


@dataclass
class ErrorBody:
    """A structured upstream error: ``{"error": {"code": ..., "message": ...}}``."""
    status: int
    code: Optional[Union[int, str]]
    message: Optional[str]
    data: Dict[str, Any]

    def to_json(self) -> Any:
        return self.data

    def summary(self) -> str:
        return truncate(self.message or str(self.data))


@dataclass
class OpaqueBody:
    """A body that could not be parsed as JSON."""
    text: str

    def to_json(self) -> Any:
        return self.text

    def summary(self) -> str:
        return truncate(self.text)


UpstreamBody = Union[JsonBody, ErrorBody, OpaqueBody]


def parse_body(response: httpx.Response) -> UpstreamBody:
    """Parse an upstream response body into one of the body variants."""
    try:
        data = response.json()
    except ValueError:
        return OpaqueBody(response.text)

    error = data.get("error") if isinstance(data, dict) else None
    if response.is_success or error is None:
        return JsonBody(data)

    if isinstance(error, dict):
        return ErrorBody(response.status_code, error.get("code"), error.get("message"), data)
    return ErrorBody(response.status_code, None, str(error), data)


# ===========================
# Upstream Outcomes
# ===========================

@dataclass
class Success:
    status: int
    body: UpstreamBody


@dataclass
class UpstreamError:
    status: int
    body: UpstreamBody
    retry_after: Optional[str] = None


@dataclass
class TransportFailure:
    message: str
    timed_out: bool = False


Outcome = Union[Success, UpstreamError, TransportFailure]
