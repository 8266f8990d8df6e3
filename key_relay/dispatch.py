import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .classifier import Action, FailureClassifier, Verdict
from .constants import Constants
from .models import AttemptRecord, ChatRequest, Credential, ErrorKind
from .registry import KeyRegistry
from .selector import KeySelector
from .upstream import UpstreamClient


def monotonic_ms() -> float:
    return time.monotonic() * 1000


# ===========================
# Errors
# ===========================

class InputError(ValueError):
    """The inbound request is malformed."""


class ConfigError(RuntimeError):
    """No usable credentials are configured."""


# ===========================
# Results
# ===========================

class TerminalState(Enum):
    INVALID_INPUT = "invalid_input"
    NO_CREDENTIALS = "no_credentials"
    RATE_LIMITED = "rate_limited"
    SUCCEEDED = "succeeded"
    FAILED_FAST = "failed_fast"
    EXHAUSTED = "exhausted"


@dataclass
class DispatchResult:
    """Status code and body handed back to the HTTP layer."""
    state: TerminalState
    status_code: int
    body: Any
    retry_after_ms: Optional[int] = None


def validate_request(payload: Any) -> ChatRequest:
    """Check the inbound body and build a ChatRequest from it."""
    if not isinstance(payload, dict):
        raise InputError("Request body must be a JSON object")

    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise InputError("'model' must be a non-empty string")

    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InputError("'messages' must be a non-empty array")

    temperature = payload.get("temperature", Constants.DEFAULT_TEMPERATURE)
    if temperature is None:
        temperature = Constants.DEFAULT_TEMPERATURE
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        raise InputError("'temperature' must be a number")

    return ChatRequest(model=model, messages=messages, temperature=temperature)


# ===========================
# Dispatch Loop
# ===========================

class Dispatcher:
    """Runs one request through selection, upstream calls and classification."""

    def __init__(
        self,
        registry: KeyRegistry,
        client: UpstreamClient,
        classifier: Optional[FailureClassifier] = None,
        selector: Optional[KeySelector] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.registry = registry
        self.client = client
        self.classifier = classifier or FailureClassifier()
        self.selector = selector or KeySelector()
        self.clock = clock

    async def dispatch(self, payload: Any) -> DispatchResult:
        try:
            chat_request = validate_request(payload)
        except InputError as e:
            logger.warning(f"Rejected request: {e}")
            return DispatchResult(TerminalState.INVALID_INPUT, 400, {"error": str(e)})

        try:
            return await self._run(chat_request)
        except ConfigError as e:
            logger.error(f"{e}")
            return DispatchResult(TerminalState.NO_CREDENTIALS, 500, {"error": str(e)})

    async def _run(self, chat_request: ChatRequest) -> DispatchResult:
        credentials = self.registry.credentials
        if not credentials:
            raise ConfigError("No API keys configured")

        selection = self.selector.select(credentials, self.clock())
        if not selection.any_ready:
            retry_after_ms = int(selection.retry_after_ms)
            logger.error(f"All {len(credentials)} keys are cooling down. Next one ready in {retry_after_ms}ms")
            return DispatchResult(
                TerminalState.RATE_LIMITED,
                429,
                {
                    "error": "All API keys are currently cooling down. Please try again later.",
                    "retry_after_ms": retry_after_ms,
                    "keys": selection.describe(),
                },
                retry_after_ms=retry_after_ms,
            )

        logger.info(f"Request for model: {chat_request.model}")
        attempts: List[AttemptRecord] = []
        last_verdict: Optional[Verdict] = None

        for position, credential in enumerate(selection.ordered, start=1):
            if not credential.is_ready(self.clock()):
                logger.info(f"Skipping {credential.identifier}: cooling down")
                attempts.append(AttemptRecord(credential.identifier, Constants.SKIPPED_STATUS, "cooling down"))
                continue

            logger.info(f"Attempt {position}/{len(selection.ordered)} with {credential.identifier} ({credential.masked})")
            outcome = await self.client.call(credential.secret, chat_request)
            verdict = self.classifier.classify(outcome, self.clock())
            self._apply(credential, verdict)

            if verdict.action == Action.SUCCEED:
                logger.info(f"Success with {credential.identifier}. Status: {verdict.status}")
                return DispatchResult(TerminalState.SUCCEEDED, verdict.status, verdict.body.to_json())

            attempts.append(AttemptRecord(credential.identifier, verdict.status, verdict.message))
            last_verdict = verdict

            if verdict.action == Action.FAIL_FAST:
                logger.error(f"Not retrying after {verdict.status} from {credential.identifier}: {verdict.message}")
                return self._fail_fast(verdict, attempts)

            logger.warning(f"{credential.identifier} failed with {verdict.status}, trying next key")

        logger.error(f"All {len(attempts)} attempts failed")
        return self._exhausted(last_verdict, attempts)

    def _apply(self, credential: Credential, verdict: Verdict) -> None:
        """Update the credential object that was attempted, even if a reload replaced it."""
        if verdict.reset:
            credential.reset()
            return
        if verdict.score_delta or verdict.cooldown_until is not None:
            credential.penalize(verdict.score_delta, verdict.cooldown_until)
        if verdict.action == Action.COOLDOWN_AND_RETRY:
            remaining = int(verdict.cooldown_until - self.clock())
            logger.warning(f"{credential.identifier} hit {verdict.status}. Cooling down for {remaining}ms.")

    @staticmethod
    def _fail_fast(verdict: Verdict, attempts: List[AttemptRecord]) -> DispatchResult:
        details = verdict.body.to_json() if verdict.body else verdict.message
        if verdict.kind == ErrorKind.REQUEST_SHAPE:
            body: Dict[str, Any] = {
                "error": f"Upstream rejected the request with status {verdict.status}",
                "details": details,
                "hint": "Check that the model identifier exists and the messages payload is valid.",
            }
        else:
            body = {
                "error": f"Upstream returned non-recoverable status {verdict.status}",
                "details": details,
                "attempts": [attempt.to_dict() for attempt in attempts],
            }
        return DispatchResult(TerminalState.FAILED_FAST, verdict.status, body)

    @staticmethod
    def _exhausted(last_verdict: Optional[Verdict], attempts: List[AttemptRecord]) -> DispatchResult:
        status_code = 500
        details = None
        if last_verdict is not None:
            details = last_verdict.body.to_json() if last_verdict.body else last_verdict.message
            if last_verdict.kind in (ErrorKind.TRANSPORT, ErrorKind.UPSTREAM_SERVER):
                status_code = 502

        return DispatchResult(
            TerminalState.EXHAUSTED,
            status_code,
            {
                "error": "All API keys failed or reached their limit.",
                "details": details,
                "attempts": [attempt.to_dict() for attempt in attempts],
            },
        )
