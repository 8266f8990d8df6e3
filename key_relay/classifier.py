"""
Failure classification.

Maps one upstream outcome to the action the dispatcher takes next and
to the change applied to the credential that produced it:

    Success            -> SUCCEED, score and cooldown reset
    400 / 404 / 422    -> FAIL_FAST (request shape; any key would fail)
    429                -> COOLDOWN_AND_RETRY, +2, Retry-After or 60s
    401 / 403          -> COOLDOWN_AND_RETRY, +5, 6h
    >= 500             -> RETRY_NEXT_KEY, +1
    other non-2xx      -> FAIL_FAST (non-recoverable)
    transport failure  -> RETRY_NEXT_KEY, +1, 10s

Any status can be remapped to another kind through ``status_policy``.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from .constants import Constants
from .models import (
    ErrorKind,
    Outcome,
    Success,
    TransportFailure,
    UpstreamBody,
    UpstreamError,
)


class Action(Enum):
    SUCCEED = "succeed"
    RETRY_NEXT_KEY = "retry-next-key"
    COOLDOWN_AND_RETRY = "cooldown-and-retry-next-key"
    FAIL_FAST = "fail-fast"


@dataclass
class Verdict:
    """What to do after one attempt, and how the credential changes."""
    action: Action
    kind: Optional[ErrorKind] = None
    status: Union[int, str, None] = None
    body: Optional[UpstreamBody] = None
    message: Optional[str] = None
    reset: bool = False
    score_delta: int = 0
    cooldown_until: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.action in (Action.SUCCEED, Action.FAIL_FAST)


def parse_retry_after_ms(value: Optional[str]) -> Optional[float]:
    """Convert a Retry-After header in seconds to milliseconds.

    HTTP-date, negative and non-finite values yield None.
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds * 1000


class FailureClassifier:
    """Pure mapping from (outcome, now) to a Verdict."""

    def __init__(self, status_policy: Optional[Dict[int, ErrorKind]] = None):
        self.status_policy = dict(status_policy or {})

    def kind_for_status(self, status: int) -> ErrorKind:
        if status in self.status_policy:
            return self.status_policy[status]
        if status in Constants.REQUEST_SHAPE_STATUS_CODES:
            return ErrorKind.REQUEST_SHAPE
        if status == Constants.RATE_LIMIT_STATUS_CODE:
            return ErrorKind.RATE_LIMIT
        if status in Constants.CREDENTIAL_STATUS_CODES:
            return ErrorKind.CREDENTIAL
        if status >= Constants.SERVER_ERROR_THRESHOLD:
            return ErrorKind.UPSTREAM_SERVER
        return ErrorKind.NON_RECOVERABLE

    def classify(self, outcome: Outcome, now: float) -> Verdict:
        if isinstance(outcome, Success):
            return Verdict(Action.SUCCEED, status=outcome.status, body=outcome.body, reset=True)

        if isinstance(outcome, TransportFailure):
            return Verdict(
                Action.RETRY_NEXT_KEY,
                kind=ErrorKind.TRANSPORT,
                status=Constants.TRANSPORT_ERROR_STATUS,
                message=outcome.message,
                score_delta=Constants.TRANSPORT_PENALTY,
                cooldown_until=now + Constants.TRANSPORT_COOLDOWN_MS,
            )

        return self._classify_status(outcome, now)

    def _classify_status(self, outcome: UpstreamError, now: float) -> Verdict:
        kind = self.kind_for_status(outcome.status)
        verdict = Verdict(
            Action.FAIL_FAST,
            kind=kind,
            status=outcome.status,
            body=outcome.body,
            message=outcome.body.summary(),
        )

        if kind == ErrorKind.RATE_LIMIT:
            cooldown_ms = parse_retry_after_ms(outcome.retry_after)
            if cooldown_ms is None:
                cooldown_ms = Constants.RATE_LIMIT_COOLDOWN_MS
            verdict.action = Action.COOLDOWN_AND_RETRY
            verdict.score_delta = Constants.RATE_LIMIT_PENALTY
            verdict.cooldown_until = now + cooldown_ms
        elif kind == ErrorKind.CREDENTIAL:
            verdict.action = Action.COOLDOWN_AND_RETRY
            verdict.score_delta = Constants.CREDENTIAL_PENALTY
            verdict.cooldown_until = now + Constants.CREDENTIAL_COOLDOWN_MS
        elif kind == ErrorKind.UPSTREAM_SERVER:
            verdict.action = Action.RETRY_NEXT_KEY
            verdict.score_delta = Constants.SERVER_ERROR_PENALTY

        return verdict
