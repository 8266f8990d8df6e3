import json
from typing import Any, Dict, List, Union

import httpx
import pytest

from key_relay.classifier import FailureClassifier
from key_relay.dispatch import Dispatcher
from key_relay.registry import KeyRegistry
from key_relay.upstream import UpstreamClient


UPSTREAM_URL = "https://upstream.test/v1/chat/completions"

CHAT_PAYLOAD = {
    "model": "mistralai/mistral-7b-instruct:free",
    "messages": [{"role": "user", "content": "Hello"}],
}

COMPLETION = {
    "id": "gen-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi!"}}],
}


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class ScriptedUpstream:
    """httpx handler answering per secret, recording every call.

    A script entry is either an ``httpx.Response`` or an exception to raise.
    The last entry for a secret repeats once the script runs out.
    """

    def __init__(self, scripts: Dict[str, List[Union[httpx.Response, Exception]]]):
        self.scripts = scripts
        self.calls: List[str] = []
        self.bodies: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        secret = request.headers["Authorization"].removeprefix("Bearer ")
        self.calls.append(secret)
        self.bodies.append(json.loads(request.content))

        script = self.scripts[secret]
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, Exception):
            raise entry
        return httpx.Response(entry.status_code, headers=entry.headers, content=entry.content)


def ok(body: Any = None) -> httpx.Response:
    return httpx.Response(200, json=COMPLETION if body is None else body)


def error(status: int, message: str = "error", headers: Dict[str, str] = None) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": status, "message": message}}, headers=headers)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return KeyRegistry([
        ("API_KEY_1", "sk-or-v1-aaaa1111"),
        ("API_KEY_2", "sk-or-v1-bbbb2222"),
        ("API_KEY_3", "sk-or-v1-cccc3333"),
    ])


@pytest.fixture
def make_dispatcher(registry, clock):
    """Build a dispatcher whose upstream is a ScriptedUpstream."""

    def factory(upstream: ScriptedUpstream, status_policy=None) -> Dispatcher:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        return Dispatcher(
            registry=registry,
            client=UpstreamClient(http_client, UPSTREAM_URL),
            classifier=FailureClassifier(status_policy),
            clock=clock,
        )

    return factory
