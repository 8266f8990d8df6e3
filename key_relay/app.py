import math
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from loguru import logger

from .classifier import FailureClassifier
from .constants import Constants
from .dispatch import DispatchResult, Dispatcher, TerminalState, monotonic_ms
from .registry import KeyRegistry
from .selector import KeySelector
from .settings import Settings
from .upstream import UpstreamClient


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = monotonic_ms,
) -> FastAPI:
    """Build the relay application.

    ``transport`` replaces the network layer of the shared httpx client.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.registry = KeyRegistry(settings.keys)

        app.state.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout),
            limits=httpx.Limits(
                max_keepalive_connections=Constants.MAX_KEEPALIVE_CONNECTIONS,
                max_connections=Constants.MAX_CONNECTIONS,
            ),
            transport=transport,
        )
        app.state.selector = KeySelector()
        app.state.dispatcher = Dispatcher(
            registry=app.state.registry,
            client=UpstreamClient(app.state.http_client, settings.upstream_url, settings.request_timeout),
            classifier=FailureClassifier(settings.status_policy),
            selector=app.state.selector,
            clock=clock,
        )

        logger.info(f"Relay is ready! Forwarding to {settings.upstream_url}")

        yield

        await app.state.http_client.aclose()

    app = FastAPI(
        title="Key Relay",
        description="Chat-completion relay with key rotation and cooldown handling",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ===========================
    # API Endpoints
    # ===========================

    @app.post("/chat")
    async def chat(request: Request) -> Response:
        """Relay one chat-completion request."""
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON in request body"})

        try:
            result = await request.app.state.dispatcher.dispatch(payload)
        except Exception:
            logger.exception("Unexpected error while relaying request")
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

        return to_response(result)

    @app.get("/keys")
    async def list_keys(request: Request):
        """Health view of every configured key; secrets are masked."""
        registry: KeyRegistry = request.app.state.registry
        now = clock()
        selection = request.app.state.selector.select(registry.credentials, now)
        keys = selection.describe()
        for entry, credential in zip(keys, selection.ordered):
            entry["masked"] = credential.masked
            entry["ready"] = credential.is_ready(now)
        return {"keys": keys, "any_ready": selection.any_ready}

    @app.get("/healthz")
    async def health_check():
        """Health check endpoint."""
        return {"ok": True}

    return app


def to_response(result: DispatchResult) -> Response:
    """Convert a dispatch result into an HTTP response."""
    if result.state == TerminalState.SUCCEEDED and isinstance(result.body, str):
        return PlainTextResponse(result.body, status_code=result.status_code)

    headers = {}
    if result.retry_after_ms is not None:
        headers["Retry-After"] = str(max(1, math.ceil(result.retry_after_ms / 1000)))
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)
