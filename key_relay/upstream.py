import asyncio

import httpx
from loguru import logger

from .constants import Constants
from .models import ChatRequest, Outcome, Success, TransportFailure, UpstreamError, parse_body


# ===========================
# Upstream API Client
# ===========================

class UpstreamClient:
    """Performs one bounded-time chat-completion call with a given key."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: str = Constants.UPSTREAM_API_URL,
        timeout: float = Constants.REQUEST_TIMEOUT,
    ):
        self.http_client = http_client
        self.url = url
        self.timeout = timeout

    async def call(self, secret: str, chat_request: ChatRequest) -> Outcome:
        """Send the request, abandoning it if the timeout elapses first."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {secret}",
        }

        try:
            response = await asyncio.wait_for(
                self.http_client.post(self.url, headers=headers, json=chat_request.to_upstream_payload()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Upstream call timed out after {self.timeout}s")
            return TransportFailure(f"Upstream did not respond within {self.timeout}s", timed_out=True)
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream call timed out: {e!r}")
            return TransportFailure(f"Upstream did not respond within {self.timeout}s", timed_out=True)
        except httpx.RequestError as e:
            logger.warning(f"Network error: {e!r}")
            return TransportFailure(f"Failed to connect to upstream: {e!r}")

        body = parse_body(response)
        if response.is_success:
            return Success(response.status_code, body)
        return UpstreamError(response.status_code, body, response.headers.get("Retry-After"))
