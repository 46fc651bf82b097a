"""Caption relay for IPTC Editor.

Forwards a chat-completion body verbatim to the provider, attaching the
server-side API key and attribution headers, so the key never leaves the
server. One outbound call per request, no retries, no shared state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from iptc_editor.config import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


class RelayError(Exception):
    """Upstream call failed; carries the HTTP status the relay should answer with."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


async def forward_chat_completion(
    body: Any,
    settings: Settings,
    referer: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """Send a chat-completion body to the provider and return its JSON.

    Args:
        body: Parsed JSON request body, forwarded unchanged.
        settings: Provides key, upstream URL, timeout and attribution.
        referer: Inbound Referer; falls back to settings.default_referer.
        transport: Optional httpx transport (tests inject a MockTransport).

    Returns:
        The upstream JSON body.

    Raises:
        RelayError: 502 for a non-2xx upstream, 500 for timeout/network failure.
    """
    headers = {
        "Authorization": f"Bearer {settings.openrouter_api_key}",
        "Content-Type": "application/json",
        "HTTP-Referer": referer or settings.default_referer,
        "X-Title": settings.app_title,
    }

    timeout = settings.relay_timeout_seconds
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport) as client:
            # httpx limits each phase; the deadline covers the whole exchange
            resp = await asyncio.wait_for(
                client.post(settings.upstream_url, json=body, headers=headers),
                timeout=timeout,
            )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        logger.error("Upstream timed out after %ss: %r", settings.relay_timeout_seconds, e)
        raise RelayError(500, "Request timeout") from e
    except httpx.HTTPError as e:
        logger.error("Upstream request failed: %r", e)
        raise RelayError(500, str(e) or e.__class__.__name__) from e

    if not resp.is_success:
        logger.error("API Error: %s %s", resp.status_code, resp.text[:500])
        raise RelayError(502, f"Upstream error: {resp.status_code}")

    try:
        return resp.json()
    except json.JSONDecodeError as e:
        logger.error("Upstream returned invalid JSON: %s", e)
        raise RelayError(500, f"Invalid upstream response: {e}") from e


@router.post("/api/generate-caption")
async def generate_caption(request: Request):
    """Relay a captioning request to the provider."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Request body must be JSON"})

    messages = body.get("messages") if isinstance(body, dict) else None
    logger.info("Received request with %s messages", len(messages) if isinstance(messages, list) else 0)

    settings: Settings = getattr(request.app.state, "settings", None) or get_settings()
    transport = getattr(request.app.state, "upstream_transport", None)
    try:
        data = await forward_chat_completion(
            body,
            settings,
            referer=request.headers.get("referer"),
            transport=transport,
        )
    except RelayError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    return data
