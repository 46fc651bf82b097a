"""IPTC Editor REST API.

FastAPI server hosting the caption relay and the editor session routes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iptc_editor.api_editor import router as editor_router
from iptc_editor.config import Settings, get_settings
from iptc_editor.relay import router as relay_router
from iptc_editor.session import SessionStore

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the app with its own settings and session store.

    Args:
        settings: Settings to use; loaded from the environment when omitted.
        upstream_transport: httpx transport for provider calls (tests pass a mock).
    """
    settings = settings or get_settings()

    app = FastAPI(title="IPTC Editor API", version=VERSION)
    app.state.settings = settings
    app.state.sessions = SessionStore(
        max_sessions=settings.max_sessions,
        ttl_seconds=settings.session_ttl_seconds,
    )
    app.state.upstream_transport = upstream_transport

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > settings.max_body_bytes:
            logger.warning("Rejected %s byte body on %s", length, request.url.path)
            return JSONResponse(status_code=413, content={"error": "Request body too large"})
        return await call_next(request)

    @app.get("/health")
    def health():
        """API health check; reports whether the relay has a key to forward."""
        return {
            "status": "online" if settings.has_api_key() else "degraded",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "api_key": "configured" if settings.has_api_key() else "missing",
            "sessions": len(app.state.sessions),
        }

    app.include_router(relay_router)
    app.include_router(editor_router)
    return app


# ── CLI Entry Point ─────────────────────────────────────────────


def main():
    """Start the API server."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
