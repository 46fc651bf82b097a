"""API routes for the caption editor.

Upload a photo, generate a caption and keywords for it, edit them, and
download the photo with the edited metadata embedded. Every mutating route
returns the full session view so a client can re-render from scratch.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx
from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.responses import Response

from iptc_editor.captioner import (
    CaptionClient,
    CredentialInvalidError,
    CredentialMissingError,
    UpstreamError,
)
from iptc_editor.config import Settings
from iptc_editor.metadata import extract_metadata, identify_image
from iptc_editor.models import CaptionUpdate, KeywordAdd, SessionView
from iptc_editor.session import EditSession, SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/editor", tags=["editor"])

# Host is ignored by ASGITransport; only the path reaches the relay route.
IN_PROCESS_RELAY_URL = "http://iptc-editor/api/generate-caption"

# Prompt and JSON envelope around the base64 image in a relay request
RELAY_BODY_OVERHEAD = 4096


def relay_body_size(image_size: int) -> int:
    """Upper bound on the relay request body for an image of this many bytes."""
    return 4 * ((image_size + 2) // 3) + RELAY_BODY_OVERHEAD


# ── Helpers ──────────────────────────────────────────────────────────


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _store(request: Request) -> SessionStore:
    return request.app.state.sessions


def _get_session(request: Request, session_id: str) -> EditSession:
    session = _store(request).get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _get_idle_session(request: Request, session_id: str) -> EditSession:
    """Session lookup for edits; refused while an analysis would overwrite them."""
    session = _get_session(request, session_id)
    if session.busy:
        raise HTTPException(status_code=409, detail="Analysis in progress")
    return session


# ── Routes ───────────────────────────────────────────────────────────


@router.post("/sessions", response_model=SessionView, status_code=201)
async def upload_image(request: Request, image: UploadFile = File(...)):
    """Open an editing session for an uploaded photo."""
    raw = await image.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    limit = _settings(request).max_body_bytes
    if relay_body_size(len(raw)) > limit:
        logger.warning("Rejected %d byte upload %s: too large to caption", len(raw), image.filename)
        raise HTTPException(
            status_code=413,
            detail=f"Image too large to caption: {len(raw)} bytes encode past the {limit} byte limit",
        )

    session = _store(request).create(
        image.filename or "image.jpg",
        raw,
        keyword_limit=_settings(request).keyword_limit,
    )
    return session.view()


@router.get("/sessions/{session_id}", response_model=SessionView)
def get_session(request: Request, session_id: str):
    """Current state of a session."""
    return _get_session(request, session_id).view()


@router.post("/sessions/{session_id}/analyze", response_model=SessionView)
async def analyze(request: Request, session_id: str):
    """Read existing metadata, generate new metadata, and merge them.

    The provider is reached through the relay route in-process, so the API
    key stays in server configuration.
    """
    session = _get_session(request, session_id)
    settings = _settings(request)
    if session.busy:
        raise HTTPException(status_code=409, detail="Analysis already in progress")
    if not settings.has_api_key():
        raise HTTPException(status_code=400, detail="Error: API key required")

    session.busy = True
    try:
        existing = extract_metadata(session.image_bytes)
        client = CaptionClient.via_relay(
            settings,
            url=IN_PROCESS_RELAY_URL,
            transport=httpx.ASGITransport(app=request.app),
        )
        generated = await client.generate(
            session.image_bytes,
            existing,
            media_type=identify_image(session.image_bytes),
        )
    except CredentialMissingError as e:
        raise HTTPException(status_code=400, detail=f"Error: {e}") from e
    except CredentialInvalidError as e:
        raise HTTPException(status_code=401, detail=f"Error: {e}") from e
    except UpstreamError as e:
        if e.status_code == 413:
            raise HTTPException(status_code=413, detail="Error: image too large to caption") from e
        raise HTTPException(status_code=502, detail=f"Error: {e}") from e
    except Exception as e:
        logger.exception("Analysis failed for session %s", session_id[:8])
        raise HTTPException(status_code=422, detail=f"Error: {e}") from e
    finally:
        session.busy = False

    session.apply(existing, generated)
    return session.view()


@router.put("/sessions/{session_id}/caption", response_model=SessionView)
def update_caption(request: Request, session_id: str, req: CaptionUpdate):
    """Replace the working caption."""
    session = _get_idle_session(request, session_id)
    session.set_caption(req.caption)
    return session.view()


@router.post("/sessions/{session_id}/keywords", response_model=SessionView)
def add_keyword(request: Request, session_id: str, req: KeywordAdd):
    """Add a keyword; blanks, duplicates and additions past the cap are ignored."""
    session = _get_idle_session(request, session_id)
    session.add_keyword(req.keyword)
    return session.view()


@router.delete("/sessions/{session_id}/keywords/{index}", response_model=SessionView)
def remove_keyword(request: Request, session_id: str, index: int):
    """Remove the keyword at a position."""
    session = _get_idle_session(request, session_id)
    try:
        session.remove_keyword(index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return session.view()


@router.get("/sessions/{session_id}/download")
def download(request: Request, session_id: str):
    """Embed the working metadata and return the photo as an attachment."""
    session = _get_idle_session(request, session_id)
    try:
        filename, data = session.export(_settings(request).download_prefix)
    except Exception as e:
        logger.exception("Saving metadata failed for session %s", session_id[:8])
        raise HTTPException(status_code=422, detail=f"Error saving: {e}") from e

    return Response(
        content=data,
        media_type="image/jpeg",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@router.delete("/sessions/{session_id}")
def discard_session(request: Request, session_id: str):
    """Drop a session and its image bytes."""
    if not _store(request).discard(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"discarded": session_id}
