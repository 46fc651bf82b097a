"""Tests for the editor session routes."""

import io
import json
from urllib.parse import unquote

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from iptc_editor.api import create_app
from iptc_editor.api_editor import relay_body_size
from iptc_editor.config import Settings
from iptc_editor.metadata import extract_metadata, write_metadata


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def jpeg_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (80, 60), color=(200, 120, 40)).save(buf, "JPEG")
    return buf.getvalue()


@pytest.fixture
def settings():
    return Settings(_env_file=None, openrouter_api_key="sk-or-v1-editor")


@pytest.fixture
def upstream():
    """Records provider calls and answers with whatever `reply` holds."""

    class Upstream:
        status = 200
        reply = _completion("CAPTION: Sunset over bay | KEYWORDS: sunset, bay, boats")
        calls = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.calls.append(request)
            return httpx.Response(self.status, json=self.reply)

    up = Upstream()
    up.calls = []
    return up


@pytest.fixture
def client(settings, upstream):
    app = create_app(settings, upstream_transport=httpx.MockTransport(upstream.handler))
    return TestClient(app)


def _upload(client, data, filename="harbor.jpg"):
    resp = client.post("/editor/sessions", files={"image": (filename, data, "image/jpeg")})
    assert resp.status_code == 201
    return resp.json()["session_id"]


def test_upload_opens_session(client, jpeg_bytes):
    resp = client.post("/editor/sessions", files={"image": ("harbor.jpg", jpeg_bytes, "image/jpeg")})
    assert resp.status_code == 201
    view = resp.json()
    assert view["filename"] == "harbor.jpg"
    assert view["size"] == len(jpeg_bytes)
    assert view["analyzed"] is False
    assert view["keyword_limit"] == 25


def test_upload_empty_file_rejected(client):
    resp = client.post("/editor/sessions", files={"image": ("empty.jpg", b"", "image/jpeg")})
    assert resp.status_code == 400


def test_analyze_merges_existing_and_generated(client, upstream, jpeg_bytes):
    tagged = write_metadata(jpeg_bytes, "Old caption", ["bay", "harbor"])
    sid = _upload(client, tagged)

    resp = client.post(f"/editor/sessions/{sid}/analyze")

    assert resp.status_code == 200
    view = resp.json()
    assert view["analyzed"] is True
    assert view["caption"] == "Sunset over bay"
    assert [k["keyword"] for k in view["keywords"]] == ["bay", "harbor", "sunset", "boats"]
    assert view["existing"] == {"caption": "Old caption", "keywords": ["bay", "harbor"]}

    # The relay attached the server-side key; the prompt carried the old caption
    [request] = upstream.calls
    assert request.headers["authorization"] == "Bearer sk-or-v1-editor"
    text = json.loads(request.content)["messages"][0]["content"][1]["text"]
    assert 'Consider existing caption: "Old caption"' in text


def test_analyze_without_key(upstream, jpeg_bytes):
    app = create_app(
        Settings(_env_file=None, openrouter_api_key=""),
        upstream_transport=httpx.MockTransport(upstream.handler),
    )
    client = TestClient(app)
    sid = _upload(client, jpeg_bytes)

    resp = client.post(f"/editor/sessions/{sid}/analyze")
    assert resp.status_code == 400
    assert "API key required" in resp.json()["detail"]
    assert upstream.calls == []


def test_analyze_upstream_failure(client, upstream, jpeg_bytes):
    upstream.status = 500
    upstream.reply = {"error": "overloaded"}
    sid = _upload(client, jpeg_bytes)

    resp = client.post(f"/editor/sessions/{sid}/analyze")

    assert resp.status_code == 502
    assert resp.json()["detail"] == "Error: API error: 502"
    assert client.get(f"/editor/sessions/{sid}").json()["busy"] is False


def test_analyze_while_busy(client, upstream, jpeg_bytes):
    sid = _upload(client, jpeg_bytes)
    client.app.state.sessions.get(sid).busy = True

    resp = client.post(f"/editor/sessions/{sid}/analyze")
    assert resp.status_code == 409
    assert upstream.calls == []


@pytest.fixture
def noisy_jpeg():
    buf = io.BytesIO()
    Image.effect_noise((200, 150), 64).convert("RGB").save(buf, "JPEG", quality=95)
    return buf.getvalue()


def _sized_client(upstream, max_body_bytes):
    settings = Settings(
        _env_file=None, openrouter_api_key="sk-or-v1-editor", max_body_bytes=max_body_bytes
    )
    app = create_app(settings, upstream_transport=httpx.MockTransport(upstream.handler))
    return TestClient(app)


def test_upload_rejected_when_encoded_image_exceeds_limit(upstream, noisy_jpeg):
    """The raw upload fits, but its base64 relay request would not."""
    client = _sized_client(upstream, max_body_bytes=len(noisy_jpeg) + 2000)

    resp = client.post(
        "/editor/sessions", files={"image": ("big.jpg", noisy_jpeg, "image/jpeg")}
    )

    assert resp.status_code == 413
    assert "too large" in resp.json()["detail"]
    assert len(client.app.state.sessions) == 0


def test_accepted_upload_can_be_analyzed(upstream, noisy_jpeg):
    client = _sized_client(upstream, max_body_bytes=relay_body_size(len(noisy_jpeg)))
    sid = _upload(client, noisy_jpeg)

    resp = client.post(f"/editor/sessions/{sid}/analyze")

    assert resp.status_code == 200
    assert len(upstream.calls) == 1


@pytest.mark.parametrize(
    "method, path, body",
    [
        ("PUT", "caption", {"caption": "Boats at dawn"}),
        ("POST", "keywords", {"keyword": "dusk"}),
        ("DELETE", "keywords/0", None),
        ("GET", "download", None),
    ],
)
def test_edits_refused_while_busy(client, jpeg_bytes, method, path, body):
    sid = _upload(client, jpeg_bytes)
    client.post(f"/editor/sessions/{sid}/keywords", json={"keyword": "harbor"})
    client.app.state.sessions.get(sid).busy = True

    resp = client.request(method, f"/editor/sessions/{sid}/{path}", json=body)

    assert resp.status_code == 409
    session = client.app.state.sessions.get(sid)
    assert session.caption == ""
    assert session.keywords == ["harbor"]


def test_analyze_non_image(client, upstream):
    sid = _upload(client, b"this is not a photo", filename="notes.jpg")
    resp = client.post(f"/editor/sessions/{sid}/analyze")
    assert resp.status_code == 422
    assert resp.json()["detail"].startswith("Error:")
    assert upstream.calls == []


def test_analyze_malformed_reply_uses_placeholder(client, upstream, jpeg_bytes):
    upstream.reply = _completion("Sorry, I can't help with that.")
    sid = _upload(client, jpeg_bytes)

    view = client.post(f"/editor/sessions/{sid}/analyze").json()
    assert view["caption"] == "No caption generated"
    assert view["keywords"] == []


def test_edit_keywords_and_caption(client, jpeg_bytes):
    sid = _upload(client, jpeg_bytes)

    for kw in ("a", "b", "c", "b", "  "):
        client.post(f"/editor/sessions/{sid}/keywords", json={"keyword": kw})
    view = client.get(f"/editor/sessions/{sid}").json()
    assert [k["keyword"] for k in view["keywords"]] == ["a", "b", "c"]

    view = client.delete(f"/editor/sessions/{sid}/keywords/1").json()
    assert view["keywords"] == [{"index": 0, "keyword": "a"}, {"index": 1, "keyword": "c"}]

    view = client.put(f"/editor/sessions/{sid}/caption", json={"caption": "Boats at dawn"}).json()
    assert view["caption"] == "Boats at dawn"


def test_remove_bad_index(client, jpeg_bytes):
    sid = _upload(client, jpeg_bytes)
    resp = client.delete(f"/editor/sessions/{sid}/keywords/3")
    assert resp.status_code == 404


def test_download_embeds_metadata(client, jpeg_bytes):
    sid = _upload(client, jpeg_bytes)
    client.post(f"/editor/sessions/{sid}/analyze")
    client.post(f"/editor/sessions/{sid}/keywords", json={"keyword": "dusk"})

    resp = client.get(f"/editor/sessions/{sid}/download")

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    disposition = resp.headers["content-disposition"]
    assert disposition.startswith("attachment;")
    assert unquote(disposition.split("''", 1)[1]) == "iptc_edited_harbor.jpg"

    meta = extract_metadata(resp.content)
    assert meta.caption == "Sunset over bay"
    assert meta.keywords == ["sunset", "bay", "boats", "dusk"]


def test_download_non_jpeg_fails(client):
    buf = io.BytesIO()
    Image.new("RGB", (10, 10)).save(buf, "PNG")
    sid = _upload(client, buf.getvalue(), filename="shot.png")

    resp = client.get(f"/editor/sessions/{sid}/download")
    assert resp.status_code == 422
    assert resp.json()["detail"].startswith("Error saving:")


def test_unknown_session(client):
    assert client.get("/editor/sessions/nope").status_code == 404
    assert client.post("/editor/sessions/nope/analyze").status_code == 404
    assert client.delete("/editor/sessions/nope").status_code == 404


def test_discard_session(client, jpeg_bytes):
    sid = _upload(client, jpeg_bytes)
    assert client.delete(f"/editor/sessions/{sid}").json() == {"discarded": sid}
    assert client.get(f"/editor/sessions/{sid}").status_code == 404
