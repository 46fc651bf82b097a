"""Caption generation for IPTC Editor.

Builds the multimodal chat-completion request (inline base64 image + an
instruction prompt), sends it either to the relay or straight to the
provider, and parses the free-text reply into a caption and keyword list.

Reply parsing never raises: a reply that does not follow the
"CAPTION: ... | KEYWORDS: ..." pattern degrades to a placeholder caption
and an empty keyword list.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Callable, Optional

import httpx

from iptc_editor.config import Settings
from iptc_editor.credentials import FileCredentialStore
from iptc_editor.models import ImageMetadata

logger = logging.getLogger(__name__)

PLACEHOLDER_CAPTION = "No caption generated"

CAPTION_PATTERN = re.compile(r"CAPTION:\s*(.+?)\s*(\||$)", re.IGNORECASE)
KEYWORDS_PATTERN = re.compile(r"KEYWORDS:\s*(.+?)\s*$", re.IGNORECASE)

CAPTION_PROMPT = """Analyze this image and:
1. Write a concise AP Style caption (15 words max)
2. Generate 20+ relevant keywords
{context}Format: CAPTION: [caption] | KEYWORDS: [comma-separated keywords]"""

STRUCTURED_PROMPT = """Analyze this image and:
1. Write a concise AP Style caption (15 words max)
2. Generate 20+ relevant keywords
{context}Respond in JSON only: {{"caption": "...", "keywords": ["keyword", ...]}}"""

KEY_PROMPT = "Enter your OpenRouter API key (will be saved locally): "


class CaptionError(Exception):
    """Base class for failures surfaced to the user during generation."""


class CredentialMissingError(CaptionError):
    """No provider key stored and none supplied."""


class CredentialInvalidError(CaptionError):
    """Provider rejected the key (401); the stored key has been evicted."""


class UpstreamError(CaptionError):
    """Relay or provider answered with a non-success status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"API error: {status_code}")


def build_prompt(existing_caption: str = "", structured: bool = False) -> str:
    """Build the instruction text, mentioning the existing caption if any."""
    context = f'3. Consider existing caption: "{existing_caption}"\n' if existing_caption else ""
    template = STRUCTURED_PROMPT if structured else CAPTION_PROMPT
    return template.format(context=context)


def build_request(
    image_bytes: bytes,
    media_type: str = "image/jpeg",
    existing_caption: str = "",
    model: str = "deepseek/deepseek-chat:free",
    temperature: float = 0.3,
    structured: bool = False,
) -> dict[str, Any]:
    """Build the chat-completion body: one user message, image part then text part."""
    image_b64 = base64.b64encode(image_bytes).decode("ascii")
    body: dict[str, Any] = {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{media_type};base64,{image_b64}"},
                    },
                    {"type": "text", "text": build_prompt(existing_caption, structured)},
                ],
            }
        ],
        "temperature": temperature,
    }
    if structured:
        body["response_format"] = {"type": "json_object"}
    return body


def _parse_json_reply(content: str) -> Optional[ImageMetadata]:
    """Accept a structured {"caption", "keywords"} reply, fenced or bare."""
    cleaned = content.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        cleaned = "\n".join(lines[1:-1])
    if not cleaned.startswith("{"):
        return None

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "caption" not in data:
        return None

    keywords = data.get("keywords") or []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    return ImageMetadata(
        caption=str(data.get("caption") or "").strip() or PLACEHOLDER_CAPTION,
        keywords=[str(k) for k in keywords],
    )


def parse_caption_response(content: Optional[str]) -> ImageMetadata:
    """Parse a model reply into caption and keywords.

    Structured JSON replies are taken as-is. Otherwise the text is matched
    against the CAPTION:/KEYWORDS: markers; a missing caption becomes the
    placeholder and missing keywords an empty list.
    """
    if not content:
        logger.warning("Empty model reply, using placeholder caption")
        return ImageMetadata(caption=PLACEHOLDER_CAPTION)

    structured = _parse_json_reply(content)
    if structured is not None:
        return structured

    caption_match = CAPTION_PATTERN.search(content)
    keywords_match = KEYWORDS_PATTERN.search(content)
    if not caption_match:
        logger.warning("Model reply has no CAPTION: marker: %r", content[:120])

    caption = caption_match.group(1).strip() if caption_match else ""
    keywords = keywords_match.group(1).split(",") if keywords_match else []
    return ImageMetadata(caption=caption or PLACEHOLDER_CAPTION, keywords=keywords)


def first_choice_content(data: Any) -> Optional[str]:
    """Return choices[0].message.content from a completion body, or None."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Completion body has no choices[0].message.content")
        return None
    return content if isinstance(content, str) else None


class CaptionClient:
    """Sends captioning requests to the relay or directly to the provider.

    With a credential store the client runs in direct mode: it attaches the
    bearer key and attribution headers itself and evicts the key on a 401.
    Without one it assumes a relay that holds the key.
    """

    def __init__(
        self,
        url: str,
        *,
        model: str,
        temperature: float = 0.3,
        structured: bool = False,
        credentials: Optional[FileCredentialStore] = None,
        prompt_for_key: Optional[Callable[[str], Optional[str]]] = None,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.model = model
        self.temperature = temperature
        self.structured = structured
        self.credentials = credentials
        self.prompt_for_key = prompt_for_key
        self.referer = referer
        self.title = title
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def via_relay(
        cls,
        settings: Settings,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CaptionClient":
        """Client for the relay endpoint; the relay supplies the key."""
        return cls(
            url or settings.relay_url,
            model=settings.model,
            temperature=settings.temperature,
            structured=settings.structured_replies,
            transport=transport,
        )

    @classmethod
    def direct(
        cls,
        settings: Settings,
        credentials: FileCredentialStore,
        prompt_for_key: Optional[Callable[[str], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CaptionClient":
        """Client that calls the provider with a locally stored key."""
        return cls(
            settings.upstream_url,
            model=settings.model,
            temperature=settings.temperature,
            structured=settings.structured_replies,
            credentials=credentials,
            prompt_for_key=prompt_for_key,
            referer=settings.default_referer,
            title=settings.app_title,
            transport=transport,
        )

    def _resolve_key(self) -> str:
        key = self.credentials.get() if self.credentials else None
        if not key and self.prompt_for_key is not None:
            key = (self.prompt_for_key(KEY_PROMPT) or "").strip()
        if not key:
            raise CredentialMissingError("API key required")
        self.credentials.set(key)
        return key

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.credentials is None:
            return headers
        headers["Authorization"] = f"Bearer {self._resolve_key()}"
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    async def generate(
        self,
        image_bytes: bytes,
        existing: Optional[ImageMetadata] = None,
        media_type: str = "image/jpeg",
    ) -> ImageMetadata:
        """Generate a caption and keywords for one image.

        Args:
            image_bytes: Raw image bytes, sent inline as a data URI.
            existing: Metadata already in the file; its caption is given as context.
            media_type: MIME type for the data URI.

        Returns:
            Parsed ImageMetadata (placeholder caption on a malformed reply).

        Raises:
            CredentialMissingError: Direct mode with no key available.
            CredentialInvalidError: The provider answered 401.
            UpstreamError: Any other non-success status.
        """
        headers = self._headers()
        body = build_request(
            image_bytes,
            media_type=media_type,
            existing_caption=existing.caption if existing else "",
            model=self.model,
            temperature=self.temperature,
            structured=self.structured,
        )

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(self.url, json=body, headers=headers)

        if resp.status_code == 401:
            if self.credentials is not None:
                self.credentials.evict()
            raise CredentialInvalidError("Invalid API key - please enter a new one")
        if not resp.is_success:
            logger.error("Caption request failed: %s %s", resp.status_code, resp.text[:300])
            raise UpstreamError(resp.status_code)

        result = parse_caption_response(first_choice_content(resp.json()))
        logger.info("Generated caption %r with %d keywords", result.caption[:60], len(result.keywords))
        return result
