"""IPTC Editor Pydantic models.

Shapes shared by the metadata codec, the captioner and the editor API.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ImageMetadata(BaseModel):
    """A caption and ordered keyword list, as read from an image or a model reply."""

    caption: str = ""
    keywords: list[str] = Field(default_factory=list)

    @field_validator("keywords")
    @classmethod
    def strip_blank_keywords(cls, v: list[str]) -> list[str]:
        """Drop keywords that are empty after trimming."""
        return [k.strip() for k in v if k and k.strip()]


class KeywordEntry(BaseModel):
    """One rendered keyword tag; index is what a remove action refers to."""

    index: int
    keyword: str


class SessionView(BaseModel):
    """Full snapshot of an editor session, re-sent after every change."""

    session_id: str
    filename: str
    size: int
    analyzed: bool = False
    busy: bool = False
    caption: str = ""
    keywords: list[KeywordEntry] = Field(default_factory=list)
    keyword_limit: int
    existing: Optional[ImageMetadata] = None
    generated: Optional[ImageMetadata] = None


class CaptionUpdate(BaseModel):
    caption: str = Field(..., max_length=2000)


class KeywordAdd(BaseModel):
    keyword: str = Field(..., max_length=256)
