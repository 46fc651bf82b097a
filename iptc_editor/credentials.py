"""Local credential store for the direct variant.

Holds a single provider key in a small JSON file, the way a browser app
would keep it in local storage. Missing or unreadable files read as no key.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "OPENROUTER_API_KEY"


class FileCredentialStore:
    """Single-key credential file with get/set/evict."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self) -> Optional[str]:
        """Return the stored key, or None."""
        value = self._load().get(CREDENTIAL_KEY)
        return value if isinstance(value, str) and value else None

    def set(self, key: str) -> None:
        """Store a key, creating the parent directory if needed."""
        data = self._load()
        data[CREDENTIAL_KEY] = key
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def evict(self) -> None:
        """Forget the stored key (called after the provider rejects it)."""
        data = self._load()
        if data.pop(CREDENTIAL_KEY, None) is None:
            return
        self.path.write_text(json.dumps(data), encoding="utf-8")
        logger.info("Evicted stored API key from %s", self.path)
