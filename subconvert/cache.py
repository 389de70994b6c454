"""On-disk last-known-good store for fetched subscription manifests.

Entries are never evicted. A cache entry is the availability guarantee for
the fetch fallback, so stale entries stay until someone deletes the files.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

BODY_SUFFIX = ".cache"
METADATA_SUFFIX = ".headers.json"


def cache_key(url: str) -> str:
    """Return the stable digest used to name a URL's cache files."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CacheEntry:
    key: str
    body: str
    response_metadata: dict[str, str] = field(default_factory=dict)
    written_at: datetime | None = None


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    tmp.write_text(text, encoding="utf-8")
    Path.replace(tmp, path)


class CacheStore:
    """Flat directory holding one body file and one metadata file per key."""

    def __init__(self, cache_dir: str | Path) -> None:
        self.cache_dir = Path(cache_dir)

    def body_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}{BODY_SUFFIX}"

    def metadata_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}{METADATA_SUFFIX}"

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for key, or None when no body has been cached."""
        body_path = self.body_path(key)
        try:
            body = body_path.read_text(encoding="utf-8")
            mtime = body_path.stat().st_mtime
        except FileNotFoundError:
            return None

        return CacheEntry(
            key=key,
            body=body,
            response_metadata=self._read_metadata(key),
            written_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
        )

    def put(self, key: str, body: str, response_metadata: dict[str, str]) -> None:
        """Overwrite the entry for key; body and metadata are separate atomic writes."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.body_path(key), body)
        _atomic_write(
            self.metadata_path(key),
            json.dumps(dict(response_metadata), ensure_ascii=False),
        )
        logging.debug("Cached %s bytes under key %s", len(body), key)

    def _read_metadata(self, key: str) -> dict[str, str]:
        path = self.metadata_path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logging.warning("Cache entry %s has no metadata file; using empty metadata", key)
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logging.error("Invalid cached metadata for %s: %s", key, exc)
            return {}
        if not isinstance(data, dict):
            logging.error("Cached metadata for %s is not an object; ignoring it", key)
            return {}
        return {str(k): str(v) for k, v in data.items()}
