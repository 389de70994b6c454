"""Fetch -> parse -> validate -> run routine -> serialize, for one subscription."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

from .errors import ConversionError
from .fetcher import Fetcher, ManifestSource
from .manifest import parse_manifest, serialize_manifest
from .sandbox import DEFAULT_TIME_BUDGET_MS, run_script
from .validator import validate_loose

DEFAULT_FILE_NAME = "config.yaml"
ARTIFACT_EXTENSION = "yaml"
CHUNK_SIZE = 64 * 1024

# Upstream headers a compatible client understands.
FORWARDED_HEADERS = (
    "content-disposition",
    "profile-update-interval",
    "subscription-userinfo",
    "profile-web-page-url",
)


@dataclass(slots=True)
class ProcessedArtifact:
    """Converted manifest on ephemeral storage, readable once then deleted."""

    file_name: str
    path: Path
    response_metadata: dict[str, str] = field(default_factory=dict)
    _consumed: bool = field(default=False, init=False, repr=False)
    _removed: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def forwarded_headers(self) -> dict[str, str]:
        """Recognized upstream metadata that may be passed on to the client."""
        return {k: self.response_metadata[k] for k in FORWARDED_HEADERS if k in self.response_metadata}

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Stream the serialized body once; the file is removed however the read ends."""
        if self._consumed:
            raise RuntimeError(f"artifact {self.file_name} has already been read")
        self._consumed = True
        try:
            with self.path.open("rb") as fh:
                while True:
                    chunk = await asyncio.to_thread(fh.read, chunk_size)
                    if not chunk:
                        break
                    yield chunk
        finally:
            self.cleanup()

    def read_text(self) -> str:
        """Read the whole body once and remove the file."""
        if self._consumed:
            raise RuntimeError(f"artifact {self.file_name} has already been read")
        self._consumed = True
        try:
            return self.path.read_text(encoding="utf-8")
        finally:
            self.cleanup()

    def cleanup(self) -> bool:
        """Delete the backing file. Returns True only for the call that removed it."""
        with self._lock:
            if self._removed:
                return False
            self._removed = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            logging.warning("Temporary file already gone: %s", self.path)
            return False
        except OSError as exc:
            logging.error("Failed to delete temporary file %s: %s", self.path, exc)
            return False
        logging.info("Deleted temporary file: %s", self.path)
        return True


def artifact_file_name(profile_name: str) -> str:
    return f"{profile_name}.{ARTIFACT_EXTENSION}" if profile_name else DEFAULT_FILE_NAME


def transform_manifest(
    text: str,
    routine_source: str,
    profile_name: str,
    origin: str,
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS,
    routine_name: str = "<routine>",
) -> dict[str, Any]:
    """Parse text, loosely validate it and run the routine on it."""
    manifest = parse_manifest(text, origin)
    validate_loose(manifest)
    result = run_script(manifest, routine_source, profile_name, time_budget_ms, routine_name)
    return result.manifest


def write_temp_artifact(body: str, profile_name: str) -> Path:
    safe_name = re.sub(r"[^\w.-]", "_", profile_name) or "config"
    fd, name = tempfile.mkstemp(prefix=f"clash_{safe_name}_", suffix=f".{ARTIFACT_EXTENSION}")
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(body)
    return Path(name)


async def convert(
    source: ManifestSource,
    profile_name: str,
    routine_source: str,
    allow_cache_fallback: bool,
    fetcher: Fetcher,
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS,
    routine_name: str = "<routine>",
) -> ProcessedArtifact:
    """Produce a converted artifact for source; every step is a hard stop."""
    logging.info("Converting %s (profile: %s)", source.url, profile_name or "<unnamed>")
    try:
        fetched = await fetcher.fetch(source, allow_cache_fallback)
        manifest = await asyncio.to_thread(
            transform_manifest,
            fetched.body,
            routine_source,
            profile_name,
            source.url,
            time_budget_ms,
            routine_name,
        )
        body = serialize_manifest(manifest)
        try:
            path = await asyncio.to_thread(write_temp_artifact, body, profile_name)
        except OSError as exc:
            raise ConversionError(f"cannot write temporary artifact: {exc}") from exc
    except ConversionError as exc:
        exc.with_context("convert", source.url)
        raise

    logging.info("Converted manifest written to temporary file %s", path)
    return ProcessedArtifact(
        file_name=artifact_file_name(profile_name),
        path=path,
        response_metadata=dict(fetched.response_metadata),
    )
