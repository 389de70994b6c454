"""YAML reading and writing for proxy manifests."""

from __future__ import annotations

from typing import Any

import yaml

from .errors import ManifestParseError, ManifestSerializeError

LINE_WIDTH = 120


class _NoAliasDumper(yaml.SafeDumper):
    """Write shared sub-objects inline instead of as &anchor/*alias pairs."""

    def ignore_aliases(self, data: Any) -> bool:
        return True


def parse_manifest(text: str, origin: str = "<manifest>") -> Any:
    """Parse manifest text; shape is checked separately by the validator."""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManifestParseError(f"cannot parse {origin} as YAML: {exc}") from exc


def serialize_manifest(manifest: dict[str, Any]) -> str:
    """Dump manifest keeping the routine's key order."""
    try:
        return yaml.dump(
            manifest,
            Dumper=_NoAliasDumper,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
            width=LINE_WIDTH,
        )
    except yaml.YAMLError as exc:
        raise ManifestSerializeError(f"cannot write manifest as YAML: {exc}") from exc
