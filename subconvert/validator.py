"""Structural checks applied to manifests before and after a routine runs."""

from __future__ import annotations

from typing import Any

from .errors import ShapeError, ValidationError

SEQUENCE_FIELDS = ("rules", "proxies", "proxy-groups")
PORT_FIELDS = ("port", "socks-port", "mixed-port")
MODES = ("rule", "global", "direct")
MAX_PORT = 65535


def validate_loose(value: Any) -> None:
    """Require a non-null mapping; nothing else is checked on raw input."""
    if not isinstance(value, dict):
        raise ShapeError(f"manifest must be a mapping, got {type(value).__name__}")


def validate_strict(value: Any) -> None:
    """Loose check plus the field invariants a routine's output must hold."""
    validate_loose(value)

    for name in SEQUENCE_FIELDS:
        # A null value means the key is absent (`rules:` with nothing after it).
        item = value.get(name)
        if item is not None and not isinstance(item, list):
            raise ValidationError(name, f"{name} must be a list, got {type(item).__name__}")

    for name in PORT_FIELDS:
        if name not in value:
            continue
        port = value[name]
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= MAX_PORT:
            raise ValidationError(name, f"{name} must be an integer port in 0-{MAX_PORT}, got {port!r}")

    mode = value.get("mode")
    if mode is not None and mode not in MODES:
        raise ValidationError("mode", f"mode must be one of {', '.join(MODES)}, got {mode!r}")
