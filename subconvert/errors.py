"""Error taxonomy for the subscription conversion pipeline."""

from __future__ import annotations

from typing import Sequence


class ConversionError(Exception):
    """Base class for every pipeline failure."""

    def __init__(self, message: str, *, context: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def with_context(self, operation: str, subject: str) -> "ConversionError":
        """Attach operation/subject context once; inner context wins."""
        if self.context is None:
            self.context = f"{operation} {subject}"
        return self

    def __str__(self) -> str:
        if self.context:
            return f"{self.context}: {self.message}"
        return self.message


class DownloadError(ConversionError):
    """Live fetch failed and no usable cache entry was available."""

    def __init__(self, url: str, cause: BaseException | str) -> None:
        super().__init__(f"download failed for {url}: {cause}")
        self.url = url
        self.cause = cause


class CacheCorruptError(ConversionError):
    """Cached body exists but cannot be interpreted."""


class ManifestParseError(ConversionError):
    """Manifest text is not a parseable YAML document."""


class ManifestSerializeError(ConversionError):
    """Manifest holds values that cannot be written as YAML."""


class ShapeError(ConversionError):
    """Manifest is not a structured mapping."""


class ValidationError(ConversionError):
    """Manifest violates a structural invariant on a named field."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class ScriptError(ConversionError):
    """Failure raised while loading or running a user routine."""

    def __init__(
        self,
        message: str,
        *,
        diagnostics: Sequence[tuple[str, str]] = (),
        context: str | None = None,
    ) -> None:
        super().__init__(message, context=context)
        self.diagnostics = list(diagnostics)


class MissingEntryPointError(ScriptError):
    """Routine source does not declare `main`."""


class ScriptSyntaxError(ScriptError):
    """Routine source failed to compile."""


class UndefinedReferenceError(ScriptError):
    """Routine referenced a name that does not exist."""


class NotCallableError(ScriptError):
    """Routine tried to call something that is not callable."""


class ScriptTimeoutError(ScriptError):
    """Routine exceeded its wall-clock budget."""


class InvalidReturnError(ScriptError):
    """Routine `main` returned something other than a mapping."""


class ScriptRuntimeError(ScriptError):
    """Any other exception raised by a routine."""
