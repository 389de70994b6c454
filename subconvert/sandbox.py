"""Execute user transformation routines in a killable worker process.

A routine is Python source declaring ``def main(config, profile_name)``. It runs
in a fresh spawned process with two helpers in its module namespace:

``console``
    capturing proxy with ``log``/``info``/``error``/``debug``. Every call is
    streamed back to the parent, recorded in the result diagnostics and mirrored
    to the ``subconvert.script`` logger.
``check_timeout()``
    raises once the time budget is spent, for routines that want to stop early.

The budget is enforced by killing the worker, so a routine stuck in a tight
loop is still stopped. A routine that returns after its deadline also fails.
This is a time bound, not a security boundary: the routine runs with the full
privileges of the service user.
"""

from __future__ import annotations

import copy
import json
import logging
import multiprocessing
import re
import time
from dataclasses import dataclass, field
from multiprocessing.connection import Connection
from typing import Any, Callable, Mapping, Sequence

from .errors import (
    ConversionError,
    InvalidReturnError,
    MissingEntryPointError,
    NotCallableError,
    ScriptError,
    ScriptRuntimeError,
    ScriptSyntaxError,
    ScriptTimeoutError,
    UndefinedReferenceError,
)
from .validator import validate_strict

DEFAULT_TIME_BUDGET_MS = 10_000
# Allowance for interpreter start-up in the worker before its own clock starts.
KILL_GRACE_SEC = 1.0

ENTRY_POINT_RE = re.compile(r"^\s*def\s+main\s*\(", re.MULTILINE)
SYNTAX_ERRORS = {"SyntaxError", "IndentationError", "TabError"}

LOG_LEVELS = {
    "log": logging.INFO,
    "info": logging.INFO,
    "error": logging.ERROR,
    "debug": logging.DEBUG,
}
_LABELS = {"log": "LOG", "info": "INFO", "error": "ERROR", "debug": "DEBUG"}

script_logger = logging.getLogger("subconvert.script")


@dataclass(slots=True)
class ExecutionResult:
    manifest: dict[str, Any]
    diagnostics: list[tuple[str, str]] = field(default_factory=list)


def render_args(args: Sequence[Any]) -> str:
    """Render console arguments: containers as JSON, the rest with str()."""
    parts: list[str] = []
    for arg in args:
        if isinstance(arg, (dict, list, tuple)):
            try:
                parts.append(json.dumps(arg, ensure_ascii=False, default=str))
            except (TypeError, ValueError):
                parts.append(repr(arg))
        else:
            parts.append(str(arg))
    return " ".join(parts)


def format_diagnostics(diagnostics: Sequence[tuple[str, str]]) -> str:
    """Render captured diagnostics one per line."""
    if not diagnostics:
        return "(no diagnostics)"
    return "\n".join(f"[{_LABELS.get(level, 'LOG')}] {message}" for level, message in diagnostics)


class DiagnosticsConsole:
    """The `console` object a routine sees."""

    def __init__(self, emit: Callable[[str, str], None]) -> None:
        self._emit = emit

    def log(self, *args: Any) -> None:
        self._emit("log", render_args(args))

    def info(self, *args: Any) -> None:
        self._emit("info", render_args(args))

    def error(self, *args: Any) -> None:
        self._emit("error", render_args(args))

    def debug(self, *args: Any) -> None:
        self._emit("debug", render_args(args))


class _BudgetExceeded(Exception):
    pass


def _describe(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        return f"{exc.msg} (line {exc.lineno})"
    return str(exc)


def _worker(
    conn: Connection,
    source: str,
    manifest: dict[str, Any],
    profile_name: str,
    budget_ms: int,
    filename: str,
) -> None:
    """Worker process body. Reports exactly one terminal message on conn."""
    deadline = time.monotonic() + budget_ms / 1000

    def emit(level: str, message: str) -> None:
        conn.send(("diag", level, message))

    def check_timeout() -> None:
        if time.monotonic() > deadline:
            raise _BudgetExceeded(f"routine exceeded its {budget_ms} ms budget")

    namespace: dict[str, Any] = {
        "__name__": "__routine__",
        "console": DiagnosticsConsole(emit),
        "check_timeout": check_timeout,
    }
    try:
        code = compile(source, filename, "exec")
        exec(code, namespace)
        main = namespace.get("main")
        if not callable(main):
            raise TypeError("'main' is not callable")
        result = main(manifest, profile_name)
        check_timeout()
    except _BudgetExceeded as exc:
        conn.send(("timeout", str(exc)))
        return
    except Exception as exc:
        conn.send(("error", type(exc).__name__, _describe(exc)))
        return

    if not isinstance(result, Mapping):
        conn.send(("invalid", type(result).__name__))
        return
    try:
        conn.send(("ok", dict(result)))
    except Exception as exc:
        conn.send(("error", type(exc).__name__, f"result cannot be transferred: {exc}"))


def classify_failure(
    type_name: str, message: str, diagnostics: Sequence[tuple[str, str]]
) -> ScriptError:
    """Map a routine's exception onto the script error taxonomy by its message."""
    text = f"{type_name}: {message}"
    if type_name in SYNTAX_ERRORS:
        return ScriptSyntaxError(text, diagnostics=diagnostics)
    if "is not defined" in message:
        return UndefinedReferenceError(text, diagnostics=diagnostics)
    if "is not callable" in message:
        return NotCallableError(text, diagnostics=diagnostics)
    return ScriptRuntimeError(text, diagnostics=diagnostics)


def _collect(
    conn: Connection,
    kill_at: float,
    diagnostics: list[tuple[str, str]],
    routine_name: str,
) -> tuple[Any, ...]:
    while True:
        remaining = kill_at - time.monotonic()
        if remaining <= 0 or not conn.poll(remaining):
            return ("killed",)
        try:
            message = conn.recv()
        except EOFError:
            return ("crashed",)
        if message[0] != "diag":
            return message
        _, level, text = message
        diagnostics.append((level, text))
        script_logger.log(LOG_LEVELS.get(level, logging.INFO), "[%s] %s", routine_name, text)


def run_script(
    manifest: dict[str, Any],
    routine_source: str,
    profile_name: str,
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS,
    routine_name: str = "<routine>",
) -> ExecutionResult:
    """Run routine `main` on a deep copy of manifest within the time budget."""
    context = f"run routine {routine_name}"
    if not ENTRY_POINT_RE.search(routine_source):
        raise MissingEntryPointError("routine does not declare `def main(...)`", context=context)

    mp = multiprocessing.get_context("spawn")
    receiver, sender = mp.Pipe(duplex=False)
    process = mp.Process(
        target=_worker,
        args=(sender, routine_source, copy.deepcopy(manifest), profile_name, time_budget_ms, routine_name),
        daemon=True,
    )
    diagnostics: list[tuple[str, str]] = []
    process.start()
    sender.close()
    kill_at = time.monotonic() + time_budget_ms / 1000 + KILL_GRACE_SEC
    try:
        outcome = _collect(receiver, kill_at, diagnostics, routine_name)
    finally:
        if process.is_alive():
            process.kill()
        process.join()
        receiver.close()

    kind = outcome[0]
    try:
        if kind == "ok":
            result = outcome[1]
            validate_strict(result)
            return ExecutionResult(manifest=result, diagnostics=diagnostics)
        if kind == "killed":
            raise ScriptTimeoutError(
                f"routine did not finish within {time_budget_ms} ms and was terminated",
                diagnostics=diagnostics,
            )
        if kind == "timeout":
            raise ScriptTimeoutError(outcome[1], diagnostics=diagnostics)
        if kind == "invalid":
            raise InvalidReturnError(
                f"main must return a mapping, got {outcome[1]}", diagnostics=diagnostics
            )
        if kind == "crashed":
            raise ScriptRuntimeError(
                f"worker exited without a result (exit code {process.exitcode})",
                diagnostics=diagnostics,
            )
        raise classify_failure(outcome[1], outcome[2], diagnostics)
    except ConversionError as exc:
        exc.with_context("run routine", routine_name)
        logging.error("Routine %s failed: %s", routine_name, exc.message)
        logging.error("Routine diagnostics:\n%s", format_diagnostics(diagnostics))
        raise
