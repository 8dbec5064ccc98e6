"""
Scenario outcomes and the TAP version 14 reporter.

Output shape, one block per scenario:

    ok 1 - setup-only
      ---
      duration_ms: 42
      connection_id: 5f1c...
      ...
    not ok 2 - announce-only
      ---
      duration_ms: 2001
      message: "timeout after 2000ms"
      ...
    ok 4 - subscribe-error # SKIP API requires announcement before subscribe

Every line is flushed as soon as it is written so a crash never loses or
reorders what was already reported.
"""

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, TextIO

TAP_VERSION = 14

# Diagnostics labels printed first, in this order; others follow as inserted.
DIAGNOSTIC_LABELS = (
    "connection_id",
    "publisher_connection_id",
    "subscriber_connection_id",
)


class Diagnostics(dict):
    """Label -> string record attached to a passing result.  Unset labels are omitted."""

    def ordered(self) -> list[tuple[str, str]]:
        items = [(k, self[k]) for k in DIAGNOSTIC_LABELS if self.get(k)]
        items += [(k, v) for k, v in self.items() if k not in DIAGNOSTIC_LABELS and v]
        return items


class Status(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Outcome:
    status: Status
    duration_ms: int = 0
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    message: str = ""
    reason: str = ""

    @classmethod
    def passed(cls, diagnostics: Optional[Diagnostics], duration_ms: int) -> "Outcome":
        return cls(Status.PASSED, duration_ms, diagnostics or Diagnostics())

    @classmethod
    def failed(cls, message: str, duration_ms: int) -> "Outcome":
        return cls(Status.FAILED, duration_ms, message=message)

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(Status.SKIPPED, reason=reason)

    @property
    def is_failure(self) -> bool:
        return self.status is Status.FAILED


def describe(exc: BaseException) -> str:
    """
    Render an exception and its ``__cause__`` chain on one line:
    "publisher failed to connect: connection refused".
    """
    parts = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current) or type(current).__name__
        if text not in parts:
            parts.append(text)
        current = current.__cause__
    return ": ".join(parts)


def escape(message: str) -> str:
    """Make ``message`` safe for a double-quoted, single-line YAML scalar."""
    return (
        message.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )


class TapReporter:
    """Streams TAP to ``stream`` (stdout by default)."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream if stream is not None else sys.stdout

    def _emit(self, line: str) -> None:
        self._stream.write(line + "\n")
        self._stream.flush()

    def header(self, client: str, relay_url: str, count: int) -> None:
        self._emit(f"TAP version {TAP_VERSION}")
        self._emit(f"# {client}")
        self._emit(f"# Relay: {relay_url}")
        self._emit(f"1..{count}")

    def result(self, number: int, name: str, outcome: Outcome) -> None:
        if outcome.status is Status.SKIPPED:
            self._emit(f"ok {number} - {name} # SKIP {outcome.reason}")
            return

        if outcome.status is Status.PASSED:
            self._emit(f"ok {number} - {name}")
        else:
            self._emit(f"not ok {number} - {name}")
        self._emit("  ---")
        self._emit(f"  duration_ms: {outcome.duration_ms}")
        if outcome.status is Status.PASSED:
            for label, value in outcome.diagnostics.ordered():
                self._emit(f"  {label}: {value}")
        else:
            self._emit(f'  message: "{escape(outcome.message)}"')
        self._emit("  ...")
