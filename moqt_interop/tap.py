"""
TAP log parser.

Counts passed / failed / skipped results in interop client logs.  Logs are
usually captured from docker compose, so TAP may be preceded by build noise
and every line may carry a ``service-1  | `` prefix.

Rules:
  - "TAP version 13" or "TAP version 14" anywhere marks the log as TAP
  - only top-level test points count; 4-space indented subtests are ignored
  - "ok ... # SKIP" is skipped, "not ok ... # TODO" is not a failure
  - without a version line, legacy "✓ name" / "✗ name" lines are counted

Usage:
    moqt-interop-tap results/*.log
"""

import argparse
import logging
import os
import re
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_COMPOSE_PREFIX = re.compile(r"^[\w.-]+\s*\| ?")
_VERSION_LINE = re.compile(r"^TAP version 1[34]\b")
_OK_LINE = re.compile(r"^ok(?: \d+| - |$)")
_SKIP_DIRECTIVE = re.compile(r" # SKIP", re.IGNORECASE)
_TODO_DIRECTIVE = re.compile(r" # TODO", re.IGNORECASE)


@dataclass
class TapSummary:
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    format: str = "unknown"  # "tap14", "legacy" or "unknown"

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped


def _strip_prefix(line: str) -> str:
    return _COMPOSE_PREFIX.sub("", line, count=1)


def parse_tap(text: str) -> TapSummary:
    lines = [_strip_prefix(line) for line in text.splitlines()]
    summary = TapSummary()

    if any(_VERSION_LINE.match(line) for line in lines):
        summary.format = "tap14"
        for line in lines:
            if line.startswith("    "):
                continue
            if _OK_LINE.match(line):
                if _SKIP_DIRECTIVE.search(line):
                    summary.skipped += 1
                else:
                    summary.passed += 1
            elif line.startswith("not ok"):
                if _TODO_DIRECTIVE.search(line):
                    summary.passed += 1
                else:
                    summary.failed += 1

    elif any(line.startswith(("✓", "✗")) for line in lines):
        summary.format = "legacy"
        summary.passed = sum(1 for line in lines if line.startswith("✓"))
        summary.failed = sum(1 for line in lines if line.startswith("✗"))

    return summary


def parse_tap_file(path: str) -> TapSummary:
    """Parse a log file; a missing file yields an empty 'unknown' summary."""
    if not os.path.isfile(path):
        logger.warning("TAP log not found: %s", path)
        return TapSummary()
    with open(path, encoding="utf-8", errors="replace") as f:
        return parse_tap(f.read())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="moqt-interop-tap",
        description="Summarise pass/fail/skip counts in interop client logs",
    )
    parser.add_argument("logs", nargs="+", help="Log files containing TAP output")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    any_failed = False
    for path in args.logs:
        s = parse_tap_file(path)
        print(
            f"{path}: passed={s.passed} failed={s.failed} skipped={s.skipped} "
            f"total={s.total} format={s.format}"
        )
        any_failed = any_failed or s.failed > 0
    return 1 if any_failed else 0


if __name__ == "__main__":
    sys.exit(main())
