"""Parsing of assertion-suite runner output.

Recognises the Jest/Vitest JSON reporter and TAP. Output in neither
format falls back to the runner's exit code.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_TAP_LINE = re.compile(
    r"^\s*(?P<not>not )?ok(?:\s+(?P<num>\d+))?(?:\s+-)?(?:\s+(?P<name>.*?))?"
    r"(?:\s+#\s*(?P<directive>SKIP|TODO)\b.*)?\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class AssertionReport:
    """Structured pass/fail result of one assertion-suite run."""

    passed: bool
    total: int = 0
    failed: tuple[str, ...] = ()
    parsed: bool = False
    format: str = "exit-code"


def parse_assertion_output(stdout: str, exit_code: int | None) -> AssertionReport:
    """Parse runner output into an AssertionReport.

    A report only passes when no assertion failed and the runner exited 0.
    """
    data = _find_json_report(stdout)
    if data is not None:
        total, failed = _from_jest_json(data)
        return AssertionReport(
            passed=not failed and exit_code == 0,
            total=total,
            failed=tuple(failed),
            parsed=True,
            format="json",
        )

    tap = _from_tap(stdout)
    if tap is not None:
        total, failed = tap
        return AssertionReport(
            passed=not failed and exit_code == 0,
            total=total,
            failed=tuple(failed),
            parsed=True,
            format="tap",
        )

    return AssertionReport(passed=exit_code == 0)


def _find_json_report(stdout: str) -> dict[str, Any] | None:
    """Locate a Jest/Vitest JSON report, possibly surrounded by log noise."""
    decoder = json.JSONDecoder()
    text = stdout.strip()
    start = text.find("{")
    while start != -1:
        try:
            data, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(data, dict) and "testResults" in data:
            return data
        start = text.find("{", start + 1)
    return None


def _from_jest_json(data: dict[str, Any]) -> tuple[int, list[str]]:
    total = 0
    failed: list[str] = []
    for suite in data.get("testResults", []):
        assertions = suite.get("assertionResults", [])
        if not assertions and suite.get("status") == "failed":
            # the suite itself failed to load or run
            failed.append(suite.get("name") or "<suite>")
            continue
        for a in assertions:
            status = a.get("status")
            if status in ("skipped", "pending", "todo", "disabled"):
                continue
            total += 1
            if status != "passed":
                failed.append(a.get("fullName") or a.get("title") or "<unnamed>")
    return total, failed


def _from_tap(stdout: str) -> tuple[int, list[str]] | None:
    total = 0
    failed: list[str] = []
    seen = False
    for line in stdout.splitlines():
        match = _TAP_LINE.match(line)
        if match is None:
            continue
        seen = True
        if match.group("directive"):
            continue
        total += 1
        if match.group("not"):
            name = (match.group("name") or "").strip()
            failed.append(name or f"#{match.group('num') or total}")
    return (total, failed) if seen else None
