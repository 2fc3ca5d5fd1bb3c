"""Heuristic detection of required sections in specification documents.

The Gate C evaluator only talks to this module through ``section_present``
and ``section_is_placeholder``, so the regex scan can be swapped for a real
document parser without touching the evaluator.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

SECTION_PATTERNS: dict[str, re.Pattern[str]] = {
    "§3-E": re.compile(
        r"§3-E|§ *3-E|### .*入出力例|## .*入出力例|input.*output.*example", re.IGNORECASE
    ),
    "§3-F": re.compile(r"§3-F|§ *3-F|### .*境界値|## .*境界値|boundary", re.IGNORECASE),
    "§3-G": re.compile(
        r"§3-G|§ *3-G|### .*例外応答|## .*例外応答|exception.*response", re.IGNORECASE
    ),
    "§3-H": re.compile(r"§3-H|§ *3-H|### .*Gherkin|## .*Gherkin|Scenario:", re.IGNORECASE),
}

SECTION_IDS: tuple[str, ...] = tuple(SECTION_PATTERNS)


def section_present(text: str, section_id: str) -> bool:
    pattern = SECTION_PATTERNS.get(section_id)
    if pattern is None:
        raise ValueError(f"Unknown section id: {section_id}")
    return pattern.search(text) is not None


def _section_body_pattern(section_id: str) -> re.Pattern[str]:
    spaced = " *-".join(re.escape(part) for part in section_id.split("-", 1))
    return re.compile(
        rf"({re.escape(section_id)}|{spaced}).*\n([\s\S]*?)(?=\n##|\n§|\Z)",
        re.IGNORECASE,
    )


def section_is_placeholder(text: str, section_id: str, placeholders: Iterable[str]) -> bool:
    """Return True when the section heading exists but its body is empty or a placeholder."""
    match = _section_body_pattern(section_id).search(text)
    if match is None:
        return False
    body = match.group(2).strip()
    if not body:
        return True
    lowered = body.lower()
    return any(lowered == placeholder.lower() for placeholder in placeholders)
