"""
Front-matter parsing for song README files.

Supports blocks delimited by --- or +++ containing TOML-style
`key = value` lines.
"""

import re
from typing import Any

_BLOCK_PATTERNS = (
    re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)$", re.DOTALL),
    re.compile(r"^\+\+\+\s*\n(.*?)\n\+\+\+\s*\n(.*)$", re.DOTALL),
)
_PAIR_PATTERN = re.compile(r"^(\w+)\s*=\s*(.+)$")
_INT_PATTERN = re.compile(r"^\d+$")
_FLOAT_PATTERN = re.compile(r"^\d+\.\d+$")


def _convert(value: str) -> Any:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]

    if _INT_PATTERN.match(value):
        return int(value)
    if _FLOAT_PATTERN.match(value):
        return float(value)
    return value


def parse_frontmatter(text: str | None) -> tuple[dict[str, Any], str]:
    """
    Split a markdown document into front-matter and body.

    Returns:
        (frontmatter, body); ({}, text) when the document has no front-matter
    """
    if not text:
        return {}, ""

    for pattern in _BLOCK_PATTERNS:
        match = pattern.match(text)
        if match:
            break
    else:
        return {}, text

    frontmatter: dict[str, Any] = {}
    for line in match.group(1).split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        pair = _PAIR_PATTERN.match(line)
        if pair:
            frontmatter[pair.group(1)] = _convert(pair.group(2).strip())

    return frontmatter, match.group(2).strip()


def folder_name_to_title(folder_name: str) -> str:
    """Turn a snake_case folder name into a Title Case song title."""
    return " ".join(
        word[:1].upper() + word[1:].lower()
        for word in folder_name.split("_")
        if word
    )
