"""Robust JSON extraction from LLM responses using string-aware bracket scanning.

All scanners here make a single left-to-right pass over the text, so their
cost stays linear in the response length even for pathological input.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger(__name__)

OPENERS = {"{": "}", "[": "]"}
CLOSERS = {"}": "{", "]": "["}

# Objects nested deeper than this are not tried on their own.
MAX_FRAGMENT_DEPTH = 32


def find_first_opener(text: str) -> int | None:
    """Index of the first ``{`` or ``[`` in *text*, or ``None``."""
    positions = [pos for pos in (text.find("{"), text.find("[")) if pos >= 0]
    return min(positions) if positions else None


def find_balanced_end(text: str, start: int) -> int | None:
    """Return the index of the bracket closing the one at *start*.

    Brackets inside string literals are ignored. Returns ``None`` when the
    block is never closed or a closer does not match its opener.
    """
    stack: list[str] = []
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]

        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in OPENERS:
            stack.append(ch)
        elif ch in CLOSERS:
            if not stack or stack[-1] != CLOSERS[ch]:
                return None
            stack.pop()
            if not stack:
                return i

    return None


def iter_json_fragments(text: str, *, max_depth: int = MAX_FRAGMENT_DEPTH) -> Iterator[tuple[int, Any]]:
    """Yield ``(offset, value)`` for every ``{...}`` block of *text* that parses.

    Blocks are yielded left to right. When an enclosing block parses, the
    blocks nested inside it are not yielded separately. Quotes outside any
    block are ignored and a raw newline ends a string, so a stray quote in
    surrounding prose cannot hide the rest of the text.
    """
    if "{" not in text:
        return

    found: list[tuple[int, Any]] = []
    stack: list[int] = []
    overflow = 0
    in_string = False
    escape = False

    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"' or ch == "\n":
                in_string = False
            continue

        if ch == '"':
            if stack:
                in_string = True
        elif ch == "{":
            if len(stack) < max_depth:
                stack.append(i)
            else:
                overflow += 1
        elif ch == "}":
            if overflow:
                overflow -= 1
                continue
            if not stack:
                continue
            start = stack.pop()
            try:
                value = json.loads(text[start : i + 1])
            except ValueError:
                continue
            while found and found[-1][0] > start:
                found.pop()
            found.append((start, value))

    logger.debug("Found %d JSON fragment(s) in %d chars", len(found), len(text))
    yield from found
