"""JSON repair rules for malformed or truncated LLM output.

Rules are applied in table order to a working copy of the text, and the
strict parse is re-attempted after each rule that changed something. Every
rule leaves well-formed JSON untouched.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from ..common.json_tools import OPENERS, find_balanced_end, find_first_opener

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```[\w-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_OPENING_FENCE = re.compile(r"```[\w-]*[ \t]*\r?\n?")
_TRAILING_COMMA_HINT = re.compile(r",\s*[}\]]")
_DANGLING_WORD = re.compile(r"(:\s*)(-|[A-Za-z]+)$")
_DANGLING_NUMBER = re.compile(r"(\d)(?:[.eE][+-]?|[eE])$")


@dataclass(frozen=True)
class RepairRule:
    name: str
    apply: Callable[[str], str]


@dataclass(frozen=True)
class RepairOutcome:
    value: Any
    text: str
    rules_applied: tuple[str, ...]


def strip_markdown_fences(text: str) -> str:
    """Unwrap a fenced code block, with or without a language tag."""
    if "```" not in text:
        return text
    match = _FENCED_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    # Truncated response: opening fence only.
    return _OPENING_FENCE.sub("", text, count=1).strip()


def remove_trailing_commas(text: str) -> str:
    """Drop commas that directly precede ``}`` or ``]`` outside strings."""
    if not _TRAILING_COMMA_HINT.search(text):
        return text

    out: list[str] = []
    pending_comma: int | None = None
    in_string = False
    escape = False

    for ch in text:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue

        if ch in "}]" and pending_comma is not None:
            out[pending_comma] = ""
        if ch == ",":
            pending_comma = len(out)
        elif not ch.isspace():
            pending_comma = None
        if ch == '"':
            in_string = True
        out.append(ch)

    return "".join(out)


def close_unbalanced_brackets(text: str) -> str:
    """Complete a truncated document.

    Closes an unterminated string, drops a dangling comma, completes a
    dangling key or colon with ``null`` and appends the missing closers in
    nesting order. Text with a mismatched closer is returned unchanged.
    """
    if not any(ch in text for ch in '{["'):
        return text

    stack: list[str] = []
    in_string = False
    escape = False
    string_is_key = False
    last = ""

    for ch in text:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                last = "key" if string_is_key else "value"
            continue

        if ch == '"':
            in_string = True
            string_is_key = bool(stack) and stack[-1] == "{" and last in ("{", ",")
            continue
        if ch in OPENERS:
            stack.append(ch)
        elif ch in "}]":
            if not stack or OPENERS[stack[-1]] != ch:
                return text
            stack.pop()
        if not ch.isspace():
            last = ch

    if not stack and not in_string:
        return text

    repaired = text
    if in_string:
        if escape:
            repaired = repaired[:-1]
        repaired += '"'
        last = "key" if string_is_key else "value"

    repaired = repaired.rstrip()
    if last == ",":
        repaired = repaired[:-1].rstrip()
    elif last == ":":
        repaired += " null"
    elif last == "key":
        repaired += ": null"
    else:
        word = _DANGLING_WORD.search(repaired)
        if word and word.group(2) not in ("true", "false", "null"):
            repaired = repaired[: word.start(2)] + "null"
        else:
            repaired = _DANGLING_NUMBER.sub(r"\1", repaired)

    return repaired + "".join(OPENERS[opener] for opener in reversed(stack))


def slice_embedded_json(text: str) -> str:
    """Cut away prose around the first JSON block."""
    start = find_first_opener(text)
    if start is None:
        return text
    end = find_balanced_end(text, start)
    if end is None:
        return text[start:]
    return text[start : end + 1]


REPAIR_RULES: tuple[RepairRule, ...] = (
    RepairRule("strip_markdown_fences", strip_markdown_fences),
    RepairRule("remove_trailing_commas", remove_trailing_commas),
    RepairRule("close_unbalanced_brackets", close_unbalanced_brackets),
    RepairRule("slice_embedded_json", slice_embedded_json),
)


def repair_json(text: str, rules: Sequence[RepairRule] = REPAIR_RULES) -> RepairOutcome | None:
    """Apply *rules* cumulatively until the text parses.

    Returns ``None`` when the rules are exhausted without a valid parse.
    The caller's *text* is never modified.
    """
    working = text
    applied: list[str] = []

    for rule in rules:
        updated = rule.apply(working)
        if updated == working:
            continue
        working = updated
        applied.append(rule.name)
        try:
            value = json.loads(working)
        except (ValueError, RecursionError):
            continue
        logger.info("JSON repaired with %s", ", ".join(applied))
        return RepairOutcome(value=value, text=working, rules_applied=tuple(applied))

    return None
