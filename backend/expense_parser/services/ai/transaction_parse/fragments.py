"""Recover transaction candidates from output that is not a single JSON document."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from ..common.json_tools import iter_json_fragments
from .contracts import TRANSACTION_FIELDS, PartialTransaction

logger = logging.getLogger(__name__)

BRACE_FRAGMENTS = "brace_fragments"
KEY_VALUE_PAIRS = "key_value_pairs"

# A fragment must carry at least one of these to count as a transaction.
_SIGNAL_FIELDS = ("transaction_type", "amount", "description")

_SCALAR_FIELDS = tuple(f for f in TRANSACTION_FIELDS if f != "suggested_tags") + (
    "confidence_score",
    "notes",
)
_KEY_VALUE = re.compile(
    r'"?\b(' + "|".join(_SCALAR_FIELDS) + r')"\s*:\s*'
    r'("(?:[^"\\\n]|\\.)*"|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|null|true|false)'
)


@dataclass(frozen=True)
class FragmentExtraction:
    records: tuple[PartialTransaction, ...]
    method: str

    @property
    def complete(self) -> list[PartialTransaction]:
        return [record for record in self.records if record.is_complete]


def _to_partial(item: dict[str, Any]) -> PartialTransaction | None:
    try:
        return PartialTransaction.model_validate(item)
    except ValidationError as exc:
        logger.debug("Skipping fragment with %d invalid field(s)", exc.error_count())
        return None


def _brace_candidates(text: str) -> list[PartialTransaction]:
    candidates: list[PartialTransaction] = []
    for _, value in iter_json_fragments(text):
        if isinstance(value, dict) and isinstance(value.get("transactions"), list):
            items = value["transactions"]
        else:
            items = [value]
        for item in items:
            if not isinstance(item, dict) or not any(key in item for key in _SIGNAL_FIELDS):
                continue
            partial = _to_partial(item)
            if partial is not None:
                candidates.append(partial)
    return candidates


def _key_value_candidates(text: str) -> list[PartialTransaction]:
    """Group bare ``"key": value`` pairs into records; a repeated key starts a new one."""
    groups: list[dict[str, Any]] = []
    current: dict[str, Any] = {}
    for match in _KEY_VALUE.finditer(text):
        key, raw = match.group(1), match.group(2)
        try:
            value = json.loads(raw)
        except ValueError:
            continue
        if key in current:
            groups.append(current)
            current = {}
        current[key] = value
    if current:
        groups.append(current)

    candidates = []
    for group in groups:
        if not any(key in group for key in _SIGNAL_FIELDS):
            continue
        partial = _to_partial(group)
        if partial is not None:
            candidates.append(partial)
    return candidates


def extract_fragments(text: str) -> FragmentExtraction | None:
    """Collect transaction candidates, trying brace fragments before bare key/value pairs.

    Returns ``None`` when neither technique finds anything.
    """
    if not text:
        return None

    records = _brace_candidates(text)
    method = BRACE_FRAGMENTS
    if not records:
        records = _key_value_candidates(text)
        method = KEY_VALUE_PAIRS
    if not records:
        return None

    logger.info("Fragment extraction found %d candidate(s) via %s", len(records), method)
    return FragmentExtraction(records=tuple(records), method=method)
