"""Transaction post-processing: description cleanup, tagging, de-duplication and summary."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from expense_parser.services.ai.transaction_parse.contracts import (
    TRANSACTION_TYPES,
    ParseResult,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 100
MAX_TAGS = 5
LARGE_AMOUNT_VND = 5_000_000

_WHITESPACE = re.compile(r"\s+")
# \w already covers Vietnamese letters and digits.
_DISALLOWED = re.compile(r"[^\w\s\-.,]")

CONTENT_TAGS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"taxi|grab|uber"), "#ride-sharing"),
    (re.compile(r"cafe|cà phê|coffee|\bcf\b"), "#cafe"),
    (re.compile(r"ăn\s+sáng|breakfast"), "#breakfast"),
    (re.compile(r"ăn\s+trưa|lunch"), "#lunch"),
    (re.compile(r"ăn\s+tối|dinner"), "#dinner"),
    (re.compile(r"xăng|bơm\s+xe|fuel"), "#fuel"),
    (re.compile(r"siêu\s+thị|supermarket"), "#grocery"),
    (re.compile(r"online"), "#online-purchase"),
    (re.compile(r"tiền\s+mặt|cash"), "#cash"),
    (re.compile(r"chuyển\s+khoản|transfer"), "#transfer"),
]


class TypeTotals(BaseModel):
    expense: int | float = 0
    income: int | float = 0
    transfer: int | float = 0


class ConfidenceStats(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class TransactionSummary(BaseModel):
    total: int = 0
    by_type: TypeTotals = Field(default_factory=TypeTotals)
    total_amount: TypeTotals = Field(default_factory=TypeTotals)
    confidence_stats: ConfidenceStats = Field(default_factory=ConfidenceStats)
    unusual_count: int = 0
    average_confidence: float = 0.0
    completeness_average: float = 0.0


def normalize_description(description: str | None) -> str:
    if not description:
        return ""
    cleaned = _WHITESPACE.sub(" ", description.strip())
    cleaned = _DISALLOWED.sub("", cleaned)
    return cleaned[:MAX_DESCRIPTION_LENGTH].strip()


def generate_tags(record: TransactionRecord) -> list[str]:
    """Producer tags first, then confidence, amount and content tags; at most five."""
    tags: list[str] = list(record.suggested_tags)
    description = (record.description or "").lower()
    score = record.confidence_score

    candidates: list[str] = []
    if score is not None and score < 0.6:
        candidates.append("#low-confidence")
    if score is not None and score >= 0.9:
        candidates.append("#high-confidence")
    if getattr(record, "is_unusual", False):
        candidates.append("#unusual")
    if record.amount >= LARGE_AMOUNT_VND:
        candidates.append("#large-amount")
    candidates.extend(tag for pattern, tag in CONTENT_TAGS if pattern.search(description))

    for tag in candidates:
        if tag not in tags:
            tags.append(tag)
    return tags[:MAX_TAGS]


def _duplicate_key(record: TransactionRecord) -> tuple:
    return (
        record.transaction_type,
        record.amount,
        record.description,
        record.extracted_date,
    )


def merge_duplicate_transactions(records: list[TransactionRecord]) -> list[TransactionRecord]:
    """Collapse records with the same type, amount, description and date.

    The first occurrence keeps its position. Tags are unioned, the higher
    confidence is kept and differing notes are joined.
    """
    merged: dict[tuple, TransactionRecord] = {}
    for record in records:
        key = _duplicate_key(record)
        existing = merged.get(key)
        if existing is None:
            merged[key] = record
            continue

        update: dict = {}
        extra_tags = [tag for tag in record.suggested_tags if tag not in existing.suggested_tags]
        if extra_tags:
            update["suggested_tags"] = existing.suggested_tags + extra_tags
        if record.confidence_score is not None and (
            existing.confidence_score is None or record.confidence_score > existing.confidence_score
        ):
            update["confidence_score"] = record.confidence_score
        if record.notes and record.notes != existing.notes:
            update["notes"] = f"{existing.notes}; {record.notes}" if existing.notes else record.notes
        if update:
            merged[key] = existing.model_copy(update=update)

    return list(merged.values())


def completeness_score(record: TransactionRecord) -> float:
    score = 0.2  # type
    if record.amount > 0:
        score += 0.2
    if record.description:
        score += 0.2
    if record.suggested_category_id:
        score += 0.15
    if record.suggested_category_name:
        score += 0.05
    if record.extracted_date:
        score += 0.1
    if record.extracted_merchant:
        score += 0.05
    if record.suggested_tags:
        score += 0.03
    if record.confidence_score is not None and record.confidence_score > 0.7:
        score += 0.02
    return round(min(score, 1.0), 4)


def summarize_transactions(records: list[TransactionRecord]) -> TransactionSummary:
    summary = TransactionSummary(total=len(records))
    if not records:
        return summary

    total_confidence = 0.0
    total_completeness = 0.0
    for record in records:
        kind = str(record.transaction_type)
        if kind in TRANSACTION_TYPES:
            setattr(summary.by_type, kind, getattr(summary.by_type, kind) + 1)
            setattr(summary.total_amount, kind, getattr(summary.total_amount, kind) + record.amount)

        confidence = record.confidence_score if record.confidence_score is not None else 0.5
        total_confidence += confidence
        if confidence >= 0.8:
            summary.confidence_stats.high += 1
        elif confidence >= 0.5:
            summary.confidence_stats.medium += 1
        else:
            summary.confidence_stats.low += 1

        if getattr(record, "is_unusual", False):
            summary.unusual_count += 1
        total_completeness += completeness_score(record)

    summary.average_confidence = round(total_confidence / len(records), 4)
    summary.completeness_average = round(total_completeness / len(records), 4)
    return summary


def postprocess_result(result: ParseResult) -> ParseResult:
    """Normalise descriptions, add tags and merge duplicates; returns a new result."""
    if not result.transactions:
        return result

    cleaned: list[TransactionRecord] = []
    for record in result.transactions:
        update: dict = {"suggested_tags": generate_tags(record)}
        if record.description is not None:
            update["description"] = normalize_description(record.description)
        cleaned.append(record.model_copy(update=update))

    merged = merge_duplicate_transactions(cleaned)
    processed = result.model_copy(update={"transactions": merged})
    removed = len(cleaned) - len(merged)
    if removed:
        logger.info("Merged %d duplicate transaction(s)", removed)
        processed = processed.with_metadata(total_transactions_found=len(merged)).with_issues(
            [f"Merged {removed} duplicate transaction(s)"]
        )
    return processed
