"""Confidence scoring and the response enhancer shared by every parse stage."""

from __future__ import annotations

import logging

from .contracts import (
    DEFAULT_POLICY,
    RISK_ORDER,
    TRANSACTION_TYPES,
    FallbackRisk,
    ParsePolicy,
    ParseResult,
    ParsingMetadata,
    ParsingQuality,
    PartialTransaction,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_NOTE = "Low confidence - manual review suggested"


def assess_transaction_confidence(record: TransactionRecord | PartialTransaction) -> float:
    """Heuristic completeness score in ``[0, 1]``.

    Starts at 0.5 and adds weight for a positive amount, a meaningful
    description, a category suggestion and a recognised transaction type.
    """
    score = 0.5
    if record.amount is not None and record.amount > 0:
        score += 0.2
    if record.description and len(record.description) > 5:
        score += 0.1
    if record.suggested_category_id or record.suggested_category_name:
        score += 0.15
    if record.transaction_type in TRANSACTION_TYPES:
        score += 0.05
    return round(max(0.0, min(1.0, score)), 4)


def append_note(notes: str | None, note: str) -> str:
    if not notes:
        return note
    if note in notes:
        return notes
    return f"{notes}; {note}"


def escalate_risk(current: str | None, target: str) -> str:
    """Return the higher of *current* and *target*; never downgrades."""
    if current not in RISK_ORDER:
        return target
    if RISK_ORDER.index(current) >= RISK_ORDER.index(target):
        return current
    return target


def quality_for(average: float, policy: ParsePolicy) -> str:
    if average >= policy.high_confidence:
        return ParsingQuality.EXCELLENT.value
    if average >= policy.medium_confidence:
        return ParsingQuality.GOOD.value
    return ParsingQuality.NEEDS_REVIEW.value


def enhance_response(result: ParseResult, policy: ParsePolicy | None = None) -> ParseResult:
    """Attach validation flags and aggregate confidence metadata.

    Records without a producer score are scored by
    :func:`assess_transaction_confidence`; records below the medium threshold
    fail validation and get a review note. A ``parsing_quality`` already set
    by an earlier stage is kept unless the list is empty. Returns a new
    result; *result* is left as it was.
    """
    policy = policy or DEFAULT_POLICY

    records: list[TransactionRecord] = []
    total = 0.0
    high = medium = low = passed = 0

    for record in result.transactions:
        score = record.confidence_score
        if score is None:
            score = assess_transaction_confidence(record)
        update: dict = {
            "confidence_score": score,
            "validation_passed": score >= policy.medium_confidence,
        }
        if score >= policy.high_confidence:
            high += 1
        elif score >= policy.medium_confidence:
            medium += 1
        else:
            low += 1
            update["notes"] = append_note(record.notes, LOW_CONFIDENCE_NOTE)
        if update["validation_passed"]:
            passed += 1
        total += score
        records.append(record.model_copy(update=update))

    metadata = result.parsing_metadata or ParsingMetadata()
    count = len(records)
    average = round(total / count, 4) if count else 0.0

    if not count:
        quality = ParsingQuality.FAILED.value
    else:
        quality = metadata.parsing_quality or quality_for(average, policy)

    fields: dict = {
        "total_transactions_found": count,
        "high_confidence_count": high,
        "medium_confidence_count": medium,
        "low_confidence_count": low,
        "average_confidence": average,
        "validation_checks_passed": passed,
        "parsing_quality": quality,
    }
    if low:
        fields["fallback_risk"] = escalate_risk(metadata.fallback_risk, FallbackRisk.HIGH.value)

    logger.debug(
        "Enhanced %d transaction(s): avg=%.2f high=%d medium=%d low=%d",
        count,
        average,
        high,
        medium,
        low,
    )
    return result.model_copy(
        update={"transactions": records, "parsing_metadata": metadata.model_copy(update=fields)}
    )
