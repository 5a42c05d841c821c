"""Last-resort stages: rule-based extraction and the structured failure result."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from expense_parser.services.vietnamese_extractor import estimate_transaction_count

from .confidence import append_note, assess_transaction_confidence
from .contracts import (
    DEFAULT_POLICY,
    DebugInfo,
    FallbackRisk,
    ParsePolicy,
    ParseResult,
    ParsingMetadata,
    ParsingQuality,
    TransactionRecord,
)
from .hybrid import Extractor, run_extractor

logger = logging.getLogger(__name__)

FALLBACK_METHOD = "vietnamese_extraction"
FALLBACK_NOTE = "Derived via fallback extraction"
FAILURE_SUMMARY = (
    "Failed to parse AI response. Multiple parsing strategies attempted but none succeeded."
)
NOT_PROVIDED = "not_provided"


def apply_rule_based_fallback(
    original_input: str,
    extractor: Extractor,
    policy: ParsePolicy | None = None,
) -> ParseResult | None:
    """Build a result from the user's own text alone.

    Scores are capped at the policy's fallback ceiling. Returns ``None`` when
    the extractor yields nothing usable.
    """
    policy = policy or DEFAULT_POLICY
    candidates = run_extractor(extractor, original_input)

    records: list[TransactionRecord] = []
    for candidate in candidates:
        if not candidate.is_complete:
            continue
        record = candidate.to_record()
        score = min(assess_transaction_confidence(record), policy.fallback_confidence_ceiling)
        records.append(
            record.model_copy(
                update={
                    "confidence_score": score,
                    "notes": append_note(record.notes, FALLBACK_NOTE),
                }
            )
        )

    if not records:
        logger.warning("Vietnamese fallback found no valid transactions in %d candidate(s)", len(candidates))
        return None

    estimated = estimate_transaction_count(original_input)
    issues = ["AI response could not be parsed", "Using rule-based fallback"]
    if len(records) < estimated:
        issues.append(f"Expected about {estimated} transaction(s) but extracted {len(records)}")
    if len(records) < len(candidates):
        issues.append(f"Dropped {len(candidates) - len(records)} incomplete candidate(s)")

    logger.info("Vietnamese fallback extracted %d transaction(s)", len(records))
    return ParseResult(
        transactions=records,
        analysis_summary=(
            f"Extracted {len(records)} transaction(s) using Vietnamese rule-based fallback system."
        ),
        parsing_metadata=ParsingMetadata(
            fallback_method=FALLBACK_METHOD,
            fallback_risk=FallbackRisk.HIGH.value,
            parsing_quality=ParsingQuality.NEEDS_REVIEW.value,
            estimated_transaction_count=estimated,
            potential_issues=issues,
        ),
    )


def build_debug_info(
    response_text: str | None,
    original_input: str | None,
    policy: ParsePolicy | None = None,
) -> DebugInfo:
    policy = policy or DEFAULT_POLICY
    text = response_text or ""
    return DebugInfo(
        response_length=len(text),
        response_preview=text[: policy.response_preview_chars],
        original_input=original_input[: policy.input_preview_chars] if original_input else NOT_PROVIDED,
    )


def build_failure_result(
    response_text: str | None,
    original_input: str | None,
    issues: Sequence[str],
    policy: ParsePolicy | None = None,
) -> ParseResult:
    """Structured error result; never raises."""
    return ParseResult(
        transactions=[],
        analysis_summary=FAILURE_SUMMARY,
        parsing_metadata=ParsingMetadata(
            total_transactions_found=0,
            high_confidence_count=0,
            medium_confidence_count=0,
            low_confidence_count=0,
            average_confidence=0.0,
            validation_checks_passed=0,
            parsing_quality=ParsingQuality.FAILED.value,
            fallback_risk=FallbackRisk.CRITICAL.value,
            potential_issues=list(issues),
            debug_info=build_debug_info(response_text, original_input, policy),
        ),
    )
