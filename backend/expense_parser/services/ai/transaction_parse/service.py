"""Transaction parse pipeline: turn raw LLM output into validated transactions.

Stages run in order and the first one that produces transactions wins:
direct parse, JSON repair, fragment extraction, hybrid reconstruction with
the rule-based extractor, then the rule-based extractor alone. When every
stage fails a structured failure result is returned; the pipeline never
raises.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from expense_parser.services.vietnamese_extractor import extract_vietnamese_transactions

from .confidence import enhance_response
from .contracts import (
    DEFAULT_POLICY,
    ParsePolicy,
    ParseResult,
    ParsingMetadata,
    TransactionRecord,
)
from .fallback import apply_rule_based_fallback, build_debug_info, build_failure_result
from .fragments import FragmentExtraction, extract_fragments
from .hybrid import Extractor, reconstruct_hybrid
from .repair import repair_json

logger = logging.getLogger(__name__)

SHAPE_MISMATCH_SUMMARY = "AI response did not contain any valid transactions."


class ParseStrategy(StrEnum):
    DIRECT = "direct"
    REPAIR = "repair"
    FRAGMENTS = "fragments"
    HYBRID = "hybrid"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass
class ParsePipelineResult:
    """Result from ``run_parse_pipeline`` including metadata."""

    result: ParseResult
    strategy: str
    attempted: list[str] = field(default_factory=list)
    latency_ms: float = 0.0


@dataclass(frozen=True)
class DecodedPayload:
    result: ParseResult
    issues: tuple[str, ...] = ()

    def is_trusted(self, policy: ParsePolicy) -> bool:
        """Every record valid and confidently scored by the producer."""
        records = self.result.transactions
        return (
            bool(records)
            and not self.issues
            and all(
                record.confidence_score is not None
                and record.confidence_score >= policy.high_confidence
                for record in records
            )
        )


def decode_payload(value: Any) -> DecodedPayload | None:
    """Validate a decoded JSON value against the result envelope.

    Returns ``None`` when *value* is not an object with a ``transactions``
    list. Invalid items are dropped and reported in ``issues``.
    """
    if not isinstance(value, dict) or not isinstance(value.get("transactions"), list):
        return None

    items = value["transactions"]
    records: list[TransactionRecord] = []
    issues: list[str] = []
    for index, item in enumerate(items):
        context: dict[str, Any] = {}
        try:
            records.append(TransactionRecord.model_validate(item, context=context))
        except ValidationError as exc:
            issues.append(f"Dropped invalid transaction at index {index} ({exc.error_count()} error(s))")
            continue
        ignored = context.get("ignored_fields")
        if ignored:
            issues.append(f"Ignored invalid field(s) in transaction at index {index}: {', '.join(ignored)}")

    try:
        result = ParseResult.model_validate({**value, "transactions": records})
    except ValidationError as exc:
        logger.warning("Ignoring malformed response envelope: %d error(s)", exc.error_count())
        issues.append("Ignored malformed summary or metadata in AI response")
        result = ParseResult(transactions=records)

    return DecodedPayload(result=result, issues=tuple(issues))


def _shape_mismatch(value: Any, policy: ParsePolicy) -> ParseResult:
    if not isinstance(value, dict) or not isinstance(value.get("transactions"), list):
        issue = "AI response JSON has no transactions list"
    elif not value["transactions"]:
        issue = "AI response contained no transactions"
    else:
        issue = f"All {len(value['transactions'])} transaction(s) in AI response failed validation"
    result = ParseResult(
        transactions=[],
        analysis_summary=SHAPE_MISMATCH_SUMMARY,
        parsing_metadata=ParsingMetadata(potential_issues=[issue]),
    )
    return enhance_response(result, policy)


def _without_producer_quality(result: ParseResult) -> ParseResult:
    """Quality is graded by the pipeline, never taken from the producer."""
    if result.parsing_metadata is None or result.parsing_metadata.parsing_quality is None:
        return result
    return result.with_metadata(parsing_quality=None)


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def parse_direct(response_text: str, policy: ParsePolicy | None = None) -> ParseResult | None:
    """Strict parse of the whole response.

    Returns ``None`` on a syntax error. Valid JSON of the wrong shape yields
    a terminal result with ``parsing_quality = "failed"``.
    """
    policy = policy or DEFAULT_POLICY
    ok, value = _loads(response_text)
    if not ok:
        return None

    decoded = decode_payload(value)
    if decoded is None or not decoded.result.transactions:
        logger.warning("AI response parsed but has the wrong shape")
        return _shape_mismatch(value, policy)

    if decoded.is_trusted(policy):
        logger.info("AI response accepted as-is (%d transaction(s))", len(decoded.result.transactions))
        return decoded.result

    return enhance_response(_without_producer_quality(decoded.result).with_issues(decoded.issues), policy)


def parse_repaired(response_text: str, policy: ParsePolicy | None = None) -> ParseResult | None:
    policy = policy or DEFAULT_POLICY
    outcome = repair_json(response_text)
    if outcome is None:
        return None

    decoded = decode_payload(outcome.value)
    if decoded is None or not decoded.result.transactions:
        logger.warning("Repaired JSON has no usable transactions (rules: %s)", ", ".join(outcome.rules_applied))
        return None

    result = _without_producer_quality(decoded.result).with_issues(decoded.issues).with_metadata(
        enhancement_applied=True,
        repairs_applied=list(outcome.rules_applied),
    )
    return enhance_response(result, policy)


def accept_fragments(extraction: FragmentExtraction, policy: ParsePolicy | None = None) -> ParseResult | None:
    """Accept the complete fragments on their own, without any original input."""
    policy = policy or DEFAULT_POLICY
    complete = extraction.complete
    if not complete:
        return None

    issues = []
    skipped = len(extraction.records) - len(complete)
    if skipped:
        issues.append(f"Skipped {skipped} incomplete fragment(s)")
    result = ParseResult(
        transactions=[candidate.to_record() for candidate in complete],
        analysis_summary=f"Recovered {len(complete)} transaction(s) from fragments of the AI response.",
        parsing_metadata=ParsingMetadata(
            extraction_method=extraction.method,
            enhancement_applied=True,
        ),
    )
    return enhance_response(result.with_issues(issues), policy)


def _run_stages(
    text: str,
    original: str | None,
    extractor: Extractor,
    policy: ParsePolicy,
    attempted: list[str],
    issues: list[str],
) -> tuple[ParseResult | None, str]:
    attempted.append(ParseStrategy.DIRECT.value)
    direct = parse_direct(text, policy)
    if direct is not None:
        strategy = ParseStrategy.DIRECT if direct.transactions else ParseStrategy.FAILED
        return direct, strategy.value
    issues.append("Direct JSON parsing failed")

    extraction: FragmentExtraction | None = None
    if len(text) > policy.max_response_chars:
        reason = f"response exceeds {policy.max_response_chars} characters"
        logger.warning("Skipping repair and fragment extraction: %s", reason)
        issues.append(f"JSON repair skipped: {reason}")
        issues.append(f"Fragment extraction skipped: {reason}")
    else:
        attempted.append(ParseStrategy.REPAIR.value)
        repaired = parse_repaired(text, policy)
        if repaired is not None:
            return repaired, ParseStrategy.REPAIR.value
        issues.append("JSON repair failed")

        attempted.append(ParseStrategy.FRAGMENTS.value)
        extraction = extract_fragments(text)
        if extraction is None:
            issues.append("Fragment extraction failed")
        elif original is None:
            accepted = accept_fragments(extraction, policy)
            if accepted is not None:
                return accepted, ParseStrategy.FRAGMENTS.value
            issues.append("Fragment extraction found no complete transactions")

    if original is None:
        issues.append("Hybrid reconstruction skipped: no original input")
        issues.append("Vietnamese fallback skipped: no original input")
        return None, ParseStrategy.FAILED.value

    if extraction is None:
        issues.append("Hybrid reconstruction skipped: no fragments to merge")
    else:
        attempted.append(ParseStrategy.HYBRID.value)
        hybrid = reconstruct_hybrid(
            extraction.records,
            original,
            extractor,
            extraction_method=extraction.method,
        )
        if hybrid is not None:
            return enhance_response(hybrid, policy), ParseStrategy.HYBRID.value
        issues.append("Hybrid reconstruction failed")

    attempted.append(ParseStrategy.FALLBACK.value)
    fallback = apply_rule_based_fallback(original, extractor, policy)
    if fallback is not None:
        fallback = fallback.with_metadata(debug_info=build_debug_info(text, original, policy))
        return enhance_response(fallback, policy), ParseStrategy.FALLBACK.value
    issues.append("Vietnamese fallback failed")
    return None, ParseStrategy.FAILED.value


def run_parse_pipeline(
    response_text: str | None,
    original_input_text: str | None = None,
    *,
    extractor: Extractor | None = None,
    policy: ParsePolicy | None = None,
) -> ParsePipelineResult:
    """Run every parse strategy in order and report which one succeeded.

    *extractor* defaults to :func:`extract_vietnamese_transactions`. Blank
    original input counts as absent.
    """
    policy = policy or DEFAULT_POLICY
    extractor = extractor or extract_vietnamese_transactions
    text = response_text or ""
    original = original_input_text if original_input_text and original_input_text.strip() else None

    t0 = time.monotonic()
    attempted: list[str] = []
    issues: list[str] = []

    try:
        result, strategy = _run_stages(text, original, extractor, policy, attempted, issues)
    except Exception:
        logger.exception("Transaction parse pipeline failed unexpectedly")
        issues.append("Unexpected error during parsing")
        result, strategy = None, ParseStrategy.FAILED.value

    if result is None:
        result = build_failure_result(text, original, issues, policy)

    latency_ms = (time.monotonic() - t0) * 1000
    logger.info(
        "Transaction parse finished: strategy=%s attempted=%s transactions=%d latency_ms=%.1f",
        strategy,
        ",".join(attempted),
        len(result.transactions),
        latency_ms,
    )
    return ParsePipelineResult(
        result=result,
        strategy=strategy,
        attempted=attempted,
        latency_ms=round(latency_ms, 2),
    )


def parse_transaction_response(
    response_text: str | None,
    original_input_text: str | None = None,
    *,
    extractor: Extractor | None = None,
    policy: ParsePolicy | None = None,
) -> ParseResult:
    """Parse *response_text* into a :class:`ParseResult`; never raises."""
    return run_parse_pipeline(
        response_text,
        original_input_text,
        extractor=extractor,
        policy=policy,
    ).result
