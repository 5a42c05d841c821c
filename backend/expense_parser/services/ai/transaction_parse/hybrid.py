"""Merge partial model output with rule-based extraction from the user's text."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Union

from pydantic import ValidationError

from expense_parser.services.vietnamese_extractor import estimate_transaction_count

from .confidence import append_note, assess_transaction_confidence
from .contracts import (
    TRANSACTION_FIELDS,
    FallbackRisk,
    ParseResult,
    ParsingMetadata,
    ParsingQuality,
    PartialTransaction,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

Extractor = Callable[[str], Sequence[Union[Mapping[str, Any], PartialTransaction]]]

HYBRID_NOTE = "Reconstructed by merging partial AI output with rule-based extraction"


def run_extractor(extractor: Extractor, original_input: str) -> list[PartialTransaction]:
    """Call *extractor* and normalise its output; an extractor error yields ``[]``."""
    try:
        raw = list(extractor(original_input) or [])
    except Exception:
        logger.exception("Rule-based extractor raised; treating as no transactions")
        return []

    candidates: list[PartialTransaction] = []
    for item in raw:
        if isinstance(item, PartialTransaction):
            candidates.append(item)
        elif isinstance(item, Mapping):
            try:
                candidates.append(PartialTransaction.model_validate(dict(item)))
            except ValidationError as exc:
                logger.warning("Dropping extractor item: %d validation error(s)", exc.error_count())
        else:
            logger.warning("Dropping extractor item of type %s", type(item).__name__)
    return candidates


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _merge_pair(ai: PartialTransaction, rule: PartialTransaction) -> PartialTransaction:
    if rule.filled_field_count() > ai.filled_field_count():
        base, donor = rule, ai
    else:
        base, donor = ai, rule
    update = {
        name: getattr(donor, name)
        for name in TRANSACTION_FIELDS
        if _is_empty(getattr(base, name)) and not _is_empty(getattr(donor, name))
    }
    return base.model_copy(update=update) if update else base


def merge_transaction_sets(
    ai: Sequence[PartialTransaction],
    rule_based: Sequence[PartialTransaction],
) -> list[PartialTransaction]:
    """Combine two candidate lists.

    Equal lengths are merged slot by slot, the fuller record of each pair
    providing the base. Otherwise the set with more filled fields wins
    outright, ties going to *ai*.
    """
    if not rule_based:
        return list(ai)
    if not ai:
        return list(rule_based)
    if len(ai) == len(rule_based):
        return [_merge_pair(a, r) for a, r in zip(ai, rule_based)]

    ai_total = sum(record.filled_field_count() for record in ai)
    rule_total = sum(record.filled_field_count() for record in rule_based)
    return list(rule_based) if rule_total > ai_total else list(ai)


def reconstruct_hybrid(
    fragments: Sequence[PartialTransaction],
    original_input: str,
    extractor: Extractor,
    *,
    extraction_method: str,
) -> ParseResult | None:
    rule_based = run_extractor(extractor, original_input)
    merged = merge_transaction_sets(fragments, rule_based)

    records: list[TransactionRecord] = []
    for candidate in merged:
        if not candidate.is_complete:
            continue
        record = candidate.to_record()
        records.append(
            record.model_copy(
                update={
                    "confidence_score": assess_transaction_confidence(record),
                    "notes": append_note(record.notes, HYBRID_NOTE),
                }
            )
        )

    if not records:
        logger.warning(
            "Hybrid reconstruction produced no valid transactions (ai=%d, rule_based=%d)",
            len(fragments),
            len(rule_based),
        )
        return None

    logger.info(
        "Hybrid reconstruction merged %d transaction(s) (ai=%d, rule_based=%d)",
        len(records),
        len(fragments),
        len(rule_based),
    )
    return ParseResult(
        transactions=records,
        analysis_summary=(
            f"Reconstructed {len(records)} transaction(s) by merging partial AI output "
            "with rule-based extraction."
        ),
        parsing_metadata=ParsingMetadata(
            hybrid_merged=True,
            ai_extracted=len(fragments),
            rule_based_extracted=len(rule_based),
            extraction_method=extraction_method,
            parsing_quality=ParsingQuality.HYBRID_RECONSTRUCTION.value,
            fallback_risk=FallbackRisk.MEDIUM.value,
            enhancement_applied=True,
            estimated_transaction_count=estimate_transaction_count(original_input),
        ),
    )
