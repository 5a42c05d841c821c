"""Transaction parse scope contracts: records, metadata envelope and policy.

Every model keeps track of which fields were actually supplied, so a payload
that is accepted as-is serialises back to exactly what the producer sent
(``model_dump(exclude_unset=True)``).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

logger = logging.getLogger(__name__)


class TransactionType(StrEnum):
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"


class ParsingQuality(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    NEEDS_REVIEW = "needs_review"
    HYBRID_RECONSTRUCTION = "hybrid_reconstruction"
    FAILED = "failed"


class FallbackRisk(StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


TRANSACTION_TYPES = frozenset(t.value for t in TransactionType)
RISK_ORDER: tuple[str, ...] = tuple(level.value for level in FallbackRisk)

# Data-bearing fields, used for completeness counting and hybrid merging.
TRANSACTION_FIELDS: tuple[str, ...] = (
    "transaction_type",
    "amount",
    "description",
    "suggested_category_id",
    "suggested_category_name",
    "suggested_tags",
    "suggested_wallet_id",
    "extracted_merchant",
    "extracted_date",
)

_TEXT_FIELDS = (
    "description",
    "suggested_category_id",
    "suggested_category_name",
    "suggested_wallet_id",
    "extracted_merchant",
    "extracted_date",
    "notes",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    return not isinstance(value, float) or math.isfinite(value)


_OPTIONAL_FIELDS = _TEXT_FIELDS + ("confidence_score", "suggested_tags", "validation_passed")


class _TransactionFields(BaseModel):
    model_config = ConfigDict(extra="allow")

    description: str | None = None
    suggested_category_id: str | None = None
    suggested_category_name: str | None = None
    confidence_score: float | None = None
    suggested_tags: list[str] = Field(default_factory=list)
    suggested_wallet_id: str | None = None
    extracted_merchant: str | None = None
    extracted_date: str | None = None
    notes: str | None = None
    validation_passed: bool | None = None

    @field_validator(*_TEXT_FIELDS, mode="before")
    @classmethod
    def _numbers_to_text(cls, v: Any) -> Any:
        if _is_number(v):
            return str(v)
        return v

    @field_validator("suggested_tags", mode="before")
    @classmethod
    def _tags_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        if isinstance(v, (list, tuple)):
            return [str(tag) for tag in v if tag is not None and str(tag).strip()]
        return v

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> Any:
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, str):
            try:
                v = float(v)
            except ValueError:
                return None
        if _is_number(v):
            if not _is_finite(v):
                return None
            return max(0.0, min(1.0, float(v)))
        return v

    @field_validator(*_OPTIONAL_FIELDS, mode="wrap")
    @classmethod
    def _invalid_optional_to_default(
        cls, v: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        """An unusable optional field is reset instead of rejecting the whole record."""
        try:
            return handler(v)
        except ValidationError as exc:
            logger.warning("Ignoring invalid %s (%d error(s))", info.field_name, exc.error_count())
            if isinstance(info.context, dict):
                info.context.setdefault("ignored_fields", []).append(info.field_name)
            return [] if info.field_name == "suggested_tags" else None

    def filled_field_count(self) -> int:
        """Number of data-bearing fields that carry a value."""
        count = 0
        for name in TRANSACTION_FIELDS:
            value = getattr(self, name, None)
            if value is None or value == "" or value == []:
                continue
            count += 1
        return count


class TransactionRecord(_TransactionFields):
    """One validated expense / income / transfer item."""

    transaction_type: TransactionType
    amount: int | float

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _normalise_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_is_numeric(cls, v: Any) -> Any:
        if isinstance(v, bool):
            msg = "amount must be a number, got a boolean"
            raise ValueError(msg)
        return v

    @field_validator("amount")
    @classmethod
    def _amount_not_negative(cls, v: int | float) -> int | float:
        if not _is_finite(v):
            msg = f"amount must be finite, got {v}"
            raise ValueError(msg)
        if v < 0:
            msg = f"amount must be >= 0, got {v}"
            raise ValueError(msg)
        return v


class PartialTransaction(_TransactionFields):
    """A candidate record recovered from a fragment or a rule-based extractor.

    Absent fields stay ``None`` so later stages can tell "missing" from
    "explicitly empty".
    """

    transaction_type: str | None = None
    amount: int | float | None = None

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _normalise_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return None

    @field_validator("amount", mode="before")
    @classmethod
    def _lenient_amount(cls, v: Any) -> Any:
        if _is_number(v):
            return v if _is_finite(v) else None
        if isinstance(v, str):
            raw = v.strip()
            try:
                return int(raw)
            except ValueError:
                pass
            try:
                value = float(raw)
            except ValueError:
                return None
            return value if math.isfinite(value) else None
        return None

    @property
    def is_complete(self) -> bool:
        return (
            self.transaction_type in TRANSACTION_TYPES
            and self.amount is not None
            and _is_finite(self.amount)
            and self.amount >= 0
        )

    def to_record(self) -> TransactionRecord:
        """Promote to a :class:`TransactionRecord`; only valid when complete."""
        return TransactionRecord.model_validate(self.model_dump(exclude_unset=True))


class DebugInfo(BaseModel):
    response_length: int
    response_preview: str
    original_input: str


class ParsingMetadata(BaseModel):
    """Diagnostics attached to every parse result.

    All fields are optional: a stage only sets what it knows, and anything a
    producer sent that is not listed here is kept as an extra field.
    """

    model_config = ConfigDict(extra="allow")

    total_transactions_found: int | None = None
    high_confidence_count: int | None = None
    medium_confidence_count: int | None = None
    low_confidence_count: int | None = None
    average_confidence: float | None = None
    validation_checks_passed: int | None = None
    parsing_quality: str | None = None
    fallback_risk: str | None = None
    fallback_method: str | None = None
    extraction_method: str | None = None
    enhancement_applied: bool | None = None
    repairs_applied: list[str] | None = None
    hybrid_merged: bool | None = None
    ai_extracted: int | None = None
    rule_based_extracted: int | None = None
    estimated_transaction_count: int | None = None
    potential_issues: list[str] | None = None
    debug_info: DebugInfo | None = None


class ParseResult(BaseModel):
    """Envelope returned by the parse pipeline."""

    model_config = ConfigDict(extra="allow")

    transactions: list[TransactionRecord] = Field(default_factory=list)
    analysis_summary: str | None = None
    parsing_metadata: ParsingMetadata | None = None

    def with_metadata(self, **fields: Any) -> ParseResult:
        """Copy with *fields* set on the metadata, creating it when absent."""
        metadata = self.parsing_metadata or ParsingMetadata()
        return self.model_copy(update={"parsing_metadata": metadata.model_copy(update=fields)})

    def with_issues(self, issues: list[str] | tuple[str, ...]) -> ParseResult:
        if not issues:
            return self
        existing = list(self.parsing_metadata.potential_issues or []) if self.parsing_metadata else []
        return self.with_metadata(potential_issues=existing + [i for i in issues if i not in existing])


@dataclass(frozen=True)
class ParsePolicy:
    """Thresholds and limits for one pipeline run."""

    medium_confidence: float = 0.5
    high_confidence: float = 0.8
    fallback_confidence_ceiling: float = 0.4
    response_preview_chars: int = 200
    input_preview_chars: int = 100
    max_response_chars: int = 2_000_000

    @classmethod
    def from_settings(cls, settings) -> ParsePolicy:
        return cls(
            medium_confidence=settings.ai_parse_medium_confidence,
            high_confidence=settings.ai_parse_high_confidence,
            fallback_confidence_ceiling=settings.ai_parse_fallback_confidence_ceiling,
            response_preview_chars=settings.ai_parse_response_preview_chars,
            input_preview_chars=settings.ai_parse_input_preview_chars,
            max_response_chars=settings.ai_parse_max_response_chars,
        )


DEFAULT_POLICY = ParsePolicy()
