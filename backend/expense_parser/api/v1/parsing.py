"""Transaction parse endpoints: turn raw LLM output into validated transactions."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from expense_parser.core.config import get_settings
from expense_parser.services.ai.transaction_parse.contracts import ParsePolicy, ParseResult
from expense_parser.services.ai.transaction_parse.service import run_parse_pipeline
from expense_parser.services.transaction_postprocess import (
    TransactionSummary,
    postprocess_result,
    summarize_transactions,
)

router = APIRouter()

MAX_ORIGINAL_TEXT = 2000


def _ensure_ai_transaction_parse_enabled() -> None:
    settings = get_settings()
    if not settings.enable_ai_transaction_parse:
        raise HTTPException(404, "Not found")


class ParseResponseRequest(BaseModel):
    response_text: str = Field(..., description="Raw model output; limited by AI_PARSE_MAX_RESPONSE_CHARS")
    original_text: str | None = Field(default=None, max_length=MAX_ORIGINAL_TEXT)
    postprocess: bool | None = Field(
        default=None,
        description="Normalise, tag and de-duplicate transactions; defaults to AI_PARSE_POSTPROCESS",
    )


class ParseResponseEnvelope(ParseResult):
    strategy: str
    latency_ms: float
    transaction_summary: TransactionSummary | None = None


class ParseHealthResponse(BaseModel):
    enabled: bool
    postprocess: bool
    medium_confidence: float
    high_confidence: float
    fallback_confidence_ceiling: float
    max_response_chars: int


@router.post(
    "/expenses/parse-response",
    response_model=ParseResponseEnvelope,
    response_model_exclude_unset=True,
    summary="Parse raw AI output into transactions with fallbacks",
)
def parse_response_endpoint(body: ParseResponseRequest):
    _ensure_ai_transaction_parse_enabled()

    settings = get_settings()
    if len(body.response_text) > settings.ai_parse_max_response_chars:
        raise HTTPException(422, f"response_text exceeds {settings.ai_parse_max_response_chars} characters")

    outcome = run_parse_pipeline(
        body.response_text,
        body.original_text,
        policy=ParsePolicy.from_settings(settings),
    )

    result = outcome.result
    postprocess = settings.ai_parse_postprocess if body.postprocess is None else body.postprocess
    summary = None
    if postprocess and result.transactions:
        result = postprocess_result(result)
        summary = summarize_transactions(result.transactions)

    payload = result.model_dump(exclude_unset=True)
    payload["strategy"] = outcome.strategy
    payload["latency_ms"] = outcome.latency_ms
    if summary is not None:
        payload["transaction_summary"] = summary.model_dump()
    return ParseResponseEnvelope.model_validate(payload)


@router.get("/expenses/parse-response/health", response_model=ParseHealthResponse)
def parse_response_health():
    settings = get_settings()
    return ParseHealthResponse(
        enabled=settings.enable_ai_transaction_parse,
        postprocess=settings.ai_parse_postprocess,
        medium_confidence=settings.ai_parse_medium_confidence,
        high_confidence=settings.ai_parse_high_confidence,
        fallback_confidence_ceiling=settings.ai_parse_fallback_confidence_ceiling,
        max_response_chars=settings.ai_parse_max_response_chars,
    )
