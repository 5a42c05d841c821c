from functools import lru_cache
import json
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = Field(default=False)
    security_headers_enabled: bool = Field(default=True)

    enable_ai_transaction_parse: bool = Field(
        default=True,
        validation_alias=AliasChoices("ENABLE_AI_TRANSACTION_PARSE", "ENABLE_AI_PARSE"),
    )
    ai_parse_postprocess: bool = True

    # Confidence bands used by the response enhancer.
    ai_parse_medium_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    ai_parse_high_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    ai_parse_fallback_confidence_ceiling: float = Field(default=0.4, ge=0.0, le=1.0)

    ai_parse_response_preview_chars: int = Field(default=200, ge=0)
    ai_parse_input_preview_chars: int = Field(default=100, ge=0)
    ai_parse_max_response_chars: int = Field(
        default=2_000_000,
        ge=1,
        validation_alias=AliasChoices("AI_PARSE_MAX_RESPONSE_CHARS", "AI_MAX_RESPONSE_CHARS"),
    )

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "OPTIONS",
    ])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return _parse_list_value(value)
        return value

    @field_validator("ai_parse_high_confidence")
    @classmethod
    def _high_above_medium(cls, value, info):
        medium = info.data.get("ai_parse_medium_confidence")
        if medium is not None and value < medium:
            msg = f"ai_parse_high_confidence ({value}) must be >= ai_parse_medium_confidence ({medium})"
            raise ValueError(msg)
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
