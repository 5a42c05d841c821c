import pytest
from pydantic import ValidationError

from expense_parser.core.config import Settings, get_settings
from expense_parser.services.ai.transaction_parse.contracts import ParsePolicy


def test_defaults():
    settings = Settings()
    assert settings.enable_ai_transaction_parse is True
    assert settings.ai_parse_postprocess is True
    assert settings.ai_parse_medium_confidence == 0.5
    assert settings.ai_parse_high_confidence == 0.8
    assert settings.ai_parse_fallback_confidence_ceiling == 0.4
    assert settings.ai_parse_max_response_chars == 2_000_000


@pytest.mark.parametrize("name", ["ENABLE_AI_TRANSACTION_PARSE", "ENABLE_AI_PARSE"])
def test_feature_flag_aliases(monkeypatch, name):
    monkeypatch.setenv(name, "false")
    assert Settings().enable_ai_transaction_parse is False


def test_max_response_chars_alias(monkeypatch):
    monkeypatch.setenv("AI_MAX_RESPONSE_CHARS", "5000")
    assert Settings().ai_parse_max_response_chars == 5000


def test_thresholds_from_env(monkeypatch):
    monkeypatch.setenv("AI_PARSE_MEDIUM_CONFIDENCE", "0.6")
    monkeypatch.setenv("AI_PARSE_HIGH_CONFIDENCE", "0.9")
    policy = ParsePolicy.from_settings(Settings())
    assert policy.medium_confidence == 0.6
    assert policy.high_confidence == 0.9


def test_high_threshold_must_not_be_below_medium():
    with pytest.raises(ValidationError):
        Settings(ai_parse_medium_confidence=0.7, ai_parse_high_confidence=0.6)


def test_thresholds_are_bounded():
    with pytest.raises(ValidationError):
        Settings(ai_parse_fallback_confidence_ceiling=1.5)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://a.example, https://b.example", ["https://a.example", "https://b.example"]),
        ('["https://a.example"]', ["https://a.example"]),
        ("", []),
    ],
)
def test_cors_origins_parsing(monkeypatch, raw, expected):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", raw)
    assert Settings().cors_allow_origins == expected


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
