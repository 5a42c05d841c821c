import json

import pytest
from fastapi.testclient import TestClient

import expense_parser.api.v1.parsing as parsing_module
from expense_parser.core.config import Settings
from expense_parser.main import app

URL = "/api/v1/expenses/parse-response"

VALID_AI_RESPONSE = {
    "transactions": [
        {
            "transaction_type": "expense",
            "amount": 25000,
            "description": "Ăn sáng",
            "suggested_category_id": "uuid-food",
            "suggested_category_name": "Ăn uống",
            "confidence_score": 0.9,
            "suggested_tags": ["#breakfast"],
            "suggested_wallet_id": "uuid-wallet",
            "extracted_merchant": None,
            "extracted_date": None,
            "notes": None,
        }
    ],
    "analysis_summary": "Found 1 expense transaction",
    "parsing_metadata": {"average_confidence": 0.9, "total_transactions_found": 1},
}


@pytest.fixture
def state(monkeypatch):
    state = {"settings": Settings()}
    monkeypatch.setattr(parsing_module, "get_settings", lambda: state["settings"])
    return state


@pytest.fixture
def client(state):
    with TestClient(app) as test_client:
        yield test_client


def test_disabled_flag_returns_404(client, state):
    state["settings"] = Settings(enable_ai_transaction_parse=False)
    resp = client.post(URL, json={"response_text": "{}"})
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Not found"}


def test_trusted_response_round_trips(client):
    resp = client.post(URL, json={"response_text": json.dumps(VALID_AI_RESPONSE), "postprocess": False})
    assert resp.status_code == 200
    body = resp.json()
    assert body.pop("strategy") == "direct"
    assert body.pop("latency_ms") >= 0
    assert body == VALID_AI_RESPONSE


def test_postprocess_adds_tags_and_summary(client):
    resp = client.post(URL, json={"response_text": json.dumps(VALID_AI_RESPONSE)})
    assert resp.status_code == 200
    body = resp.json()
    assert body["transactions"][0]["suggested_tags"] == ["#breakfast", "#high-confidence"]
    assert body["transaction_summary"]["total"] == 1
    assert body["transaction_summary"]["total_amount"]["expense"] == 25000


def test_postprocess_default_follows_settings(client, state):
    state["settings"] = Settings(ai_parse_postprocess=False)
    resp = client.post(URL, json={"response_text": json.dumps(VALID_AI_RESPONSE)})
    assert "transaction_summary" not in resp.json()


def test_fallback_from_original_text(client):
    resp = client.post(URL, json={"response_text": "not json", "original_text": "ăn sáng 25k"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["strategy"] == "fallback"
    assert body["transactions"][0]["amount"] == 25000
    assert body["transactions"][0]["confidence_score"] <= 0.4
    assert body["parsing_metadata"]["fallback_method"] == "vietnamese_extraction"


def test_total_failure_is_structured(client):
    resp = client.post(URL, json={"response_text": "not json"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["strategy"] == "failed"
    assert body["transactions"] == []
    assert body["parsing_metadata"]["fallback_risk"] == "critical"
    assert body["parsing_metadata"]["debug_info"]["original_input"] == "not_provided"
    assert "transaction_summary" not in body


def test_settings_thresholds_are_applied(client, state):
    state["settings"] = Settings(ai_parse_medium_confidence=0.95, ai_parse_high_confidence=0.95)
    resp = client.post(URL, json={"response_text": json.dumps(VALID_AI_RESPONSE), "postprocess": False})
    body = resp.json()
    assert body["transactions"][0]["validation_passed"] is False
    assert body["parsing_metadata"]["low_confidence_count"] == 1


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"response_text": None},
        {"response_text": "x", "original_text": "a" * 2001},
    ],
)
def test_invalid_request_returns_422(client, payload):
    resp = client.post(URL, json=payload)
    assert resp.status_code == 422


def test_health_reports_settings(client, state):
    state["settings"] = Settings(enable_ai_transaction_parse=False, ai_parse_high_confidence=0.85)
    resp = client.get(f"{URL}/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["enabled"] is False
    assert body["high_confidence"] == 0.85
    assert body["max_response_chars"] == 2_000_000


def test_root_health_and_security_headers(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_api_responses_are_not_cached(client):
    resp = client.get(f"{URL}/health")
    assert resp.headers["Cache-Control"] == "no-store"


def test_non_finite_amount_is_not_emitted(client):
    text = '{"transactions": [{"transaction_type": "expense", "amount": NaN, "confidence_score": 0.9}]}'
    resp = client.post(URL, json={"response_text": text})
    assert resp.status_code == 200
    body = resp.json()
    assert body["strategy"] == "failed"
    assert body["transactions"] == []


def test_response_text_limit_follows_settings(client, state):
    state["settings"] = Settings(ai_parse_max_response_chars=10)
    resp = client.post(URL, json={"response_text": "x" * 11})
    assert resp.status_code == 422
    assert resp.json() == {"detail": "response_text exceeds 10 characters"}

    resp = client.post(URL, json={"response_text": "x" * 10})
    assert resp.status_code == 200
