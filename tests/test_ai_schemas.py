from __future__ import annotations

import pytest

from trade_pilot.ai.schemas import (
    RawRecommendation,
    Recommendation,
    extract_json_obj,
    parse_recommendation_text,
)
from trade_pilot.errors import ProviderMalformedResponse

from fakes import START, rec_json


def test_parse_valid_payload() -> None:
    raw = parse_recommendation_text(rec_json("BUY", 82, "MEDIUM", target=210.5))
    assert raw.action == "BUY"
    assert raw.confidence == 82
    assert raw.risk_level == "MEDIUM"
    assert raw.target_price == 210.5
    assert raw.key_factors == ["momentum"]


@pytest.mark.parametrize(("value", "expected"), [(150, 100.0), (-20, 0.0), (1e9, 100.0)])
def test_confidence_outside_range_is_clamped(value: float, expected: float) -> None:
    raw = parse_recommendation_text(rec_json("BUY", value))
    assert raw.confidence == expected


def test_confidence_percent_string_is_accepted() -> None:
    raw = parse_recommendation_text(rec_json("SELL", "85%"))
    assert raw.confidence == 85.0


@pytest.mark.parametrize("action", ["STRONG_BUY", "buy now", "", "42"])
def test_unknown_action_coerces_to_hold(action: str) -> None:
    raw = parse_recommendation_text(rec_json(action, 90))
    assert raw.action == "HOLD"


def test_action_is_case_insensitive() -> None:
    raw = parse_recommendation_text(rec_json(" sell ", 90))
    assert raw.action == "SELL"


def test_unknown_risk_level_coerces_to_high() -> None:
    raw = parse_recommendation_text(rec_json("BUY", 90, "EXTREME"))
    assert raw.risk_level == "HIGH"


def test_missing_confidence_is_malformed() -> None:
    with pytest.raises(ProviderMalformedResponse):
        parse_recommendation_text('{"recommendation": "BUY"}', provider="groq")


@pytest.mark.parametrize("confidence", ["high", True, None, [80]])
def test_non_numeric_confidence_is_malformed(confidence: object) -> None:
    with pytest.raises(ProviderMalformedResponse):
        parse_recommendation_text(rec_json("BUY", confidence))


def test_non_json_text_is_malformed() -> None:
    with pytest.raises(ProviderMalformedResponse) as exc_info:
        parse_recommendation_text("I would buy this stock.", provider="openai")
    assert exc_info.value.provider == "openai"


def test_extract_json_from_fenced_block() -> None:
    text = 'Here you go:\n```json\n{"recommendation": "BUY", "confidence": 70}\n```\nThanks'
    assert extract_json_obj(text)["confidence"] == 70


def test_extract_first_object_from_prose() -> None:
    text = 'Analysis {not json} then {"recommendation": "HOLD", "confidence": 55} and {"x": 1}'
    assert extract_json_obj(text) == {"recommendation": "HOLD", "confidence": 55}


def test_invalid_target_falls_back_to_current_price() -> None:
    raw = RawRecommendation.model_validate({"confidence": 90, "targetPrice": -5})
    assert raw.target_price is None
    rec = Recommendation.from_raw(
        raw,
        symbol="msft",
        current_price=400.0,
        provider="gemini",
        generated_at=START,
    )
    assert rec.symbol == "MSFT"
    assert rec.target_price == 400.0
    assert rec.expected_return_pct == 0.0


def test_expected_return_pct() -> None:
    raw = RawRecommendation.model_validate({"confidence": 90, "targetPrice": 110})
    rec = Recommendation.from_raw(
        raw,
        symbol="AAPL",
        current_price=100.0,
        provider="gemini",
        generated_at=START,
    )
    assert rec.expected_return_pct == pytest.approx(10.0)
