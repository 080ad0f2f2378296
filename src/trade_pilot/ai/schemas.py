"""Model output schemas and strict parsing helpers."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
)

from trade_pilot.errors import ProviderError, ProviderMalformedResponse

Action = Literal["BUY", "SELL", "HOLD"]
RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]

_ACTIONS = {"BUY", "SELL", "HOLD"}
_RISK_LEVELS = {"LOW", "MEDIUM", "HIGH"}
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class RawRecommendation(BaseModel):
    """Structured fields extracted from a provider completion.

    Never trusted as-is: confidence is clamped into [0, 100], unknown actions
    become HOLD and unknown risk levels become HIGH.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    action: Action = Field(
        default="HOLD",
        validation_alias=AliasChoices("action", "recommendation", "decision"),
    )
    confidence: float = Field(ge=0.0, le=100.0)
    reasoning: str = ""
    risk_level: RiskLevel = Field(
        default="HIGH",
        validation_alias=AliasChoices("risk_level", "riskLevel", "risk"),
    )
    target_price: float | None = Field(
        default=None,
        validation_alias=AliasChoices("target_price", "targetPrice"),
    )
    key_factors: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("key_factors", "keyFactors"),
    )

    @field_validator("action", mode="before")
    @classmethod
    def coerce_action(cls, v: Any) -> str:
        if isinstance(v, str) and v.strip().upper() in _ACTIONS:
            return v.strip().upper()
        return "HOLD"

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        if isinstance(v, bool):
            raise ValueError("confidence_not_numeric")
        if isinstance(v, str):
            v = v.strip().rstrip("%").strip()
        try:
            value = float(v)
        except (TypeError, ValueError) as exc:
            raise ValueError("confidence_not_numeric") from exc
        if value != value:  # NaN
            raise ValueError("confidence_not_numeric")
        return min(100.0, max(0.0, value))

    @field_validator("risk_level", mode="before")
    @classmethod
    def coerce_risk_level(cls, v: Any) -> str:
        if isinstance(v, str) and v.strip().upper() in _RISK_LEVELS:
            return v.strip().upper()
        return "HIGH"

    @field_validator("reasoning", mode="before")
    @classmethod
    def coerce_reasoning(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("target_price", mode="before")
    @classmethod
    def drop_invalid_target(cls, v: Any) -> float | None:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    @field_validator("key_factors", mode="before")
    @classmethod
    def coerce_key_factors(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item is not None]


class Recommendation(BaseModel):
    """Validated recommendation consumed by the decision layer."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    action: Action
    confidence: float = Field(ge=0.0, le=100.0)
    reasoning: str = ""
    risk_level: RiskLevel
    target_price: float = Field(gt=0.0)
    current_price: float = Field(gt=0.0)
    provider: str
    generated_at: datetime
    key_factors: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def expected_return_pct(self) -> float:
        return (self.target_price - self.current_price) / self.current_price * 100

    @classmethod
    def from_raw(
        cls,
        raw: RawRecommendation,
        *,
        symbol: str,
        current_price: float,
        provider: str,
        generated_at: datetime,
    ) -> "Recommendation":
        return cls(
            symbol=symbol.upper(),
            action=raw.action,
            confidence=raw.confidence,
            reasoning=raw.reasoning,
            risk_level=raw.risk_level,
            target_price=raw.target_price or current_price,
            current_price=current_price,
            provider=provider,
            generated_at=generated_at,
            key_factors=raw.key_factors,
        )


def parse_recommendation_text(text: str, *, provider: str | None = None) -> RawRecommendation:
    """Parse completion text. Raises ``ProviderMalformedResponse``."""
    try:
        payload = extract_json_obj(text)
    except ValueError as exc:
        raise ProviderMalformedResponse(str(exc), provider=provider) from exc
    try:
        return RawRecommendation.model_validate(payload)
    except ValidationError as exc:
        raise ProviderMalformedResponse(
            f"schema_validation_error: {exc.errors()[0]['msg']}",
            provider=provider,
        ) from exc


def extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first well-formed JSON object from plain or fenced text."""
    stripped = text.strip()
    if not stripped:
        raise ValueError("model_response_empty")

    fenced_match = _FENCED_JSON.search(stripped)
    if fenced_match:
        try:
            decoded = json.loads(fenced_match.group(1))
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded

    decoder = json.JSONDecoder()
    start = stripped.find("{")
    while start != -1:
        try:
            decoded, _ = decoder.raw_decode(stripped, start)
        except json.JSONDecodeError:
            start = stripped.find("{", start + 1)
            continue
        if isinstance(decoded, dict):
            return decoded
        start = stripped.find("{", start + 1)

    raise ValueError("model_response_not_json")


@dataclass(frozen=True, slots=True)
class Ok:
    """Successful provider call."""

    value: Recommendation


@dataclass(frozen=True, slots=True)
class Err:
    """Failed provider call."""

    error: ProviderError


ProviderResponse = Ok | Err
