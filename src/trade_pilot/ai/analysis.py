"""Aggregate views over one day's recommendation set."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Literal

import pandas as pd  # type: ignore[import-untyped]
from pydantic import BaseModel

from trade_pilot.ai.schemas import Recommendation
from trade_pilot.types import Quote

_TOP_MIN_CONFIDENCE = 70.0
_TOP_MIN_EXPECTED_RETURN_PCT = 2.0


class RecommendationStats(BaseModel):
    total_analyzed: int = 0
    buy_signals: int = 0
    sell_signals: int = 0
    hold_signals: int = 0
    average_confidence: float = 0.0


class MarketAnalysis(BaseModel):
    sentiment: Literal["BULLISH", "BEARISH", "NEUTRAL"] = "NEUTRAL"
    volatility_index: float = 0.0
    summary: str = ""
    risk_warnings: list[str] = []


def rank_by_confidence(recommendations: Sequence[Recommendation]) -> list[Recommendation]:
    """Highest confidence first; ties keep input order."""
    return sorted(recommendations, key=lambda r: r.confidence, reverse=True)


def compute_stats(recommendations: Sequence[Recommendation]) -> RecommendationStats:
    if not recommendations:
        return RecommendationStats()
    frame = pd.DataFrame(
        {
            "action": [r.action for r in recommendations],
            "confidence": [r.confidence for r in recommendations],
        }
    )
    counts = frame["action"].value_counts()
    return RecommendationStats(
        total_analyzed=len(frame),
        buy_signals=int(counts.get("BUY", 0)),
        sell_signals=int(counts.get("SELL", 0)),
        hold_signals=int(counts.get("HOLD", 0)),
        average_confidence=round(float(frame["confidence"].mean()), 1),
    )


def select_top_opportunities(
    recommendations: Sequence[Recommendation],
    limit: int,
) -> list[Recommendation]:
    """Actionable, confident calls ranked by confidence x expected move."""
    eligible = [
        r
        for r in recommendations
        if r.action != "HOLD"
        and r.confidence > _TOP_MIN_CONFIDENCE
        and abs(r.expected_return_pct) > _TOP_MIN_EXPECTED_RETURN_PCT
    ]
    eligible.sort(key=lambda r: r.confidence * abs(r.expected_return_pct), reverse=True)
    return eligible[:limit]


def build_market_analysis(
    recommendations: Sequence[Recommendation],
    quotes: Sequence[Quote],
    *,
    top_count: int,
    generated_at: datetime,
) -> MarketAnalysis:
    bullish = sum(1 for r in recommendations if r.action == "BUY")
    bearish = sum(1 for r in recommendations if r.action == "SELL")
    sentiment: Literal["BULLISH", "BEARISH", "NEUTRAL"] = "NEUTRAL"
    if bullish > bearish * 1.5:
        sentiment = "BULLISH"
    elif bearish > bullish * 1.5:
        sentiment = "BEARISH"

    volatility = 0.0
    if quotes:
        volatility = float(pd.Series([abs(q.change_percent) for q in quotes]).mean())
    opportunities = len(select_top_opportunities(recommendations, top_count))

    warnings: list[str] = []
    if volatility > 3:
        warnings.append("High market volatility detected - consider reducing position sizes")
    high_risk = sum(1 for r in recommendations if r.risk_level == "HIGH")
    if recommendations and high_risk > len(recommendations) * 0.4:
        warnings.append("Many high-risk opportunities detected - diversify your trades")
    stats = compute_stats(recommendations)
    if recommendations and stats.average_confidence < 60:
        warnings.append("Lower confidence signals today - consider smaller position sizes")

    summary = (
        f"Market analysis ({generated_at.strftime('%H:%M')} UTC): {sentiment} sentiment with "
        f"{volatility:.1f}% average volatility. {opportunities} high-confidence "
        "opportunities identified for today's session."
    )
    return MarketAnalysis(
        sentiment=sentiment,
        volatility_index=round(volatility, 1),
        summary=summary,
        risk_warnings=warnings,
    )
