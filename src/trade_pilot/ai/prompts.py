"""Prompt construction for trade recommendations."""

from __future__ import annotations

from trade_pilot.types import PortfolioSnapshot, Quote

SYSTEM_PROMPT = (
    "You are an expert quantitative analyst and portfolio manager. "
    "Provide data-driven trading recommendations in valid JSON format only."
)

_RESPONSE_FORMAT = """Respond with ONLY a JSON object:
{
  "recommendation": "BUY" | "SELL" | "HOLD",
  "confidence": 0-100,
  "reasoning": "2-3 sentences on the key factors",
  "riskLevel": "LOW" | "MEDIUM" | "HIGH",
  "targetPrice": number,
  "keyFactors": ["factor1", "factor2", "factor3"]
}"""


def _fmt_money(value: float | None) -> str:
    return "N/A" if value is None else f"${value:,.2f}"


def build_recommendation_prompt(quote: Quote, portfolio: PortfolioSnapshot) -> str:
    """Embed market and portfolio context in one structured request."""
    price_range = quote.high52 - quote.low52
    range_position = (
        f"{(quote.price - quote.low52) / price_range * 100:.1f}% of range"
        if price_range > 0
        else "N/A"
    )
    from_high = (
        f"{(quote.high52 - quote.price) / quote.high52 * 100:.1f}%" if quote.high52 > 0 else "N/A"
    )
    market_cap = f"${quote.market_cap / 1_000:.2f}B" if quote.market_cap else "N/A"
    holding = portfolio.holdings.get(quote.symbol)
    position = (
        f"{holding.quantity} shares at avg {_fmt_money(holding.average_price)}"
        if holding and holding.quantity > 0
        else "None"
    )

    lines = [
        "Analyze this stock for a paper-trading portfolio and give a clear recommendation.",
        "",
        "Stock:",
        f"- Symbol: {quote.symbol}",
        f"- Current Price: {_fmt_money(quote.price)}",
        f"- Day Change: {quote.change_percent:.2f}%",
        f"- 52-Week Range: {_fmt_money(quote.low52)} - {_fmt_money(quote.high52)}",
        f"- Price vs 52-week range: {range_position}",
        f"- Distance from 52-week high: {from_high}",
        f"- Market Cap: {market_cap}",
        f"- P/E Ratio: {quote.pe_ratio if quote.pe_ratio is not None else 'N/A'}",
        f"- Industry: {quote.industry or 'N/A'}",
        "",
        "Portfolio:",
        f"- Available Cash: {_fmt_money(portfolio.cash_balance)}",
        f"- Total Value: {_fmt_money(portfolio.total_value)}",
        f"- Open Positions: {sum(1 for h in portfolio.holdings.values() if h.quantity > 0)}",
        f"- Existing Position in {quote.symbol}: {position}",
        "",
        "Weigh momentum, valuation, diversification and risk management. "
        "Never suggest committing all available cash.",
        "",
        _RESPONSE_FORMAT,
    ]
    return "\n".join(lines)
