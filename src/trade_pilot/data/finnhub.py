"""Finnhub quote client."""

from __future__ import annotations

import re
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from trade_pilot.config import Settings
from trade_pilot.errors import QuoteUnavailable
from trade_pilot.types import Quote
from trade_pilot.utils.logging import get_logger

_BASE_URL = "https://finnhub.io/api/v1"
_SYMBOL_RE = re.compile(r"^[A-Z]{1,5}(\.[A-Z]{1,2})?$")


class _TransientQuoteError(Exception):
    pass


class FinnhubQuoteClient:
    """Read-only quote source combining quote, profile and basic financials.

    Only the quote endpoint is required; profile and financials fill optional
    fields and 52-week range, with estimates when they are missing.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = settings.finnhub_api_key
        self._timeout = settings.quote_timeout
        self._transport = transport
        self._logger = get_logger("trade_pilot.data.finnhub")

    def get_quote(self, symbol: str) -> Quote:
        symbol = symbol.strip().upper()
        if not _SYMBOL_RE.match(symbol):
            raise QuoteUnavailable(symbol, "invalid_symbol")
        if not self._api_key:
            raise QuoteUnavailable(symbol, "missing_finnhub_api_key")

        with httpx.Client(
            base_url=_BASE_URL,
            timeout=self._timeout,
            transport=self._transport,
            headers={"X-Finnhub-Token": self._api_key},
        ) as client:
            try:
                quote = self._get(client, "/quote", {"symbol": symbol})
            except (httpx.HTTPError, _TransientQuoteError, ValueError) as exc:
                raise QuoteUnavailable(symbol, str(exc) or type(exc).__name__) from exc

            price = _as_float(quote.get("c"))
            if price is None or price <= 0:
                raise QuoteUnavailable(symbol, "invalid_price")

            profile = self._optional(client, "/stock/profile2", {"symbol": symbol})
            metrics = self._optional(client, "/stock/metric", {"symbol": symbol, "metric": "all"})

        metric = metrics.get("metric") if isinstance(metrics.get("metric"), dict) else {}
        return Quote(
            symbol=symbol,
            price=price,
            change_percent=_as_float(quote.get("dp")) or 0.0,
            high52=_as_float(metric.get("52WeekHigh")) or price * 1.2,
            low52=_as_float(metric.get("52WeekLow")) or price * 0.8,
            market_cap=_as_float(profile.get("marketCapitalization")),
            pe_ratio=_as_float(metric.get("peBasicExclExtraTTM")),
            industry=profile.get("finnhubIndustry") or None,
        )

    @retry(
        retry=retry_if_exception_type(_TransientQuoteError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _get(self, client: httpx.Client, path: str, params: dict[str, str]) -> dict[str, Any]:
        try:
            response = client.get(path, params=params)
        except httpx.TransportError as exc:
            if isinstance(exc, httpx.TimeoutException):
                raise
            raise _TransientQuoteError(str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientQuoteError(f"http_{response.status_code}")
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("response_not_object")
        return payload

    def _optional(self, client: httpx.Client, path: str, params: dict[str, str]) -> dict[str, Any]:
        try:
            return self._get(client, path, params)
        except (httpx.HTTPError, _TransientQuoteError, ValueError) as exc:
            self._logger.warning(
                "optional_fetch_failed",
                path=path,
                symbol=params.get("symbol"),
                error=str(exc),
            )
            return {}


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result == result else None
