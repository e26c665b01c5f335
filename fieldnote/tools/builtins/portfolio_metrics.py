"""Portfolio analytics over caller-supplied close prices.

Pure computation: returns, annualised volatility, max drawdown, Sharpe ratio,
risk classification and pairwise Pearson correlation. Percentages are
rounded to two decimals.
"""

from __future__ import annotations

import math
import re
from itertools import combinations
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from fieldnote.tools.base import BaseTool, RiskLevel

if TYPE_CHECKING:
    from fieldnote.tools.context import ToolContext

RISK_FREE_RATE = 0.04
TRADING_DAYS_PER_YEAR = 252

_TICKER_RE = re.compile(r"^[A-Z]{1,5}$")


def daily_returns(closes: list[float]) -> list[float]:
    return [
        (cur - prev) / prev
        for prev, cur in zip(closes, closes[1:])
        if prev != 0
    ]


def period_return(closes: list[float]) -> float:
    if len(closes) < 2 or closes[0] == 0:
        return 0.0
    return (closes[-1] - closes[0]) / closes[0] * 100


def annualized_volatility(returns: list[float]) -> float:
    """Sample standard deviation of daily returns, annualised, in percent."""
    if len(returns) < 2:
        return 0.0
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / (len(returns) - 1)
    return math.sqrt(variance * TRADING_DAYS_PER_YEAR) * 100


def max_drawdown(closes: list[float]) -> float:
    """Largest peak-to-trough decline in percent (zero or negative)."""
    if len(closes) < 2:
        return 0.0
    worst = 0.0
    peak = closes[0]
    for close in closes:
        peak = max(peak, close)
        if peak > 0:
            worst = min(worst, (close - peak) / peak * 100)
    return worst


def sharpe_ratio(returns: list[float], risk_free_rate: float = RISK_FREE_RATE) -> float:
    if len(returns) < 2:
        return 0.0
    annual_return = sum(returns) / len(returns) * TRADING_DAYS_PER_YEAR
    volatility = annualized_volatility(returns) / 100
    if volatility == 0:
        return 0.0
    return (annual_return - risk_free_rate) / volatility


def classify_risk(volatility_pct: float) -> str:
    if volatility_pct < 15:
        return "low"
    if volatility_pct < 30:
        return "medium"
    return "high"


def correlation(a: list[float], b: list[float]) -> float:
    """Pearson coefficient over the common prefix, clamped to [-1, 1]."""
    n = min(len(a), len(b))
    if n < 2:
        return 0.0
    a, b = a[:n], b[:n]
    mean_a = sum(a) / n
    mean_b = sum(b) / n
    num = sum((x - mean_a) * (y - mean_b) for x, y in zip(a, b))
    den = math.sqrt(
        sum((x - mean_a) ** 2 for x in a) * sum((y - mean_b) ** 2 for y in b)
    )
    if den == 0:
        return 0.0
    return max(-1.0, min(1.0, num / den))


def classify_correlation(coefficient: float) -> str:
    if coefficient < -0.3:
        return "negative"
    if coefficient > 0.3:
        return "positive"
    return "neutral"


class PortfolioMetricsArgs(BaseModel):
    prices: dict[str, list[float]] = Field(
        description=(
            "Map of ticker symbol to daily close prices, oldest first, "
            'e.g. {"AAPL": [189.1, 190.4, 188.7], "MSFT": [410.2, 412.9, 409.5]}.'
        ),
    )
    risk_free_rate: float = Field(
        RISK_FREE_RATE, ge=0, le=1, description="Annual risk-free rate as a decimal."
    )

    @field_validator("prices")
    @classmethod
    def _validate_prices(cls, v: dict[str, list[float]]) -> dict[str, list[float]]:
        if not 1 <= len(v) <= 20:
            raise ValueError(f"expected 1-20 tickers, got {len(v)}")
        normalized: dict[str, list[float]] = {}
        for ticker, closes in v.items():
            symbol = ticker.strip().upper()
            if not _TICKER_RE.match(symbol):
                raise ValueError(f"invalid ticker symbol: {ticker!r}")
            if len(closes) < 2:
                raise ValueError(f"{symbol}: need at least 2 close prices")
            normalized.setdefault(symbol, closes)
        return normalized


class PortfolioMetricsTool(BaseTool):
    """Performance, risk and correlation metrics for a set of tickers."""

    @property
    def name(self) -> str:
        return "portfolio_metrics"

    @property
    def description(self) -> str:
        return (
            "Compute period return, ranking, annualised volatility, max drawdown, "
            "Sharpe ratio, risk class and pairwise correlations from daily close prices."
        )

    @property
    def args_model(self) -> type[BaseModel]:
        return PortfolioMetricsArgs

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low

    def query_hint(self, arguments: dict) -> str | None:
        return " ".join(sorted(arguments.get("prices", {})))

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        prices: dict[str, list[float]] = arguments["prices"]
        rfr: float = arguments.get("risk_free_rate", RISK_FREE_RATE)

        returns_by_symbol: dict[str, list[float]] = {}
        performance = []
        risk = []
        for symbol, closes in prices.items():
            if context is not None:
                context.report_progress(f"Analyzing {symbol}")
            rets = daily_returns(closes)
            returns_by_symbol[symbol] = rets
            vol = annualized_volatility(rets)
            performance.append({"symbol": symbol, "period_return": round(period_return(closes), 2)})
            risk.append(
                {
                    "symbol": symbol,
                    "volatility": round(vol, 2),
                    "max_drawdown": round(max_drawdown(closes), 2),
                    "sharpe_ratio": round(sharpe_ratio(rets, rfr), 2),
                    "risk_class": classify_risk(vol),
                }
            )

        performance.sort(key=lambda p: p["period_return"], reverse=True)
        average = sum(p["period_return"] for p in performance) / len(performance)
        for rank, entry in enumerate(performance, start=1):
            entry["ranking"] = rank
            entry["relative_to_average"] = round(entry["period_return"] - average, 2)

        pairs = []
        for first, second in combinations(returns_by_symbol, 2):
            coefficient = correlation(returns_by_symbol[first], returns_by_symbol[second])
            pairs.append(
                {
                    "pair": [first, second],
                    "coefficient": round(coefficient, 2),
                    "classification": classify_correlation(coefficient),
                }
            )

        return {
            "performance": performance,
            "risk": risk,
            "correlations": pairs,
            "highly_correlated": [p["pair"] for p in pairs if p["coefficient"] > 0.7],
            "negatively_correlated": [p["pair"] for p in pairs if p["coefficient"] < -0.3],
        }
