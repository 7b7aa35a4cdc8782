"""
Token pricing rules.

- Purchase limits and the USD -> token conversion
- Per-feature token costs and the pre-deduction safety margin
- Which features need tokens and which are blocked during a trial

Money is handled as Decimal; token counts are ints.
"""

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Optional, Union

Number = Union[int, float, str, Decimal]

MINIMUM_PURCHASE_USD = Decimal("5")
MAXIMUM_PURCHASE_USD = Decimal("1000")
PURCHASE_INCREMENT_USD = Decimal("5")
PRESET_AMOUNTS_USD = (10, 20, 50, 100)

APP_REVENUE_SHARE = Decimal("0.70")
TOKEN_BUDGET_SHARE = Decimal("0.30")

# USD per 1M tokens when the live provider rate is unavailable
FALLBACK_RATE_PER_1M = Decimal("0.10")

TOKEN_SAFETY_MARGIN = Decimal("0.10")

TOKEN_COSTS: Dict[str, Dict[str, Any]] = {
    "ai-seo-product-basic": {
        "base": 1000,
        "per_language": 800,
        "description": "AI SEO optimization for product",
    },
    "ai-seo-product-enhanced": {
        "base": 2000,
        "per_language": 1500,
        "description": "Enhanced AI SEO with rich attributes",
    },
    "ai-seo-collection": {
        "base": 1500,
        "per_language": 1200,
        "description": "AI SEO optimization for collection",
    },
    "ai-testing-simulation": {
        "base": 500,
        "description": "AI testing and simulation",
    },
    "ai-testing-validation": {
        "base": 50,
        "description": "AI-powered validation of endpoint data",
    },
    "ai-schema-advanced": {
        "base": 3000,
        "per_product": 2500,
        "description": "Advanced schema data generation",
    },
    "ai-sitemap-optimized": {
        "base": 5000,
        "per_product": 3000,
        "description": "AI-optimized sitemap generation",
    },
}

# Basic product SEO is free and allowed during the trial
TOKEN_REQUIRED_FEATURES = frozenset({
    "ai-seo-product-enhanced",
    "ai-seo-collection",
    "ai-testing-simulation",
    "ai-testing-validation",
    "ai-schema-advanced",
    "ai-sitemap-optimized",
})

TRIAL_BLOCKED_FEATURES = frozenset(TOKEN_REQUIRED_FEATURES)


@dataclass(frozen=True)
class PurchaseQuote:
    """Breakdown of a token purchase."""
    usd_amount: Decimal
    app_revenue: Decimal
    token_budget: Decimal
    rate_per_1m: Decimal
    tokens: int


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate_purchase_amount(amount: Number) -> Optional[str]:
    """
    Check a purchase amount.

    Returns:
        None when valid, otherwise a short reason string.
    """
    try:
        usd = to_decimal(amount)
    except (ArithmeticError, ValueError):
        return "not a number"
    if not usd.is_finite():
        return "not a number"
    if usd < MINIMUM_PURCHASE_USD:
        return f"minimum purchase is ${MINIMUM_PURCHASE_USD}"
    if usd > MAXIMUM_PURCHASE_USD:
        return f"maximum purchase is ${MAXIMUM_PURCHASE_USD}"
    if usd % PURCHASE_INCREMENT_USD != 0:
        return f"amount must be a multiple of ${PURCHASE_INCREMENT_USD}"
    return None


def quote_purchase(usd_amount: Number, rate_per_1m: Optional[Number] = None) -> PurchaseQuote:
    """
    Convert a USD purchase into tokens.

    30% of the amount buys provider tokens at rate_per_1m (USD per 1M
    tokens); the remainder is app revenue. Example: $10 at $0.10/1M
    gives $3 of budget and 30,000,000 tokens.
    """
    usd = to_decimal(usd_amount)
    rate = to_decimal(rate_per_1m) if rate_per_1m else FALLBACK_RATE_PER_1M
    if rate <= 0:
        rate = FALLBACK_RATE_PER_1M

    token_budget = usd * TOKEN_BUDGET_SHARE
    tokens = int((token_budget / rate * Decimal(1_000_000)).to_integral_value(rounding=ROUND_FLOOR))

    return PurchaseQuote(
        usd_amount=usd,
        app_revenue=usd * APP_REVENUE_SHARE,
        token_budget=token_budget,
        rate_per_1m=rate,
        tokens=tokens,
    )


def requires_tokens(feature: str) -> bool:
    return feature in TOKEN_REQUIRED_FEATURES


def is_blocked_in_trial(feature: str) -> bool:
    return feature in TRIAL_BLOCKED_FEATURES


def is_known_feature(feature: str) -> bool:
    return feature in TOKEN_COSTS


def calculate_feature_cost(
    feature: str,
    languages: int = 1,
    product_count: int = 0,
) -> int:
    """
    Token cost of one run of a feature.

    Raises:
        KeyError: feature has no cost entry
    """
    cost = TOKEN_COSTS[feature]
    total = cost.get("base", 0)

    if languages and cost.get("per_language"):
        total += max(0, languages - 1) * cost["per_language"]

    if product_count and cost.get("per_product"):
        total += product_count * cost["per_product"]

    return total


def estimate_with_margin(tokens: int) -> int:
    """Reservation size for an estimated cost (cost plus the safety margin, rounded up)."""
    return math.ceil(Decimal(tokens) * (1 + TOKEN_SAFETY_MARGIN))
