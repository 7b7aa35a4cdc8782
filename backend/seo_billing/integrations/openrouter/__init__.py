"""
OpenRouter model pricing lookup used to price token purchases.
"""

from seo_billing.integrations.openrouter.pricing_client import (
    OpenRouterError,
    OpenRouterPricingClient,
    ModelPricing,
    TokenRateProvider,
    get_token_rate_provider,
)

__all__ = [
    "OpenRouterError",
    "OpenRouterPricingClient",
    "ModelPricing",
    "TokenRateProvider",
    "get_token_rate_provider",
]
