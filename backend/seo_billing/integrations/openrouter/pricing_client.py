"""
OpenRouter pricing client.

Fetches the per-token price of the content-generation model from the
OpenRouter model list and turns it into a USD rate per 1M tokens, used
to convert token purchases into token counts.

Documentation: https://openrouter.ai/docs

SECURITY:
- API key must be stored securely and never logged
"""

import logging
import os
import time
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, List, Optional

import httpx

from seo_billing.config.token_pricing import FALLBACK_RATE_PER_1M

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0

PRICING_MODEL_ID = "google/gemini-2.5-flash-lite"
PRICING_CACHE_SECONDS = 60 * 60

# Most generated content is prompt-heavy (titles, descriptions)
INPUT_WEIGHT = Decimal("0.8")
OUTPUT_WEIGHT = Decimal("0.2")

# Per-token defaults when the model entry omits a price
DEFAULT_INPUT_PRICE_PER_TOKEN = Decimal("0.000000075")
DEFAULT_OUTPUT_PRICE_PER_TOKEN = Decimal("0.0000003")


class OpenRouterError(Exception):
    """Base exception for OpenRouter API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class ModelPricing:
    """Per-token prices for one model."""
    id: str
    prompt: Decimal
    completion: Decimal

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelPricing":
        pricing = data.get("pricing") or {}
        prompt = pricing.get("prompt") or pricing.get("input")
        completion = pricing.get("completion") or pricing.get("output")
        return cls(
            id=data.get("id", ""),
            prompt=Decimal(str(prompt)) if prompt else DEFAULT_INPUT_PRICE_PER_TOKEN,
            completion=Decimal(str(completion)) if completion else DEFAULT_OUTPUT_PRICE_PER_TOKEN,
        )

    @property
    def weighted_rate_per_1m(self) -> Decimal:
        """USD per 1M tokens, weighted 80% input / 20% output."""
        return (self.prompt * INPUT_WEIGHT + self.completion * OUTPUT_WEIGHT) * Decimal(1_000_000)


class OpenRouterPricingClient:
    """
    Async client for the OpenRouter model list.

    SECURITY: API key must be stored securely and never logged.
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("OpenRouter API key is required")

        self.base_url = (
            base_url or os.getenv("OPENROUTER_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
                "HTTP-Referer": os.getenv("OPENROUTER_SITE_URL") or os.getenv("APP_URL", ""),
                "X-Title": os.getenv("OPENROUTER_APP_NAME", "SEO AI"),
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OpenRouterPricingClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def list_model_pricing(self) -> List[ModelPricing]:
        """
        List models with their per-token prices.

        Raises:
            OpenRouterError: on transport failure, timeout or non-2xx status
        """
        url = f"{self.base_url}/models"
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            logger.error("OpenRouter API timeout", extra={"endpoint": "/models", "error": str(e)})
            raise OpenRouterError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("OpenRouter API connection error", extra={"endpoint": "/models", "error": str(e)})
            raise OpenRouterError(f"Connection error: {e}")

        if response.status_code >= 400:
            logger.error("OpenRouter API error", extra={
                "endpoint": "/models",
                "status_code": response.status_code,
            })
            raise OpenRouterError(
                f"OpenRouter API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise OpenRouterError("Invalid JSON in OpenRouter response", status_code=response.status_code)

        return [ModelPricing.from_dict(model) for model in data.get("data") or []]


class TokenRateProvider:
    """
    Cached USD-per-1M-token rate for token purchases.

    Never raises: any lookup failure yields the fallback rate.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_id: str = PRICING_MODEL_ID,
        cache_seconds: int = PRICING_CACHE_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key if api_key is not None else os.getenv("OPENROUTER_API_KEY")
        self._model_id = model_id
        self._cache_seconds = cache_seconds
        self._transport = transport
        self._rate: Optional[Decimal] = None
        self._fetched_at: Optional[float] = None
        self._lock = Lock()

    def _cached(self) -> Optional[Decimal]:
        with self._lock:
            if self._rate is None or self._fetched_at is None:
                return None
            if time.monotonic() - self._fetched_at >= self._cache_seconds:
                return None
            return self._rate

    async def get_rate_per_1m(self) -> Decimal:
        cached = self._cached()
        if cached is not None:
            return cached

        if not self._api_key:
            logger.warning("OPENROUTER_API_KEY not set, using fallback token rate")
            return FALLBACK_RATE_PER_1M

        try:
            async with OpenRouterPricingClient(self._api_key, transport=self._transport) as client:
                models = await client.list_model_pricing()
        except OpenRouterError as e:
            logger.warning("Failed to fetch OpenRouter pricing, using fallback rate", extra={
                "error": e.message,
            })
            return FALLBACK_RATE_PER_1M

        model = next((m for m in models if m.id == self._model_id), None)
        if model is None:
            logger.warning("Model pricing not found, using fallback rate", extra={"model": self._model_id})
            return FALLBACK_RATE_PER_1M

        rate = model.weighted_rate_per_1m
        if rate <= 0:
            return FALLBACK_RATE_PER_1M

        with self._lock:
            self._rate = rate
            self._fetched_at = time.monotonic()

        logger.info("Token rate refreshed from OpenRouter", extra={
            "model": self._model_id,
            "rate_per_1m": str(rate),
        })
        return rate

    def clear(self) -> None:
        with self._lock:
            self._rate = None
            self._fetched_at = None


_rate_provider: Optional[TokenRateProvider] = None


def get_token_rate_provider() -> TokenRateProvider:
    """Return the process-wide TokenRateProvider."""
    global _rate_provider
    if _rate_provider is None:
        _rate_provider = TokenRateProvider()
    return _rate_provider


def reset_token_rate_provider() -> None:
    """Reset singleton (for tests only)."""
    global _rate_provider
    _rate_provider = None
