"""
Plan catalog loader.

Loads the plan catalog (price, resource limits, included monthly tokens)
from config/billing_plans.yml. When the file is missing the built-in
catalog below is used.

Usage:
    from seo_billing.config.billing_plans import get_plan_catalog

    catalog = get_plan_catalog()
    plan = catalog.get_plan("growth_extra")   # resolves to "growth extra"
    plan.included_tokens                      # 100_000_000
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# Default trial length for a first subscription
TRIAL_DAYS = 5

DEFAULT_CURRENCY = "USD"

_BUILTIN_PLANS: Dict[str, Dict[str, Any]] = {
    "starter": {
        "name": "Starter",
        "price": 9.99,
        "query_limit": 50,
        "product_limit": 70,
        "collection_limit": 0,
        "language_limit": 1,
        "included_tokens": 0,
    },
    "professional": {
        "name": "Professional",
        "price": 19.99,
        "query_limit": 600,
        "product_limit": 70,
        "collection_limit": 20,
        "language_limit": 1,
        "included_tokens": 0,
    },
    "professional plus": {
        "name": "Professional Plus",
        "price": 29.99,
        "query_limit": 600,
        "product_limit": 200,
        "collection_limit": 20,
        "language_limit": 2,
        "included_tokens": 0,
    },
    "growth": {
        "name": "Growth",
        "price": 35.99,
        "query_limit": 1500,
        "product_limit": 450,
        "collection_limit": 40,
        "language_limit": 3,
        "included_tokens": 0,
    },
    "growth plus": {
        "name": "Growth Plus",
        "price": 49.99,
        "query_limit": 1500,
        "product_limit": 450,
        "collection_limit": 40,
        "language_limit": 3,
        "included_tokens": 0,
    },
    "growth extra": {
        "name": "Growth Extra",
        "price": 99.99,
        "query_limit": 4000,
        "product_limit": 750,
        "collection_limit": 999,
        "language_limit": 6,
        "included_tokens": 100_000_000,
    },
    "enterprise": {
        "name": "Enterprise",
        "price": 179.99,
        "query_limit": 10000,
        "product_limit": 1200,
        "collection_limit": 999,
        "language_limit": 10,
        "included_tokens": 300_000_000,
    },
}

# Accepted spellings for multi-word plan keys
_PLAN_ALIASES = {
    "growth_extra": "growth extra",
    "growthextra": "growth extra",
    "professional_plus": "professional plus",
    "professionalplus": "professional plus",
    "growth_plus": "growth plus",
    "growthplus": "growth plus",
}


@dataclass(frozen=True)
class PlanDefinition:
    """A single plan catalog entry."""
    key: str
    name: str
    price: float
    query_limit: int
    product_limit: int
    collection_limit: int
    language_limit: int
    included_tokens: int = 0
    currency: str = DEFAULT_CURRENCY

    @property
    def has_included_tokens(self) -> bool:
        return self.included_tokens > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "price": self.price,
            "currency": self.currency,
            "query_limit": self.query_limit,
            "product_limit": self.product_limit,
            "collection_limit": self.collection_limit,
            "language_limit": self.language_limit,
            "included_tokens": self.included_tokens,
        }


class PlanCatalog:
    """
    Thread-safe singleton loader for config/billing_plans.yml.

    Provides plan lookup by (normalized) key and the trial length.
    """

    _instance: Optional["PlanCatalog"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("BILLING_PLANS_CONFIG")
        self._plans: Dict[str, PlanDefinition] = {}
        self._trial_days: int = TRIAL_DAYS
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "billing_plans.yml",
            Path(os.getcwd()) / "config" / "billing_plans.yml",
            Path(os.getcwd()) / ".." / "config" / "billing_plans.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"billing_plans.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading plan catalog from %s", path)

                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}

                self._trial_days = int(raw.get("trial_days", TRIAL_DAYS))
                self._plans = self._build_plans(raw.get("plans") or _BUILTIN_PLANS)

                logger.info(
                    "Loaded plan catalog: plans=%s, trial_days=%d",
                    list(self._plans.keys()),
                    self._trial_days,
                )
            except FileNotFoundError:
                logger.warning("billing_plans.yml not found, using built-in plan catalog")
                self._trial_days = TRIAL_DAYS
                self._plans = self._build_plans(_BUILTIN_PLANS)

    @staticmethod
    def _build_plans(raw_plans: Dict[str, Dict[str, Any]]) -> Dict[str, PlanDefinition]:
        plans = {}
        for key, cfg in raw_plans.items():
            normalized = str(key).lower().strip()
            plans[normalized] = PlanDefinition(
                key=normalized,
                name=cfg.get("name", normalized.title()),
                price=float(cfg["price"]),
                query_limit=int(cfg.get("query_limit", 0)),
                product_limit=int(cfg.get("product_limit", 0)),
                collection_limit=int(cfg.get("collection_limit", 0)),
                language_limit=int(cfg.get("language_limit", 1)),
                included_tokens=int(cfg.get("included_tokens", 0)),
                currency=cfg.get("currency", DEFAULT_CURRENCY),
            )
        return plans

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def trial_days(self) -> int:
        return self._trial_days

    def resolve_plan_key(self, plan: Optional[str]) -> Optional[str]:
        """
        Normalize a plan key.

        Accepts case and underscore/joined variants
        ("Growth_Extra", "growthextra"). Returns None for unknown plans.
        """
        key = str(plan or "").lower().strip()
        if not key:
            return None
        if key in self._plans:
            return key
        alias = _PLAN_ALIASES.get(key)
        if alias and alias in self._plans:
            return alias
        return None

    def get_plan(self, plan: Optional[str]) -> Optional[PlanDefinition]:
        key = self.resolve_plan_key(plan)
        return self._plans.get(key) if key else None

    def get_included_tokens(self, plan: Optional[str]) -> int:
        definition = self.get_plan(plan)
        return definition.included_tokens if definition else 0

    def list_plans(self) -> List[PlanDefinition]:
        return list(self._plans.values())


def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalog:
    """Return the singleton PlanCatalog."""
    return PlanCatalog(config_path)


def reset_plan_catalog() -> None:
    """Reset singleton (for tests only)."""
    PlanCatalog._instance = None
