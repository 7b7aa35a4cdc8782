"""
Configuration loaders: plan catalog and token pricing.
"""

from seo_billing.config.billing_plans import (
    TRIAL_DAYS,
    PlanCatalog,
    PlanDefinition,
    get_plan_catalog,
    reset_plan_catalog,
)

__all__ = [
    "TRIAL_DAYS",
    "PlanCatalog",
    "PlanDefinition",
    "get_plan_catalog",
    "reset_plan_catalog",
]
