"""
Billing business logic services.

Import concrete services from their modules (seo_billing.services.billing_service,
seo_billing.services.token_ledger, ...).
"""
