"""
AI SEO billing backend.

Subscription state machine, token ledger and Shopify billing reconciliation
for the embedded SEO content app.
"""
