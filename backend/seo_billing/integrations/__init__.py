"""
Clients for external services (Shopify Admin API, OpenRouter).
"""
