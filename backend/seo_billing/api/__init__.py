"""
Billing HTTP API: schemas, dependencies and routers.
"""
