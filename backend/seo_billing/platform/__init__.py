"""
Platform concerns shared across services: secret encryption and log redaction.
"""
