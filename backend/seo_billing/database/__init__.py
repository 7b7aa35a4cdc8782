"""
Database engine and session management.
"""

from seo_billing.database.session import get_db_session, get_engine, get_session_factory

__all__ = ["get_db_session", "get_engine", "get_session_factory"]
