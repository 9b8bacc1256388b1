# Database module
from .engine import get_engine, get_session, session_scope, init_db, SessionLocal
from .tables import metadata, utcnow

__all__ = ["get_engine", "get_session", "session_scope", "init_db", "SessionLocal", "metadata", "utcnow"]
