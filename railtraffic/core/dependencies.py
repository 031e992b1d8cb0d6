"""
FastAPI dependency injection utilities.
"""
from typing import Generator, Optional
from sqlalchemy.orm import Session

from railtraffic.core.config import settings
from railtraffic.db.session import SessionLocal
from railtraffic.services.engine import RailTrafficEngine

_engine: Optional[RailTrafficEngine] = None


def get_db() -> Generator[Session, None, None]:
    """
    Create database session dependency for FastAPI routes.

    Yields:
        Database session that automatically closes after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_engine() -> RailTrafficEngine:
    """
    Process-wide engine instance, created on first use.

    Returns:
        The shared RailTrafficEngine
    """
    global _engine
    if _engine is None:
        _engine = RailTrafficEngine(settings)
    return _engine
