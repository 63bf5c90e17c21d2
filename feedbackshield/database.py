from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from feedbackshield.config import settings


def _connect_args(url: str) -> dict:
    # SQLite connections are shared across the worker pool threads
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(settings.database_url, connect_args=_connect_args(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(ts: datetime) -> datetime:
    """Aware timestamps are converted to UTC; naive ones are taken as-is."""
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def init_db(bind=None) -> None:
    """Create all tables on the given engine (defaults to the configured one)."""
    # Import models so they register on Base.metadata
    from feedbackshield.models import (  # noqa: F401
        behavioral_pattern,
        context_analysis,
        fraud_score,
        red_flag_keyword,
    )

    Base.metadata.create_all(bind=bind or engine)
