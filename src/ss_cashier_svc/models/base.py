import datetime
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ss_cashier_svc.config import get_settings

Base = declarative_base()

engine = create_engine(get_settings().database_url, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def utcnow() -> datetime.datetime:
    # Columns hold naive UTC values; SQLite drops tzinfo on the way back.
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def from_timestamp(value: Optional[int]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    return datetime.datetime.fromtimestamp(int(value), datetime.timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime.datetime) -> int:
    return int(value.replace(tzinfo=datetime.timezone.utc).timestamp())
