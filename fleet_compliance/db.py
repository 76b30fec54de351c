from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from .models import Base
from .config import DATABASE_URL, DB_TIMEOUT_SECONDS


def build_engine(url: str, timeout_seconds: float = DB_TIMEOUT_SECONDS):
    """Create an engine whose driver connections give up after ``timeout_seconds``."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            future=True,
            connect_args={"timeout": timeout_seconds, "check_same_thread": False},
        )

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args["connect_timeout"] = int(timeout_seconds)
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_timeout=timeout_seconds,
        connect_args=connect_args,
    )


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def init_db():
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
