from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects import postgresql, sqlite
from contextlib import contextmanager
from typing import Generator, Dict, Any, Iterator
import redis
from .config import settings

def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # PostgreSQL connection pool settings
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
    }

engine = create_engine(
    settings.get_database_url,
    **_engine_options(settings.get_database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Redis client; connects lazily on first command
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Redis dependency
def get_redis():
    """Get Redis client."""
    return redis_client

def upsert_increment(db: Session, model, keys: Dict[str, Any], column: str) -> int:
    """Atomically increment ``column`` on the row identified by ``keys``.

    The row is created with value 1 when missing. The statement is a single
    ``INSERT .. ON CONFLICT DO UPDATE .. RETURNING`` so concurrent callers
    never observe the same value, and the row stays locked until the
    surrounding transaction ends.
    """
    dialect = db.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise RuntimeError(f"Atomic counters are not supported on {dialect}")
    
    counter = getattr(model, column)
    stmt = insert(model).values(**keys, **{column: 1})
    stmt = stmt.on_conflict_do_update(
        index_elements=list(keys),
        set_={column: counter + 1},
    ).returning(counter)
    return db.execute(stmt).scalar_one()

# Database initialization
def init_db():
    """Initialize database tables."""
    from .. import models  # noqa: F401  register mappers
    Base.metadata.create_all(bind=engine)

@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit the enclosed work, or roll all of it back on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
