from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from functools import lru_cache
import logging
from dmarc_store.config import get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(database_url: str, echo: bool = False):
    """Create an engine for the given URL with pool options suited to its backend"""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )


@lru_cache()
def get_engine():
    """Engine for the configured database, created on first use"""
    settings = get_settings()
    return make_engine(settings.database_url, echo=settings.database_echo)


@lru_cache()
def get_session_factory():
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db():
    """Yield a database session and close it afterwards"""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def init_db(engine=None):
    """Initialize database tables"""
    # Models must be registered on the metadata before create_all
    import dmarc_store.models  # noqa: F401
    Base.metadata.create_all(bind=engine or get_engine())


def check_db_connection(engine=None) -> bool:
    """Check if database connection is working"""
    try:
        with (engine or get_engine()).connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False
