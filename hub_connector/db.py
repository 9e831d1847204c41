from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
import os

from hub_connector.core.config import settings
from hub_connector.core.logging_config import get_logger

logger = get_logger(__name__)


def resolve_database_url() -> str:
    """DATABASE_URL, else PG* variables, else a local SQLite file."""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    host = os.getenv("PGHOST")
    if host:
        db = os.getenv("PGDATABASE")
        user = os.getenv("PGUSER")
        password = os.getenv("PGPASSWORD")
        ssl_mode = os.getenv("PGSSLMODE", "prefer")
        return f"postgresql://{user}:{password}@{host}/{db}?sslmode={ssl_mode}"

    return "sqlite:///./hub_connector.db"


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)

    return create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )


DATABASE_URL = resolve_database_url()
engine = build_engine(DATABASE_URL)


@event.listens_for(Engine, "connect")
def set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time on PostgreSQL connections (30 seconds)."""
    if not type(dbapi_connection).__module__.startswith("psycopg"):
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning("Could not set statement timeout", error=str(e))
    finally:
        cursor.close()


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(bind: Engine = None):
    import hub_connector.models  # noqa: F401  registers tables on the metadata

    SQLModel.metadata.create_all(bind or engine)
