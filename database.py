from pathlib import Path
import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from config import settings

logger = logging.getLogger(__name__)

# Row-level security for PostgreSQL deployments. The tenant is read from the
# transaction-local setting issued by tenancy.context.tenant_scope.
_TENANT_TABLES = ("entities", "relations", "observations")
_RLS_STATEMENTS = [
    stmt
    for table in _TENANT_TABLES
    for stmt in (
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}",
        f"CREATE POLICY {table}_tenant_isolation ON {table} "
        f"USING (tenant_id = current_setting('app.current_tenant_id', true)) "
        f"WITH CHECK (tenant_id = current_setting('app.current_tenant_id', true))",
    )
]


def build_engine(url: str) -> Engine:
    """Create an engine with the pool settings and SQLite pragmas used everywhere."""
    is_sqlite = url.startswith("sqlite")

    if is_sqlite:
        db_path = url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,
        )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # pysqlite's own BEGIN handling breaks SAVEPOINT; SQLAlchemy emits BEGIN below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

        @event.listens_for(engine, "begin")
        def do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


engine = build_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(bind: Engine = None):
    """Create all database tables (and RLS policies on PostgreSQL)"""
    from models import Base  # Import here to avoid circular dependency

    bind = bind or engine
    try:
        Base.metadata.create_all(bind=bind)
    except OperationalError as exc:
        # Concurrent creation attempts when tables already exist (multi-worker startup)
        if "already exists" in str(exc).lower():
            logger.info(f"Ignoring table creation race condition: {exc}")
        else:
            raise

    if bind.dialect.name == "postgresql":
        with bind.begin() as conn:
            for stmt in _RLS_STATEMENTS:
                conn.execute(text(stmt))
        logger.info(f"Row-level security enabled on {', '.join(_TENANT_TABLES)}")

