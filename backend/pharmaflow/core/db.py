# backend/pharmaflow/core/db.py
import uuid

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.engine import make_url

from .config import get_settings

DSN = get_settings().DATABASE_URL

url = make_url(DSN)
engine_kwargs = dict(pool_pre_ping=True)

# Dialect-specific engine options
backend = url.get_backend_name()  # e.g. 'sqlite', 'postgresql'
if backend.startswith("sqlite"):
    # No thread check and no pool sizing on SQLite
    engine_kwargs["connect_args"] = {"check_same_thread": False}
elif backend.startswith("postgresql"):
    engine_kwargs.update(pool_size=5, max_overflow=10)

engine = create_engine(DSN, **engine_kwargs)

if backend.startswith("sqlite"):
    # pysqlite opens transactions lazily, which breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine, "connect")
    def _sqlite_autocommit_driver(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def dialect_name(db) -> str:
    try:
        return db.bind.dialect.name
    except AttributeError:
        return "unknown"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
