"""
Database engine, session factory and Alembic schema management.
"""

from __future__ import annotations

import os
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import memoryweave.config as config

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def create_db_engine(database_url: str) -> Engine:
    """Engine for ``database_url``; sqlite connections enforce foreign keys."""
    is_sqlite = database_url.lower().startswith("sqlite")
    engine_kwargs = {"pool_pre_ping": True}
    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(database_url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def alembic_config(database_url: str) -> Config:
    cfg = Config(os.path.join(PROJECT_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def schema_revisions(engine: Engine, database_url: str) -> tuple[Optional[str], Optional[str]]:
    """(current, head) Alembic revisions for the database behind ``engine``."""
    head = ScriptDirectory.from_config(alembic_config(database_url)).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def migrate(engine: Engine, database_url: str) -> str:
    """Upgrade to head when allowed; returns the revision the schema ends on."""
    current, head = schema_revisions(engine, database_url)
    if current == head:
        return current

    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema out of date (current={current}, expected={head}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    config.logger.info("schema_migration_started", extra={"from_revision": current, "to_revision": head})
    command.upgrade(alembic_config(database_url), "head")
    reached, _ = schema_revisions(engine, database_url)
    if reached != head:
        raise RuntimeError("Database migration did not reach expected revision")
    return reached


def init_db(database_url: Optional[str] = None) -> None:
    """Connect the process-wide session factory and bring the schema to head."""
    if database_url is None:
        config.validate_and_prepare_config()
        database_url = config.DATABASE_URL

    config.logger.info("Connecting to database...", extra={"backend": config.DB_BACKEND_EFFECTIVE})
    DB.engine = create_db_engine(database_url)
    DB.SessionLocal = sessionmaker(bind=DB.engine)

    revision = migrate(DB.engine, database_url)
    config.logger.info("Database initialized", extra={"revision": revision})


def dispose_db() -> None:
    """Release pooled connections."""
    if DB.engine is not None:
        DB.engine.dispose()
    DB.engine = None
    DB.SessionLocal = None
