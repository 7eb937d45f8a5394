"""
Engine and session setup, plus the Alembic revision gate run at startup.
"""

from __future__ import annotations

import os

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

import core.config as config


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def is_sqlite(db) -> bool:
    return db.get_bind().dialect.name == "sqlite"


def _alembic_config():
    from alembic.config import Config

    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    alembic_cfg = Config(os.path.join(base_dir, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(base_dir, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return alembic_cfg


def schema_status(engine) -> dict:
    """Current and expected Alembic revision for ``engine``."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    expected = ScriptDirectory.from_config(_alembic_config()).get_current_head()
    with engine.connect() as conn:
        revision = MigrationContext.configure(conn).get_current_revision()
    return {
        "revision": revision,
        "expected": expected,
        "up_to_date": expected is None or revision == expected,
    }


def _migrate(engine) -> None:
    from alembic import command

    status = schema_status(engine)
    if status["up_to_date"]:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"ReadGraph schema is at {status['revision']}, expected {status['expected']}. "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    config.logger.info(
        "Upgrading schema %s -> %s", status["revision"], status["expected"]
    )
    command.upgrade(_alembic_config(), "head")
    if not schema_status(engine)["up_to_date"]:
        raise RuntimeError("Database migration did not reach expected revision")


def _create_vector_extension(engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()


def init_db() -> None:
    """Connect, make sure pgvector is available when used, and migrate to head."""
    config.validate_and_prepare_config()

    engine_kwargs = {"pool_pre_ping": True}
    if config.DB_BACKEND == "sqlite":
        # the worker and sweep loops share the engine across threads
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    DB.engine = create_engine(config.DATABASE_URL, **engine_kwargs)
    DB.SessionLocal = sessionmaker(bind=DB.engine)
    config.logger.info("Connected to %s database", config.DB_BACKEND)

    if (
        config.AUTO_CREATE_EXTENSIONS
        and config.DB_BACKEND == "postgres"
        and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    ):
        _create_vector_extension(DB.engine)

    _migrate(DB.engine)
    config.logger.info("Database ready")
