#  Generation Broker - Migration Runner
#
#  Programmatic Alembic runner for applying migrations at startup.
#
#  Depends on: broker/migrations/
#  Used by:    broker/db/connection.py

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

logger = logging.getLogger("broker.migrate")

_MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"


def run_migrations(db_path: str | Path) -> None:
    """Apply pending Alembic migrations to the database.

    Handles two cases:
    1. Fresh database: runs all migrations from scratch.
    2. Already-migrated database: runs only pending migrations.
    """
    db_path = Path(db_path)
    url = f"sqlite:///{db_path}"

    alembic_cfg = Config(str(_MIGRATIONS_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", url)
    alembic_cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))

    engine = create_engine(url)
    try:
        with engine.connect():
            tables = inspect(engine).get_table_names()
            if "alembic_version" not in tables:
                logger.info("Fresh database, running all migrations")

        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations complete (head)")
    finally:
        engine.dispose()
