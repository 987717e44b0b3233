"""Run the dispatcher's Alembic migrations against a SQLite file."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create the database directory if needed and migrate the job schema to head."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Migrating job store at %s", db_path)
    command.upgrade(migration_config(db_path), "head")
