"""Programmatic Alembic entry points for the job store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config pointed at ``db_path`` and the project's ``alembic/`` scripts."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the job store at ``db_path`` to the latest revision."""

    logger.debug("Upgrading job store %s to head", db_path)
    command.upgrade(alembic_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, None for an unmigrated file."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
