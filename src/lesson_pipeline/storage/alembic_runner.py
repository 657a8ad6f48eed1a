"""Run the job store's Alembic migrations programmatically."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

DEFAULT_ALEMBIC_INI = Path(__file__).resolve().parents[3] / "alembic.ini"


def alembic_config(db_path: Path, *, alembic_ini: Path | None = None) -> Config:
    """Alembic config for ``db_path``; scripts live in ``alembic/`` beside the ini."""

    ini_path = alembic_ini or DEFAULT_ALEMBIC_INI
    if not ini_path.is_file():
        raise FileNotFoundError(f"Alembic config not found: {ini_path}")
    config = Config(str(ini_path))
    config.set_main_option("script_location", str(ini_path.parent / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path, *, alembic_ini: Path | None = None) -> None:
    """Apply migrations up to head for the given SQLite database."""

    logger.info("Migrating %s to head", db_path)
    command.upgrade(alembic_config(db_path, alembic_ini=alembic_ini), "head")


def current_revision(db_path: Path) -> str | None:
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
