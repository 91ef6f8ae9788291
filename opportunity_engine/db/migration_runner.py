"""Automatic migration runner"""
import logging
import os
from typing import Optional
from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

ALEMBIC_INI_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "alembic.ini",
)


def build_alembic_config(database_url: Optional[str] = None) -> Config:
    """Alembic config pointing at the project's alembic.ini"""
    if not os.path.exists(ALEMBIC_INI_PATH):
        raise FileNotFoundError(f"alembic.ini not found at {ALEMBIC_INI_PATH}")

    alembic_cfg = Config(ALEMBIC_INI_PATH)
    if database_url:
        # configparser interpolation
        alembic_cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return alembic_cfg


def run_migrations(database_url: Optional[str] = None) -> None:
    """
    Run Alembic migrations automatically on startup.

    Equivalent to 'alembic upgrade head' against database_url (or the
    configured database when omitted).
    """
    try:
        alembic_cfg = build_alembic_config(database_url)
        logger.info("Running database migrations...")
        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Failed to run database migrations: {e}")
        raise
