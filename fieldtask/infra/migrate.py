from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from fieldtask.infra.db import DATABASE_URL

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "infra" / "migrations"


def build_config(database_url: str | None = None) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", database_url or DATABASE_URL)
    return config


def run_upgrade_head(database_url: str | None = None) -> None:
    command.upgrade(build_config(database_url), "head")


def run_downgrade_base(database_url: str | None = None) -> None:
    command.downgrade(build_config(database_url), "base")


if __name__ == "__main__":
    run_upgrade_head()
