from __future__ import annotations

import os
from collections.abc import Generator
from typing import Any

from sqlalchemy import text, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://fieldtask:fieldtask@db:5432/fieldtask",
)
DB_POOL_TIMEOUT_S = float(os.getenv("DB_POOL_TIMEOUT_S", "10"))
OCC_MAX_RETRIES = int(os.getenv("OCC_MAX_RETRIES", "3"))

engine = create_engine(DATABASE_URL, pool_pre_ping=True, pool_timeout=DB_POOL_TIMEOUT_S)


def get_engine() -> Engine:
    return engine


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def compare_and_swap(
    session: Session,
    model: Any,
    row_id: str,
    expected_version: int,
    values: dict[str, Any],
) -> bool:
    """Write ``values`` only if the row still carries ``expected_version``; bumps the version."""
    statement = (
        update(model)
        .where(model.id == row_id)
        .where(model.version == expected_version)
        .values(**values, version=expected_version + 1)
    )
    result = session.execute(statement)
    return result.rowcount == 1
