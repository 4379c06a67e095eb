from __future__ import annotations

import uuid
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, create_engine, update
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


settings = get_settings()

engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def rollback_on_error(session: Session) -> Iterator[Session]:
    """Undo every pending write of the unit of work when any step raises."""
    try:
        yield session
    except Exception:
        session.rollback()
        raise


def versioned_update(
    session: Session,
    model: type[Any],
    entity_id: uuid.UUID,
    row_version: int,
    changes: dict[str, Any],
) -> None:
    result = session.execute(
        update(model)
        .where(and_(model.id == entity_id, model.row_version == row_version))
        .values(**changes, updated_at=datetime.now(timezone.utc), row_version=model.row_version + 1)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
