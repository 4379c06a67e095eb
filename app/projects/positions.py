from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session


def next_position(session: Session, model: type[Any], container_column: str, container_id: uuid.UUID) -> int:
    column = getattr(model, container_column)
    return int(session.scalar(select(func.count()).select_from(model).where(column == container_id)) or 0)


def compact_after_removal(
    session: Session,
    model: type[Any],
    container_column: str,
    container_id: uuid.UUID,
    removed_position: int,
) -> int:
    """Close the gap left at ``removed_position`` so siblings stay 0..N-1."""
    column = getattr(model, container_column)
    siblings = session.scalars(
        select(model)
        .where(column == container_id, model.position > removed_position)
        .order_by(model.position.asc())
    ).all()
    for sibling in siblings:
        sibling.position = sibling.position - 1
    session.flush()
    return len(siblings)


def rewrite_positions(
    session: Session,
    model: type[Any],
    container_column: str,
    container_id: uuid.UUID,
    ordered_ids: list[uuid.UUID],
) -> None:
    """Assign list index as position and move every listed row into the container."""
    for index, item_id in enumerate(ordered_ids):
        session.execute(
            update(model)
            .where(model.id == item_id)
            .values(**{container_column: container_id, "position": index})
            .execution_options(synchronize_session="fetch")
        )
    session.flush()
