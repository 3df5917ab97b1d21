"""Upsert helpers keyed by external (natural) keys.

Rows are looked up by their unique external key and updated in place, or
inserted when missing. Surrogate ids are never used as the match key, so
re-running an import converges on the same rows.
"""

import logging
from typing import Any, Iterable, Optional, TypeVar

from sqlmodel import Session, SQLModel, select

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)


def find_by_keys(session: Session, model: type[ModelT], keys: dict[str, Any]) -> Optional[ModelT]:
    """Load the row of ``model`` matching every column in ``keys``."""
    statement = select(model)
    for column, value in keys.items():
        statement = statement.where(getattr(model, column) == value)
    return session.exec(statement).first()


def upsert(
    session: Session,
    model: type[ModelT],
    keys: dict[str, Any],
    values: dict[str, Any],
) -> ModelT:
    """Insert or update one row identified by ``keys``.

    Args:
        session: Open session (caller owns the transaction)
        model: SQLModel table class
        keys: External key columns and their values
        values: Remaining columns to write

    Returns:
        The persisted row (flushed, so its surrogate id is populated)

    Examples:
        >>> club = upsert(session, Club, {"gomafia_id": "42"}, {"name": "Red Square"})
    """
    row = find_by_keys(session, model, keys)

    if row is None:
        row = model(**keys, **values)
        session.add(row)
    else:
        for column, value in values.items():
            setattr(row, column, value)

    session.flush()
    return row


def get_by_gomafia_id(session: Session, model: type[ModelT], gomafia_id: str) -> Optional[ModelT]:
    return find_by_keys(session, model, {"gomafia_id": gomafia_id})


def id_map(session: Session, model: type[ModelT], gomafia_ids: Iterable[str]) -> dict[str, int]:
    """Map external ids to surrogate ids for the rows that exist."""
    wanted = set(gomafia_ids)
    if not wanted:
        return {}
    rows = session.exec(
        select(model.gomafia_id, model.id).where(model.gomafia_id.in_(wanted))
    ).all()
    return {gomafia_id: row_id for gomafia_id, row_id in rows}
