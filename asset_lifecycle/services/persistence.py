from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from services.asset_errors import PersistenceError


def commit_or_raise(db: Session, action: str, logger: logging.Logger) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Commit failed during %s", action)
        raise PersistenceError(f"Could not persist {action}.") from exc
