"""
Transaction helpers for database operations.

``transaction_scope`` owns a unit of work; ``savepoint_scope`` isolates one
entity's writes inside a larger run so a single bad row is rolled back on its
own and the run continues.
"""

from contextlib import contextmanager

from sqlalchemy.orm import Session

from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)


@contextmanager
def transaction_scope(db: Session, auto_commit: bool = True):
    """
    Context manager for database transactions with automatic rollback.

    Usage:
        with transaction_scope(db):
            db.add(listing)

    Does NOT close the session; the caller that opened it does.
    """
    try:
        yield db
        if auto_commit:
            db.commit()
            logger.debug("Transaction committed successfully")
    except Exception as e:
        db.rollback()
        logger.error(f"Transaction rolled back due to error: {e}")
        raise


@contextmanager
def savepoint_scope(db: Session):
    """
    Run a block inside a SAVEPOINT.

    On error only the block's changes are discarded and the exception is
    re-raised for the caller to record.
    """
    nested = db.begin_nested()
    try:
        yield db
        nested.commit()
    except Exception:
        if nested.is_active:
            nested.rollback()
        raise
