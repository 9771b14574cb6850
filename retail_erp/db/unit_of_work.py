from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

LOCK_REGISTRY_KEY = "locked_inventory_rows"


def locked_inventory_keys(db: Session) -> set[tuple[str, str]]:
    """(product_id, warehouse_id) pairs whose ledger row is locked by the current transaction."""
    return db.info.setdefault(LOCK_REGISTRY_KEY, set())


@event.listens_for(Session, "after_transaction_end")
def _reset_lock_registry(db: Session, transaction: SessionTransaction) -> None:
    # Row locks are released with the outermost transaction.
    if transaction.parent is None:
        db.info.pop(LOCK_REGISTRY_KEY, None)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit on success, roll everything back on any failure."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
