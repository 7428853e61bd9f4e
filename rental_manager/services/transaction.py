from __future__ import annotations

import functools
import logging
import os
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rental_manager.models.rental_models import Item

from .errors import ConcurrencyConflict


CONFLICT_RETRY_ATTEMPTS = max(1, int(os.environ.get("RENTAL_CONFLICT_RETRY_ATTEMPTS") or "3"))
# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}
LOGGER = logging.getLogger("rental_manager.transactions")


def _is_commit_race(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


def atomic_operation(func):
    """Run ``func(db, ...)`` as one unit of work.

    The session is committed when ``func`` returns and rolled back on any
    error, so nothing is ever partially applied. Lost commit races are
    re-run from scratch up to ``CONFLICT_RETRY_ATTEMPTS`` times before
    ``ConcurrencyConflict`` reaches the caller.
    """

    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        last_conflict: ConcurrencyConflict | None = None
        for attempt in range(1, CONFLICT_RETRY_ATTEMPTS + 1):
            try:
                result = func(db, *args, **kwargs)
                db.commit()
                return result
            except ConcurrencyConflict as exc:
                db.rollback()
                last_conflict = exc
            except StaleDataError as exc:
                db.rollback()
                last_conflict = ConcurrencyConflict(f"Concurrent update detected: {exc}")
            except DBAPIError as exc:
                db.rollback()
                if not _is_commit_race(exc):
                    raise
                last_conflict = ConcurrencyConflict(f"Commit race lost: {exc.orig}")
            except Exception:
                db.rollback()
                raise
            LOGGER.warning(
                "Commit conflict op=%s attempt=%s/%s detail=%s",
                func.__name__,
                attempt,
                CONFLICT_RETRY_ATTEMPTS,
                last_conflict,
            )
        raise last_conflict

    return wrapper


def lock_items(db: Session, item_ids: Iterable[int]) -> list[int]:
    """Lock item rows in ascending id order and bump their revision.

    ``FOR UPDATE`` serializes writers on backends that support row locks;
    the compare-and-set on ``Revision`` makes a concurrent writer that got
    there first surface as ``ConcurrencyConflict`` everywhere else.
    """
    ordered_ids = sorted({int(item_id) for item_id in item_ids})
    if not ordered_ids:
        return []

    rows = db.execute(
        select(Item.ItemID, Item.Revision)
        .where(Item.ItemID.in_(ordered_ids))
        .order_by(Item.ItemID)
        .with_for_update()
    ).all()
    now = datetime.now()
    for item_id, revision in rows:
        current = int(revision or 0)
        result = db.execute(
            update(Item)
            .where(Item.ItemID == item_id)
            .where(Item.Revision == revision)
            .values(Revision=current + 1, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(f"Item {item_id} changed while acquiring lock.")
    return ordered_ids
