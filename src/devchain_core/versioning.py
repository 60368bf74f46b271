"""Optimistic concurrency for versioned entities (epics, prompts, records, documents, reviews, review comments).

Every versioned row carries an integer ``version`` starting at 1. An update is
accepted only when the caller's expected version equals the stored one; the
write then sets version = expected + 1 and moves ``updated_at`` forward.
A stale expected version raises OptimisticLockError and writes nothing, so
callers re-fetch and retry.

Timestamps are ISO-8601 UTC strings, which sort the same lexically and
chronologically.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import NotFoundError, OptimisticLockError


logger = logging.getLogger("devchain-core.versioning")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def next_timestamp(previous: Optional[str]) -> str:
    """Return the current time, nudged forward so it sorts after ``previous``.

    Two writes inside the same clock tick would otherwise share an
    updated_at value.
    """
    now = datetime.now(timezone.utc)
    if previous:
        floor = parse_timestamp(previous) + timedelta(microseconds=1)
        if now < floor:
            now = floor
    return now.strftime(TIMESTAMP_FORMAT)


def apply_versioned_update(
    db: Session,
    model,
    entity: str,
    entity_id: str,
    values: dict[str, Any],
    expected_version: int,
):
    """Check the version and write ``values`` with the version bump.

    The write is issued even when ``values`` is empty, so every accepted call
    moves the version forward. The caller commits.

    Args:
        db: Database session
        model: Versioned ORM class (must have id, version, updated_at)
        entity: Entity name used in error messages
        entity_id: Row id
        values: Column values to set
        expected_version: Version the caller last read

    Returns:
        The ORM instance, synchronized with the written values

    Raises:
        NotFoundError: If the row does not exist
        OptimisticLockError: If the stored version differs from expected_version
    """
    current = db.get(model, entity_id, populate_existing=True)
    if current is None:
        raise NotFoundError(entity, entity_id)

    if current.version != expected_version:
        logger.info(
            f"Rejected {entity} {entity_id} update: expected version {expected_version}, "
            f"found {current.version}"
        )
        raise OptimisticLockError(entity, entity_id, expected_version, current.version)

    stmt = (
        update(model)
        .where(model.id == entity_id, model.version == expected_version)
        .values(
            **values,
            version=expected_version + 1,
            updated_at=next_timestamp(current.updated_at),
        )
    )
    result = db.execute(stmt)

    # Another writer committed between the read and the write
    if result.rowcount != 1:
        db.rollback()
        actual = db.scalar(select(model.version).where(model.id == entity_id))
        if actual is None:
            raise NotFoundError(entity, entity_id)
        raise OptimisticLockError(entity, entity_id, expected_version, actual)

    logger.debug(f"{entity} {entity_id} version {expected_version} -> {expected_version + 1}")
    return current
