"""Tag assignment shared by epics, prompts, documents and records.

Tags are rows of their own; each taggable entity kind has a junction table.
A tag is scoped to a project, or global when project_id is null. Lookups for
a project match both its own tags and global ones, so the same name is never
created twice in one scope.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import Table, delete, insert, or_, select
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .errors import ValidationError
from .versioning import utc_now_iso


logger = logging.getLogger("devchain-core.tags")


@dataclass(frozen=True)
class TagLink:
    """Junction table of one taggable entity kind."""

    table: Table
    owner_key: str

    @property
    def owner_column(self):
        return self.table.c[self.owner_key]


EPIC_TAGS = TagLink(models.epic_tags, "epic_id")
PROMPT_TAGS = TagLink(models.prompt_tags, "prompt_id")
DOCUMENT_TAGS = TagLink(models.document_tags, "document_id")
RECORD_TAGS = TagLink(models.record_tags, "record_id")


def normalize_tag_names(names: Optional[Iterable[str]]) -> list[str]:
    """Trim names, drop empty ones and exact duplicates, keeping first-seen order."""
    result: list[str] = []
    seen: set[str] = set()
    for name in names or []:
        cleaned = name.strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def find_or_create_tag(db: Session, project_id: Optional[str], name: str) -> models.Tag:
    """Return the tag named ``name`` visible from ``project_id``, creating it if missing.

    Project tags win over global tags of the same name. New tags take the
    caller's scope. Flushes but does not commit.
    """
    query = db.query(models.Tag).filter(models.Tag.name == name)
    if project_id is None:
        query = query.filter(models.Tag.project_id.is_(None))
    else:
        query = query.filter(
            or_(models.Tag.project_id == project_id, models.Tag.project_id.is_(None))
        ).order_by(models.Tag.project_id.is_(None), models.Tag.created_at)

    tag = query.first()
    if tag is not None:
        return tag

    now = utc_now_iso()
    tag = models.Tag(project_id=project_id, name=name, created_at=now, updated_at=now)
    db.add(tag)
    db.flush()
    logger.debug(f"Created tag '{name}' in scope {project_id or 'global'}")
    return tag


def resolve_tag_ids(db: Session, project_id: Optional[str], names: Optional[Iterable[str]]) -> list[str]:
    return [find_or_create_tag(db, project_id, name).id for name in normalize_tag_names(names)]


def replace_tags(
    db: Session,
    link: TagLink,
    entity_id: str,
    project_id: Optional[str],
    names: Optional[Iterable[str]],
) -> list[str]:
    """Make the entity's tag set exactly ``names``.

    Deletes every junction row of the entity, then inserts one per resolved
    tag. Flushes only; the caller commits together with the entity write.

    Returns:
        Normalized tag names, in request order
    """
    normalized = normalize_tag_names(names)
    db.execute(delete(link.table).where(link.owner_column == entity_id))

    tag_ids = resolve_tag_ids(db, project_id, normalized)
    if tag_ids:
        now = utc_now_iso()
        db.execute(
            insert(link.table),
            [{link.owner_key: entity_id, "tag_id": tag_id, "created_at": now} for tag_id in tag_ids],
        )
    return normalized


def load_tag_names(
    db: Session,
    link: TagLink,
    entity_ids: list[str],
    chunk_size: Optional[int] = None,
) -> dict[str, list[str]]:
    """Batch-load tag names for many entities.

    Issues one query per ``chunk_size`` ids (default from settings) instead
    of one per entity. Every requested id gets an entry, possibly empty.
    Names come back sorted.
    """
    if chunk_size is None:
        chunk_size = get_settings().tag_batch_chunk_size
    if chunk_size < 1:
        raise ValidationError("chunk_size must be positive.", chunk_size=chunk_size)
    result: dict[str, list[str]] = {entity_id: [] for entity_id in entity_ids}
    unique_ids = list(result)

    for start in range(0, len(unique_ids), chunk_size):
        chunk = unique_ids[start:start + chunk_size]
        rows = db.execute(
            select(link.owner_column, models.Tag.name)
            .join(models.Tag, models.Tag.id == link.table.c.tag_id)
            .where(link.owner_column.in_(chunk))
            .order_by(models.Tag.name)
        ).all()
        for owner_id, name in rows:
            result[owner_id].append(name)

    return result


def tag_names_for(db: Session, link: TagLink, entity_id: str) -> list[str]:
    return load_tag_names(db, link, [entity_id])[entity_id]
