"""Skill source registry and per-project enablement.

Sources are identified across the system by their normalized name (trimmed,
lowercased). Every project gets an enablement row per registered source,
seeded as disabled; built-in source names are reserved and never stored.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .config import get_settings
from .errors import ConflictError, NotFoundError, ValidationError
from .versioning import next_timestamp, utc_now_iso

logger = logging.getLogger("devchain-core.skill_sources")


def normalize_source_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def _all_project_ids(db: Session) -> list[str]:
    return [row.id for row in db.query(models.Project.id).all()]


def _registered_source_names(db: Session) -> list[str]:
    community = [row.name for row in db.query(models.CommunitySkillSource.name).all()]
    local = [row.name for row in db.query(models.LocalSkillSource.name).all()]
    return community + local


# ============================================================================
# Community Sources
# ============================================================================

def create_community_source(db: Session, source_in: schemas.CommunitySourceCreate) -> models.CommunitySkillSource:
    """
    Register a GitHub-backed skill source and seed it disabled for every project.

    Raises:
        ValidationError: If the name is reserved by a built-in source
        ConflictError: If the name or the owner/repo pair is already registered
    """
    name = normalize_source_name(source_in.name)
    if name in get_settings().builtin_skill_sources:
        raise ValidationError("Source name is reserved by a built-in skill source.", name=name)

    repo_owner = source_in.repo_owner.strip()
    repo_name = source_in.repo_name.strip()
    duplicate = db.query(models.CommunitySkillSource).filter(
        func.lower(models.CommunitySkillSource.repo_owner) == repo_owner.lower(),
        func.lower(models.CommunitySkillSource.repo_name) == repo_name.lower(),
    ).first()
    if duplicate is not None:
        raise ConflictError(
            "Community source for this repository already exists.",
            repo_owner=repo_owner,
            repo_name=repo_name,
        )
    if db.query(models.LocalSkillSource).filter(models.LocalSkillSource.name == name).first():
        raise ConflictError("A local source with this name already exists.", name=name)

    now = utc_now_iso()
    source = models.CommunitySkillSource(
        name=name,
        repo_owner=repo_owner,
        repo_name=repo_name,
        branch=source_in.branch.strip() or "main",
        created_at=now,
        updated_at=now,
    )
    db.add(source)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Community source name already exists.", name=name) from exc

    for project_id in _all_project_ids(db):
        seed_source_project_disabled(db, project_id, [name], commit=False)

    db.commit()
    db.refresh(source)
    logger.info(f"Created community source {source.id} ({name})")
    return source


def get_community_source(db: Session, source_id: str) -> models.CommunitySkillSource:
    source = db.get(models.CommunitySkillSource, source_id)
    if source is None:
        raise NotFoundError("CommunitySkillSource", source_id)
    return source


def list_community_sources(db: Session) -> list[models.CommunitySkillSource]:
    return db.query(models.CommunitySkillSource).order_by(models.CommunitySkillSource.name).all()


def delete_community_source(db: Session, source_id: str) -> None:
    """Delete a community source and its enablement rows."""
    source = get_community_source(db, source_id)
    delete_source_project_enabled_by_source(db, source.name, commit=False)
    db.delete(source)
    db.commit()
    logger.info(f"Deleted community source {source_id}")


# ============================================================================
# Local Sources
# ============================================================================

def create_local_source(db: Session, source_in: schemas.LocalSourceCreate) -> models.LocalSkillSource:
    """
    Register a folder-backed skill source and seed it disabled for every project.

    Raises:
        ValidationError: If the name is blank or reserved by a built-in source
        ConflictError: If a community source has the same name or the folder is already registered
    """
    name = normalize_source_name(source_in.name)
    if not name:
        raise ValidationError("Local source name is required.")
    if name in get_settings().builtin_skill_sources:
        raise ValidationError("Source name is reserved by a built-in skill source.", name=name)

    if db.query(models.CommunitySkillSource).filter(models.CommunitySkillSource.name == name).first():
        raise ConflictError("A community source with this name already exists.", name=name)

    folder_path = source_in.folder_path.strip()
    if db.query(models.LocalSkillSource).filter(models.LocalSkillSource.folder_path == folder_path).first():
        raise ConflictError("Local source for this folder already exists.", folder_path=folder_path)

    now = utc_now_iso()
    source = models.LocalSkillSource(name=name, folder_path=folder_path, created_at=now, updated_at=now)
    db.add(source)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Local source name already exists.", name=name) from exc

    for project_id in _all_project_ids(db):
        seed_source_project_disabled(db, project_id, [name], commit=False)

    db.commit()
    db.refresh(source)
    logger.info(f"Created local source {source.id} ({name})")
    return source


def get_local_source(db: Session, source_id: str) -> models.LocalSkillSource:
    source = db.get(models.LocalSkillSource, source_id)
    if source is None:
        raise NotFoundError("LocalSkillSource", source_id)
    return source


def list_local_sources(db: Session) -> list[models.LocalSkillSource]:
    return db.query(models.LocalSkillSource).order_by(models.LocalSkillSource.name).all()


def delete_local_source(db: Session, source_id: str) -> None:
    """Delete a local source and its enablement rows."""
    source = get_local_source(db, source_id)
    delete_source_project_enabled_by_source(db, source.name, commit=False)
    db.delete(source)
    db.commit()
    logger.info(f"Deleted local source {source_id}")


# ============================================================================
# Per-project Enablement
# ============================================================================

def get_source_project_enabled(
    db: Session, project_id: str, source_name: str
) -> Optional[models.SourceProjectEnabled]:
    return db.query(models.SourceProjectEnabled).filter(
        models.SourceProjectEnabled.project_id == project_id,
        models.SourceProjectEnabled.source_name == normalize_source_name(source_name),
    ).first()


def set_source_project_enabled(
    db: Session, project_id: str, source_name: str, enabled: bool
) -> models.SourceProjectEnabled:
    """Insert or update the enablement row for (project, source)."""
    name = normalize_source_name(source_name)
    if not project_id or not project_id.strip():
        raise ValidationError("project_id is required.")
    if not name:
        raise ValidationError("source_name is required.")

    row = get_source_project_enabled(db, project_id, name)
    if row is None:
        now = utc_now_iso()
        row = models.SourceProjectEnabled(
            project_id=project_id,
            source_name=name,
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
    else:
        row.enabled = enabled
        row.updated_at = next_timestamp(row.updated_at)

    db.commit()
    db.refresh(row)
    logger.debug(f"Source {name} enabled={enabled} for project {project_id}")
    return row


def list_source_project_enabled(db: Session, project_id: str) -> list[models.SourceProjectEnabled]:
    return db.query(models.SourceProjectEnabled).filter(
        models.SourceProjectEnabled.project_id == project_id
    ).order_by(models.SourceProjectEnabled.source_name).all()


def seed_source_project_disabled(
    db: Session, project_id: str, source_names: Iterable[str], commit: bool = True
) -> int:
    """
    Add disabled rows for sources the project has no row for yet.

    Blank names are skipped, duplicates collapse, existing rows are left
    untouched.

    Returns:
        Number of rows inserted
    """
    names: list[str] = []
    for raw_name in source_names:
        name = normalize_source_name(raw_name)
        if name and name not in names:
            names.append(name)
    if not names:
        return 0

    existing = {
        row.source_name
        for row in db.query(models.SourceProjectEnabled.source_name).filter(
            models.SourceProjectEnabled.project_id == project_id,
            models.SourceProjectEnabled.source_name.in_(names),
        ).all()
    }

    now = utc_now_iso()
    missing = [name for name in names if name not in existing]
    for name in missing:
        db.add(models.SourceProjectEnabled(
            project_id=project_id,
            source_name=name,
            enabled=False,
            created_at=now,
            updated_at=now,
        ))

    if commit:
        db.commit()
    else:
        db.flush()
    return len(missing)


def seed_sources_for_project(db: Session, project_id: str) -> int:
    """Seed every registered community and local source as disabled for a new project. Flushes only."""
    return seed_source_project_disabled(db, project_id, _registered_source_names(db), commit=False)


def delete_source_project_enabled_by_source(db: Session, source_name: str, commit: bool = True) -> int:
    result = db.execute(
        delete(models.SourceProjectEnabled).where(
            models.SourceProjectEnabled.source_name == normalize_source_name(source_name)
        ),
        execution_options={"synchronize_session": False},
    )
    if commit:
        db.commit()
    return result.rowcount
