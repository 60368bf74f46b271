"""CRUD operations for the Devchain domain.

Every function takes the caller's Session first and commits its own work.
Lookups by id raise NotFoundError; versioned updates take the caller's
expected version and raise OptimisticLockError when it is stale.
"""
import logging
import os
import re
from typing import Optional

from sqlalchemy import and_, delete, exists, func, insert, inspect as sa_inspect, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from . import models, schemas
from .cascade import delete_project_cascade
from .config import get_settings
from .database import ImmediateTransaction
from .errors import ConflictError, NotFoundError, OptimisticLockError, ValidationError
from .hierarchy_listing import list_children_for_parents
from .hierarchy_validation import ensure_valid_agent, ensure_valid_epic_parent
from .skill_sources import seed_sources_for_project
from .tags import (
    DOCUMENT_TAGS,
    EPIC_TAGS,
    PROMPT_TAGS,
    RECORD_TAGS,
    TagLink,
    load_tag_names,
    normalize_tag_names,
    replace_tags,
    tag_names_for,
)
from .versioning import apply_versioned_update, next_timestamp, utc_now_iso
from .visibility import archived_filter, hidden_subtree_exclusion

logger = logging.getLogger("devchain-core.crud")

DEFAULT_STATUSES = [
    {"label": "Proposed", "color": "#6c757d", "position": 0},
    {"label": "In Progress", "color": "#007bff", "position": 1},
    {"label": "Review", "color": "#ffc107", "position": 2},
    {"label": "Done", "color": "#28a745", "position": 3},
    {"label": "Blocked", "color": "#dc3545", "position": 4},
]

PROMPT_PREVIEW_LENGTH = 200

# Comments in these states are kept when a review is re-run
SETTLED_COMMENT_STATUSES = ("resolved", "wont_fix")

_ID_PREFIX_RE = re.compile(r"^[a-f0-9-]+$")


def _get_or_raise(db: Session, model, entity: str, entity_id: str):
    obj = db.get(model, entity_id)
    if obj is None:
        raise NotFoundError(entity, entity_id)
    return obj


def _paginate(query: Query, limit: Optional[int], offset: int) -> schemas.ListResult:
    if limit is None:
        limit = get_settings().default_page_size
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset must not be negative.", limit=limit, offset=offset)
    total = query.order_by(None).count()
    items = query.offset(offset).limit(limit).all()
    return schemas.ListResult(items=items, total=total, limit=limit, offset=offset)


def _attach_tags(db: Session, link: TagLink, entities: list) -> None:
    tags_map = load_tag_names(db, link, [entity.id for entity in entities])
    for entity in entities:
        entity.tags = tags_map.get(entity.id, [])


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _apply_fields(obj, fields: dict) -> None:
    for key, value in fields.items():
        setattr(obj, key, value)


def _reject_nulls(model, entity: str, entity_id: str, fields: dict) -> None:
    """Raise ValidationError for explicit nulls aimed at NOT NULL columns."""
    columns = sa_inspect(model).columns
    for key, value in fields.items():
        if value is None and key in columns and not columns[key].nullable:
            raise ValidationError(f"{entity} {key} cannot be null.", entity_id=entity_id, field=key)


def _commit_or_conflict(db: Session, message: str, **details) -> None:
    """Commit, turning unique/foreign key violations into ConflictError."""
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(message, **details) from exc


# ============================================================================
# Project CRUD Operations
# ============================================================================

def create_project(db: Session, project_in: schemas.ProjectCreate) -> models.Project:
    """
    Create a project with its default workflow statuses.

    The project, its five default statuses and disabled enablement rows for
    every registered skill source are written in one commit.

    Raises:
        ConflictError: If another project already uses root_path
    """
    now = utc_now_iso()
    project = models.Project(
        name=project_in.name,
        description=project_in.description,
        root_path=project_in.root_path,
        is_template=project_in.is_template,
        created_at=now,
        updated_at=now,
    )
    db.add(project)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A project already exists at this root path.", root_path=project_in.root_path) from exc

    for status in DEFAULT_STATUSES:
        db.add(models.Status(project_id=project.id, created_at=now, updated_at=now, **status))
    seed_sources_for_project(db, project.id)

    db.commit()
    db.refresh(project)
    logger.info(f"Created project {project.id} with default statuses")
    return project


def get_project(db: Session, project_id: str) -> models.Project:
    return _get_or_raise(db, models.Project, "Project", project_id)


def list_projects(db: Session, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    query = db.query(models.Project).order_by(models.Project.created_at, models.Project.id)
    return _paginate(query, limit, offset)


def update_project(db: Session, project_id: str, project_in: schemas.ProjectUpdate) -> models.Project:
    project = get_project(db, project_id)
    fields = project_in.model_dump(exclude_unset=True)
    _reject_nulls(models.Project, "Project", project_id, fields)
    _apply_fields(project, fields)
    project.updated_at = next_timestamp(project.updated_at)
    _commit_or_conflict(db, "A project already exists at this root path.", project_id=project_id)
    db.refresh(project)
    logger.info(f"Updated project {project_id}")
    return project


def delete_project(db: Session, project_id: str) -> None:
    delete_project_cascade(db, project_id)


def find_project_by_path(db: Session, root_path: str) -> Optional[models.Project]:
    return db.query(models.Project).filter(models.Project.root_path == root_path).first()


def find_project_containing_path(db: Session, absolute_path: str) -> Optional[models.Project]:
    """Return the project with the longest root path equal to or above ``absolute_path``."""
    target = os.path.normpath(absolute_path)
    best: Optional[models.Project] = None
    best_length = -1

    for project in db.query(models.Project).all():
        root = os.path.normpath(project.root_path)
        prefix = root if root.endswith(os.sep) else root + os.sep
        if (target == root or target.startswith(prefix)) and len(root) > best_length:
            best = project
            best_length = len(root)

    return best


# ============================================================================
# Status CRUD Operations
# ============================================================================

def create_status(db: Session, status_in: schemas.StatusCreate) -> models.Status:
    get_project(db, status_in.project_id)
    now = utc_now_iso()
    status = models.Status(**status_in.model_dump(), created_at=now, updated_at=now)
    db.add(status)
    _commit_or_conflict(
        db,
        "Another status already uses this position.",
        project_id=status_in.project_id,
        position=status_in.position,
    )
    db.refresh(status)
    logger.info(f"Created status {status.id} ({status.label}) in project {status.project_id}")
    return status


def get_status(db: Session, status_id: str) -> models.Status:
    return _get_or_raise(db, models.Status, "Status", status_id)


def list_statuses(
    db: Session, project_id: str, limit: Optional[int] = None, offset: int = 0
) -> schemas.ListResult:
    query = db.query(models.Status).filter(
        models.Status.project_id == project_id
    ).order_by(models.Status.position)
    return _paginate(query, limit, offset)


def find_status_by_label(db: Session, project_id: str, label: str) -> Optional[models.Status]:
    return db.query(models.Status).filter(
        models.Status.project_id == project_id,
        func.lower(models.Status.label) == label.strip().lower(),
    ).first()


def update_status(db: Session, status_id: str, status_in: schemas.StatusUpdate) -> models.Status:
    status = get_status(db, status_id)
    fields = status_in.model_dump(exclude_unset=True)
    _reject_nulls(models.Status, "Status", status_id, fields)
    _apply_fields(status, fields)
    status.updated_at = next_timestamp(status.updated_at)
    _commit_or_conflict(db, "Another status already uses this position.", status_id=status_id)
    db.refresh(status)
    return status


def delete_status(db: Session, status_id: str) -> None:
    """
    Raises:
        ConflictError: If epics still use the status
    """
    status = get_status(db, status_id)
    in_use = count_epics_by_status(db, status_id)
    if in_use:
        raise ConflictError(
            f"Cannot delete status: {in_use} epic(s) still use it.",
            status_id=status_id,
            epic_count=in_use,
        )
    db.delete(status)
    db.commit()
    logger.info(f"Deleted status {status_id}")


# ============================================================================
# Provider CRUD Operations
# ============================================================================

def create_provider(db: Session, provider_in: schemas.ProviderCreate) -> models.Provider:
    now = utc_now_iso()
    provider = models.Provider(**provider_in.model_dump(), created_at=now, updated_at=now)
    db.add(provider)
    _commit_or_conflict(db, f"Provider '{provider_in.name}' already exists.", name=provider_in.name)
    db.refresh(provider)
    logger.info(f"Created provider {provider.id} ({provider.name})")
    return provider


def get_provider(db: Session, provider_id: str) -> models.Provider:
    return _get_or_raise(db, models.Provider, "Provider", provider_id)


def list_providers(db: Session, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    return _paginate(db.query(models.Provider).order_by(models.Provider.name), limit, offset)


def update_provider(db: Session, provider_id: str, provider_in: schemas.ProviderUpdate) -> models.Provider:
    provider = get_provider(db, provider_id)
    fields = provider_in.model_dump(exclude_unset=True)
    _reject_nulls(models.Provider, "Provider", provider_id, fields)
    _apply_fields(provider, fields)
    provider.updated_at = next_timestamp(provider.updated_at)
    _commit_or_conflict(db, "Provider name already exists.", provider_id=provider_id)
    db.refresh(provider)
    return provider


def delete_provider(db: Session, provider_id: str) -> None:
    provider = get_provider(db, provider_id)
    profile_count = db.query(models.AgentProfile).filter(models.AgentProfile.provider_id == provider_id).count()
    if profile_count:
        raise ConflictError(
            f"Cannot delete provider: {profile_count} profile(s) still use it.",
            provider_id=provider_id,
        )
    db.delete(provider)
    db.commit()
    logger.info(f"Deleted provider {provider_id}")


# ============================================================================
# Agent Profile CRUD Operations
# ============================================================================

def create_agent_profile(db: Session, profile_in: schemas.AgentProfileCreate) -> models.AgentProfile:
    """Create a profile. Temperature is stored x100."""
    get_provider(db, profile_in.provider_id)
    if profile_in.project_id:
        get_project(db, profile_in.project_id)

    now = utc_now_iso()
    fields = profile_in.model_dump(exclude={"temperature"})
    profile = models.AgentProfile(**fields, created_at=now, updated_at=now)
    profile.temperature = profile_in.temperature
    db.add(profile)
    _commit_or_conflict(db, f"Profile '{profile_in.name}' already exists in this project.", name=profile_in.name)
    db.refresh(profile)
    logger.info(f"Created agent profile {profile.id} ({profile.name})")
    return profile


def get_agent_profile(db: Session, profile_id: str) -> models.AgentProfile:
    return _get_or_raise(db, models.AgentProfile, "AgentProfile", profile_id)


def list_agent_profiles(
    db: Session,
    project_id: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    query = db.query(models.AgentProfile)
    if project_id:
        query = query.filter(models.AgentProfile.project_id == project_id)
    return _paginate(query.order_by(models.AgentProfile.name), limit, offset)


def update_agent_profile(
    db: Session, profile_id: str, profile_in: schemas.AgentProfileUpdate
) -> models.AgentProfile:
    profile = get_agent_profile(db, profile_id)
    fields = profile_in.model_dump(exclude_unset=True)
    _reject_nulls(models.AgentProfile, "AgentProfile", profile_id, fields)
    if "provider_id" in fields:
        get_provider(db, fields["provider_id"])
    if "temperature" in fields:
        profile.temperature = fields.pop("temperature")
    _apply_fields(profile, fields)
    profile.updated_at = next_timestamp(profile.updated_at)
    _commit_or_conflict(db, "Profile name already exists in this project.", profile_id=profile_id)
    db.refresh(profile)
    return profile


def delete_agent_profile(db: Session, profile_id: str) -> None:
    """
    Raises:
        ConflictError: If agents still reference the profile
    """
    profile = get_agent_profile(db, profile_id)
    agent_count = db.query(models.Agent).filter(models.Agent.profile_id == profile_id).count()
    if agent_count:
        raise ConflictError(
            f"Cannot delete profile: {agent_count} agent(s) still use it.",
            profile_id=profile_id,
            agent_count=agent_count,
        )
    db.execute(delete(models.agent_profile_prompts).where(models.agent_profile_prompts.c.profile_id == profile_id))
    db.delete(profile)
    db.commit()
    logger.info(f"Deleted agent profile {profile_id}")


def set_agent_profile_prompts(db: Session, profile_id: str, prompt_ids: list[str]) -> None:
    """
    Replace the profile's ordered prompt list.

    Raises:
        NotFoundError: If the profile does not exist
        ValidationError: On unknown prompt ids or prompts from another project
    """
    profile = get_agent_profile(db, profile_id)

    if prompt_ids:
        rows = db.query(models.Prompt.id, models.Prompt.project_id).filter(
            models.Prompt.id.in_(prompt_ids)
        ).all()
        found = {row.id: row.project_id for row in rows}

        missing = [prompt_id for prompt_id in prompt_ids if prompt_id not in found]
        if missing:
            raise ValidationError("Unknown prompt ids provided", missing=missing)

        cross_project = [prompt_id for prompt_id, project_id in found.items() if project_id != profile.project_id]
        if cross_project:
            raise ValidationError(
                "Cross-project prompts are not allowed for this profile",
                profile_project_id=profile.project_id,
                prompt_ids=cross_project,
            )

    db.execute(delete(models.agent_profile_prompts).where(models.agent_profile_prompts.c.profile_id == profile_id))
    ordered = list(dict.fromkeys(prompt_ids))
    if ordered:
        now = utc_now_iso()
        db.execute(
            insert(models.agent_profile_prompts),
            [
                {"profile_id": profile_id, "prompt_id": prompt_id, "position": index, "created_at": now}
                for index, prompt_id in enumerate(ordered)
            ],
        )
    db.commit()
    logger.info(f"Set {len(ordered)} prompts on profile {profile_id}")


def get_agent_profile_prompts(db: Session, profile_id: str) -> list[models.Prompt]:
    """Prompts assigned to a profile, in assignment order."""
    get_agent_profile(db, profile_id)
    return (
        db.query(models.Prompt)
        .join(models.agent_profile_prompts, models.agent_profile_prompts.c.prompt_id == models.Prompt.id)
        .filter(models.agent_profile_prompts.c.profile_id == profile_id)
        .order_by(models.agent_profile_prompts.c.position)
        .all()
    )


# ============================================================================
# Agent CRUD Operations
# ============================================================================

def _ensure_profile_in_project(db: Session, profile_id: str, project_id: str) -> None:
    profile = get_agent_profile(db, profile_id)
    if profile.project_id != project_id:
        raise ValidationError(
            "Agent profile must belong to the same project as the agent.",
            agent_project_id=project_id,
            profile_project_id=profile.project_id,
            profile_id=profile_id,
        )


def create_agent(db: Session, agent_in: schemas.AgentCreate) -> models.Agent:
    """
    Raises:
        ValidationError: If the profile belongs to another project
    """
    get_project(db, agent_in.project_id)
    _ensure_profile_in_project(db, agent_in.profile_id, agent_in.project_id)

    now = utc_now_iso()
    agent = models.Agent(**agent_in.model_dump(), created_at=now, updated_at=now)
    db.add(agent)
    db.commit()
    db.refresh(agent)
    logger.info(f"Created agent {agent.id} in project {agent.project_id}")
    return agent


def get_agent(db: Session, agent_id: str) -> models.Agent:
    return _get_or_raise(db, models.Agent, "Agent", agent_id)


def list_agents(db: Session, project_id: str, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    query = db.query(models.Agent).filter(models.Agent.project_id == project_id).order_by(models.Agent.name)
    return _paginate(query, limit, offset)


def get_agent_by_name(db: Session, project_id: str, name: str) -> models.Agent:
    """Case-insensitive agent lookup within a project."""
    agent = db.query(models.Agent).filter(
        models.Agent.project_id == project_id,
        func.lower(models.Agent.name) == name.strip().lower(),
    ).first()
    if agent is None:
        raise NotFoundError("Agent", f"{project_id}:{name}")
    return agent


def update_agent(db: Session, agent_id: str, agent_in: schemas.AgentUpdate) -> models.Agent:
    agent = get_agent(db, agent_id)
    fields = agent_in.model_dump(exclude_unset=True)
    _reject_nulls(models.Agent, "Agent", agent_id, fields)
    if "profile_id" in fields:
        _ensure_profile_in_project(db, fields["profile_id"], agent.project_id)
    _apply_fields(agent, fields)
    agent.updated_at = next_timestamp(agent.updated_at)
    db.commit()
    db.refresh(agent)
    return agent


def delete_agent(db: Session, agent_id: str) -> None:
    """
    Delete an agent, clearing its finished sessions first.

    Raises:
        ConflictError: If the agent has running sessions
    """
    agent = get_agent(db, agent_id)
    sessions = db.query(models.AgentSession).filter(models.AgentSession.agent_id == agent_id).all()

    running = [s for s in sessions if s.status == "running"]
    if running:
        raise ConflictError(
            f"Cannot delete agent: {len(running)} active session(s) are still running. "
            "Please terminate the active sessions first.",
            agent_id=agent_id,
        )

    finished_ids = [s.id for s in sessions if s.status in ("stopped", "failed")]
    if finished_ids:
        logger.info(f"Auto-deleting {len(finished_ids)} completed sessions for agent {agent_id}")
        db.execute(delete(models.Transcript).where(models.Transcript.session_id.in_(finished_ids)))
        db.execute(
            delete(models.AgentSession).where(models.AgentSession.id.in_(finished_ids)),
            execution_options={"synchronize_session": False},
        )

    db.delete(agent)
    _commit_or_conflict(db, "Agent is still referenced by other records.", agent_id=agent_id)
    logger.info(f"Deleted agent {agent_id}")


# ============================================================================
# Epic CRUD Operations
# ============================================================================

def _ensure_status_in_project(db: Session, status_id: str, project_id: str) -> models.Status:
    status = get_status(db, status_id)
    if status.project_id != project_id:
        raise ValidationError(
            "Status must belong to the target project.",
            status_id=status_id,
            project_id=project_id,
            status_project_id=status.project_id,
        )
    return status


def create_epic(db: Session, epic_in: schemas.EpicCreate) -> models.Epic:
    """
    Create an epic and its tags in one commit.

    Raises:
        NotFoundError: If the project, status, parent or agent does not exist
        ValidationError: If the parent or agent breaks a hierarchy or ownership rule
    """
    get_project(db, epic_in.project_id)
    _ensure_status_in_project(db, epic_in.status_id, epic_in.project_id)
    ensure_valid_epic_parent(db, epic_in.project_id, epic_in.parent_id)
    ensure_valid_agent(db, epic_in.project_id, epic_in.agent_id)

    now = utc_now_iso()
    epic = models.Epic(
        project_id=epic_in.project_id,
        title=epic_in.title,
        description=epic_in.description,
        status_id=epic_in.status_id,
        parent_id=epic_in.parent_id,
        agent_id=epic_in.agent_id,
        version=1,
        created_at=now,
        updated_at=now,
    )
    epic.data = epic_in.data
    db.add(epic)
    db.flush()

    tags = replace_tags(db, EPIC_TAGS, epic.id, epic.project_id, epic_in.tags)
    db.commit()
    db.refresh(epic)
    epic.tags = sorted(tags)
    logger.info(f"Created epic {epic.id} in project {epic.project_id}")
    return epic


def get_epic(db: Session, epic_id: str) -> models.Epic:
    epic = _get_or_raise(db, models.Epic, "Epic", epic_id)
    epic.tags = tag_names_for(db, EPIC_TAGS, epic_id)
    return epic


def list_epics(db: Session, project_id: str, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    query = db.query(models.Epic).filter(
        models.Epic.project_id == project_id
    ).order_by(models.Epic.created_at, models.Epic.id)
    page = _paginate(query, limit, offset)
    _attach_tags(db, EPIC_TAGS, page.items)
    return page


def list_epics_by_status(
    db: Session, status_id: str, limit: Optional[int] = None, offset: int = 0
) -> schemas.ListResult:
    query = db.query(models.Epic).filter(
        models.Epic.status_id == status_id
    ).order_by(models.Epic.updated_at.desc(), models.Epic.id.desc())
    page = _paginate(query, limit, offset)
    _attach_tags(db, EPIC_TAGS, page.items)
    return page


def list_project_epics(
    db: Session,
    project_id: str,
    q: Optional[str] = None,
    status_id: Optional[str] = None,
    list_type: Optional[str] = "active",
    exclude_mcp_hidden: bool = False,
    parent_only: bool = False,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    """
    List a project's epics, most recently updated first.

    Args:
        db: Database session
        project_id: Project to list
        q: Case-insensitive search over title and description; a query of
            8+ hex digits/hyphens also matches epic id prefixes
        status_id: Only epics in this status
        list_type: "active" (default) hides epics whose status label
            contains "archiv", "archived" keeps only those, "all" keeps both
        exclude_mcp_hidden: Drop epics in hidden statuses and every epic below them
        parent_only: Only root epics
        limit: Page size
        offset: Page offset

    Returns:
        ListResult of epics with ``tags`` populated
    """
    query = db.query(models.Epic).join(
        models.Status, models.Status.id == models.Epic.status_id
    ).filter(models.Epic.project_id == project_id)

    search = (q or "").strip().lower()
    if search:
        pattern = f"%{_escape_like(search)}%"
        matches = [
            func.lower(models.Epic.title).like(pattern, escape="\\"),
            func.lower(func.coalesce(models.Epic.description, "")).like(pattern, escape="\\"),
        ]
        if len(search) >= 8 and _ID_PREFIX_RE.match(search):
            matches.append(models.Epic.id.like(f"{search}%"))
        query = query.filter(or_(*matches))

    if status_id:
        query = query.filter(models.Epic.status_id == status_id)

    status_condition = archived_filter(list_type)
    if status_condition is not None:
        query = query.filter(status_condition)

    if exclude_mcp_hidden:
        query = query.filter(hidden_subtree_exclusion(project_id))

    if parent_only:
        query = query.filter(models.Epic.parent_id.is_(None))

    page = _paginate(query.order_by(models.Epic.updated_at.desc(), models.Epic.id.desc()), limit, offset)
    _attach_tags(db, EPIC_TAGS, page.items)
    return page


def list_assigned_epics(
    db: Session,
    project_id: str,
    agent_name: Optional[str],
    exclude_mcp_hidden: bool = False,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    """
    List epics assigned to the agent named ``agent_name``.

    Raises:
        ValidationError: If agent_name is blank
        NotFoundError: If no agent of the project has that name
    """
    if not agent_name or not agent_name.strip():
        raise ValidationError("agentName is required to list assigned epics.", project_id=project_id)

    agent = get_agent_by_name(db, project_id, agent_name)
    query = db.query(models.Epic).filter(
        models.Epic.project_id == project_id,
        models.Epic.agent_id == agent.id,
    )
    if exclude_mcp_hidden:
        query = query.filter(hidden_subtree_exclusion(project_id))

    page = _paginate(query.order_by(models.Epic.updated_at.desc(), models.Epic.id.desc()), limit, offset)
    _attach_tags(db, EPIC_TAGS, page.items)
    return page


def create_epic_for_project(
    db: Session, project_id: str, epic_in: schemas.EpicForProjectCreate
) -> models.Epic:
    """
    Create an epic resolving its status and agent by convention.

    Without a status_id the project's lowest-position status is used; an
    agent_name is resolved case-insensitively.

    Raises:
        ValidationError: If the status is foreign or the project has no statuses
        NotFoundError: If the named agent does not exist
    """
    get_project(db, project_id)

    if epic_in.status_id:
        status_id = _ensure_status_in_project(db, epic_in.status_id, project_id).id
    else:
        default_status = db.query(models.Status).filter(
            models.Status.project_id == project_id
        ).order_by(models.Status.position).first()
        if default_status is None:
            raise ValidationError("Project has no statuses configured.", project_id=project_id)
        status_id = default_status.id

    agent_id = None
    if epic_in.agent_name and epic_in.agent_name.strip():
        agent_id = get_agent_by_name(db, project_id, epic_in.agent_name).id

    return create_epic(db, schemas.EpicCreate(
        project_id=project_id,
        title=epic_in.title,
        description=epic_in.description,
        status_id=status_id,
        parent_id=epic_in.parent_id,
        agent_id=agent_id,
        data=epic_in.data,
        tags=epic_in.tags,
    ))


def update_epic(db: Session, epic_id: str, epic_in: schemas.EpicUpdate, expected_version: int) -> models.Epic:
    """
    Update an epic under optimistic locking.

    Every accepted call bumps the version, even when no field changes.
    Tags, when given, are replaced in the same commit.

    Raises:
        NotFoundError: If the epic does not exist
        OptimisticLockError: If expected_version is stale
        ValidationError: If a new parent, agent or status breaks a rule
    """
    current = _get_or_raise(db, models.Epic, "Epic", epic_id)
    if current.version != expected_version:
        raise OptimisticLockError("Epic", epic_id, expected_version, current.version)

    fields = epic_in.model_dump(exclude_unset=True)
    tags = fields.pop("tags", None)
    _reject_nulls(models.Epic, "Epic", epic_id, fields)

    if "parent_id" in fields:
        ensure_valid_epic_parent(db, current.project_id, fields["parent_id"], epic_id)
    if "agent_id" in fields:
        ensure_valid_agent(db, current.project_id, fields["agent_id"])
    if "status_id" in fields:
        if not fields["status_id"]:
            raise ValidationError("Epic status cannot be cleared.", epic_id=epic_id)
        _ensure_status_in_project(db, fields["status_id"], current.project_id)
    if "data" in fields:
        fields["data_json"] = models.dump_json(fields.pop("data"))

    epic = apply_versioned_update(db, models.Epic, "Epic", epic_id, fields, expected_version)
    if tags is not None:
        replace_tags(db, EPIC_TAGS, epic_id, epic.project_id, tags)

    db.commit()
    db.refresh(epic)
    epic.tags = tag_names_for(db, EPIC_TAGS, epic_id)
    logger.info(f"Updated epic {epic_id} to version {epic.version}")
    return epic


def _delete_epic_rows(db: Session, epic_ids: list[str]) -> None:
    record_ids = select(models.Record.id).where(models.Record.epic_id.in_(epic_ids))
    db.execute(delete(models.EpicComment).where(models.EpicComment.epic_id.in_(epic_ids)))
    db.execute(delete(models.record_tags).where(models.record_tags.c.record_id.in_(record_ids)))
    db.execute(delete(models.Record).where(models.Record.epic_id.in_(epic_ids)))
    db.execute(delete(models.epic_tags).where(models.epic_tags.c.epic_id.in_(epic_ids)))
    db.execute(
        update(models.AgentSession).where(models.AgentSession.epic_id.in_(epic_ids)).values(epic_id=None),
        execution_options={"synchronize_session": False},
    )
    db.execute(
        update(models.Review).where(models.Review.epic_id.in_(epic_ids)).values(epic_id=None),
        execution_options={"synchronize_session": False},
    )
    db.execute(
        delete(models.Epic).where(models.Epic.id.in_(epic_ids)),
        execution_options={"synchronize_session": False},
    )


def delete_epic(db: Session, epic_id: str) -> None:
    """Delete an epic, its sub-epics and their comments, records and tags."""
    _get_or_raise(db, models.Epic, "Epic", epic_id)

    # Collect the subtree level by level; deepest level is deleted first
    levels = [[epic_id]]
    while True:
        children = [
            row.id
            for row in db.query(models.Epic.id).filter(models.Epic.parent_id.in_(levels[-1])).all()
        ]
        if not children:
            break
        levels.append(children)

    for level in reversed(levels):
        _delete_epic_rows(db, level)
    db.commit()

    logger.info(f"Deleted epic {epic_id} and {sum(len(level) for level in levels) - 1} sub-epics")


def list_sub_epics(db: Session, parent_id: str, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    _get_or_raise(db, models.Epic, "Epic", parent_id)
    query = db.query(models.Epic).filter(
        models.Epic.parent_id == parent_id
    ).order_by(models.Epic.updated_at.desc(), models.Epic.id.desc())
    page = _paginate(query, limit, offset)
    _attach_tags(db, EPIC_TAGS, page.items)
    return page


def list_sub_epics_for_parents(
    db: Session,
    project_id: str,
    parent_ids: list[str],
    limit_per_parent: Optional[int] = None,
    list_type: Optional[str] = "active",
    exclude_mcp_hidden: bool = False,
) -> dict[str, list[models.Epic]]:
    return list_children_for_parents(
        db,
        project_id,
        parent_ids,
        limit_per_parent=limit_per_parent,
        list_type=list_type,
        exclude_mcp_hidden=exclude_mcp_hidden,
    )


def count_sub_epics_by_status(db: Session, parent_id: str) -> dict[str, int]:
    _get_or_raise(db, models.Epic, "Epic", parent_id)
    rows = db.query(models.Epic.status_id, func.count(models.Epic.id)).filter(
        models.Epic.parent_id == parent_id
    ).group_by(models.Epic.status_id).all()
    return {status_id: count for status_id, count in rows}


def count_epics_by_status(db: Session, status_id: str) -> int:
    return db.query(models.Epic).filter(models.Epic.status_id == status_id).count()


def update_epics_status(db: Session, old_status_id: str, new_status_id: str) -> int:
    """
    Move every epic from one status to another of the same project.

    Each moved epic gets a version bump.

    Returns:
        Number of epics moved
    """
    old_status = get_status(db, old_status_id)
    _ensure_status_in_project(db, new_status_id, old_status.project_id)

    latest = db.scalar(select(func.max(models.Epic.updated_at)).where(models.Epic.status_id == old_status_id))
    result = db.execute(
        update(models.Epic)
        .where(models.Epic.status_id == old_status_id)
        .values(
            status_id=new_status_id,
            version=models.Epic.version + 1,
            updated_at=next_timestamp(latest),
        ),
        execution_options={"synchronize_session": False},
    )
    db.commit()
    logger.info(f"Moved {result.rowcount} epics from status {old_status_id} to {new_status_id}")
    return result.rowcount


# ============================================================================
# Epic Comment CRUD Operations
# ============================================================================

def list_epic_comments(db: Session, epic_id: str, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    _get_or_raise(db, models.Epic, "Epic", epic_id)
    query = db.query(models.EpicComment).filter(
        models.EpicComment.epic_id == epic_id
    ).order_by(models.EpicComment.created_at, models.EpicComment.id)
    return _paginate(query, limit, offset)


def create_epic_comment(db: Session, comment_in: schemas.EpicCommentCreate) -> models.EpicComment:
    _get_or_raise(db, models.Epic, "Epic", comment_in.epic_id)
    now = utc_now_iso()
    comment = models.EpicComment(**comment_in.model_dump(), created_at=now, updated_at=now)
    db.add(comment)
    db.commit()
    db.refresh(comment)
    return comment


def delete_epic_comment(db: Session, comment_id: str) -> None:
    db.execute(delete(models.EpicComment).where(models.EpicComment.id == comment_id))
    db.commit()


# ============================================================================
# Record CRUD Operations
# ============================================================================

def create_record(db: Session, record_in: schemas.RecordCreate) -> models.Record:
    """Create a record; its tags are scoped to the parent epic's project."""
    epic = _get_or_raise(db, models.Epic, "Epic", record_in.epic_id)
    now = utc_now_iso()
    record = models.Record(
        epic_id=record_in.epic_id,
        type=record_in.type,
        version=1,
        created_at=now,
        updated_at=now,
    )
    record.data = record_in.data
    db.add(record)
    db.flush()

    tags = replace_tags(db, RECORD_TAGS, record.id, epic.project_id, record_in.tags)
    db.commit()
    db.refresh(record)
    record.tags = sorted(tags)
    logger.info(f"Created record {record.id} on epic {record.epic_id}")
    return record


def get_record(db: Session, record_id: str) -> models.Record:
    record = _get_or_raise(db, models.Record, "Record", record_id)
    record.tags = tag_names_for(db, RECORD_TAGS, record_id)
    return record


def list_records(db: Session, epic_id: str, limit: Optional[int] = None, offset: int = 0) -> schemas.ListResult:
    query = db.query(models.Record).filter(
        models.Record.epic_id == epic_id
    ).order_by(models.Record.created_at, models.Record.id)
    page = _paginate(query, limit, offset)
    _attach_tags(db, RECORD_TAGS, page.items)
    return page


def update_record(
    db: Session, record_id: str, record_in: schemas.RecordUpdate, expected_version: int
) -> models.Record:
    fields = record_in.model_dump(exclude_unset=True)
    tags = fields.pop("tags", None)
    _reject_nulls(models.Record, "Record", record_id, fields)
    if "data" in fields:
        if fields["data"] is None:
            raise ValidationError("Record data cannot be null.", record_id=record_id)
        fields["data_json"] = models.dump_json(fields.pop("data"))

    record = apply_versioned_update(db, models.Record, "Record", record_id, fields, expected_version)
    if tags is not None:
        epic = db.get(models.Epic, record.epic_id)
        replace_tags(db, RECORD_TAGS, record_id, epic.project_id, tags)

    db.commit()
    db.refresh(record)
    record.tags = tag_names_for(db, RECORD_TAGS, record_id)
    logger.info(f"Updated record {record_id} to version {record.version}")
    return record


def delete_record(db: Session, record_id: str) -> None:
    record = _get_or_raise(db, models.Record, "Record", record_id)
    db.execute(delete(models.record_tags).where(models.record_tags.c.record_id == record_id))
    db.delete(record)
    db.commit()


# ============================================================================
# Prompt CRUD Operations
# ============================================================================

def create_prompt(db: Session, prompt_in: schemas.PromptCreate) -> models.Prompt:
    if prompt_in.project_id:
        get_project(db, prompt_in.project_id)

    now = utc_now_iso()
    prompt = models.Prompt(
        project_id=prompt_in.project_id,
        title=prompt_in.title,
        content=prompt_in.content,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(prompt)
    db.flush()

    tags = replace_tags(db, PROMPT_TAGS, prompt.id, prompt.project_id, prompt_in.tags)
    db.commit()
    db.refresh(prompt)
    prompt.tags = sorted(tags)
    logger.info(f"Created prompt {prompt.id}")
    return prompt


def get_prompt(db: Session, prompt_id: str) -> models.Prompt:
    prompt = _get_or_raise(db, models.Prompt, "Prompt", prompt_id)
    prompt.tags = tag_names_for(db, PROMPT_TAGS, prompt_id)
    return prompt


def _content_preview(content: str) -> str:
    if len(content) > PROMPT_PREVIEW_LENGTH:
        return content[:PROMPT_PREVIEW_LENGTH] + "…"
    return content


def _has_all_tags(link: TagLink, owner_id_column, names: list[str]) -> list:
    """One EXISTS clause per required tag name."""
    return [
        exists(
            select(1)
            .select_from(link.table)
            .join(models.Tag, models.Tag.id == link.table.c.tag_id)
            .where(link.owner_column == owner_id_column, models.Tag.name == name)
        )
        for name in names
    ]


def list_prompts(
    db: Session,
    project_id: Optional[str] = None,
    global_only: bool = False,
    tags: Optional[list[str]] = None,
    q: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    """
    List prompt summaries, most recently updated first.

    Args:
        db: Database session
        project_id: Only prompts of this project
        global_only: Only prompts without a project (ignored when project_id is given)
        tags: Only prompts carrying every one of these tags
        q: Case-insensitive title search
        limit: Page size
        offset: Page offset

    Returns:
        ListResult of PromptSummary with content cut to a short preview
    """
    query = db.query(models.Prompt)
    if project_id:
        query = query.filter(models.Prompt.project_id == project_id)
    elif global_only:
        query = query.filter(models.Prompt.project_id.is_(None))

    required = normalize_tag_names(tags)
    if required:
        query = query.filter(*_has_all_tags(PROMPT_TAGS, models.Prompt.id, required))

    search = (q or "").strip().lower()
    if search:
        query = query.filter(func.lower(models.Prompt.title).like(f"%{_escape_like(search)}%", escape="\\"))

    page = _paginate(query.order_by(models.Prompt.updated_at.desc(), models.Prompt.id.desc()), limit, offset)
    tags_map = load_tag_names(db, PROMPT_TAGS, [prompt.id for prompt in page.items])
    page.items = [
        schemas.PromptSummary(
            id=prompt.id,
            project_id=prompt.project_id,
            title=prompt.title,
            content_preview=_content_preview(prompt.content or ""),
            version=prompt.version,
            tags=tags_map.get(prompt.id, []),
            created_at=prompt.created_at,
            updated_at=prompt.updated_at,
        )
        for prompt in page.items
    ]
    return page


def update_prompt(
    db: Session, prompt_id: str, prompt_in: schemas.PromptUpdate, expected_version: int
) -> models.Prompt:
    """Versioned prompt update; tags, when given, are replaced in the same commit."""
    fields = prompt_in.model_dump(exclude_unset=True)
    tags = fields.pop("tags", None)
    _reject_nulls(models.Prompt, "Prompt", prompt_id, fields)

    prompt = apply_versioned_update(db, models.Prompt, "Prompt", prompt_id, fields, expected_version)
    if tags is not None:
        replace_tags(db, PROMPT_TAGS, prompt_id, prompt.project_id, tags)

    db.commit()
    db.refresh(prompt)
    prompt.tags = tag_names_for(db, PROMPT_TAGS, prompt_id)
    logger.info(f"Updated prompt {prompt_id} to version {prompt.version}")
    return prompt


def delete_prompt(db: Session, prompt_id: str) -> None:
    prompt = _get_or_raise(db, models.Prompt, "Prompt", prompt_id)
    db.execute(delete(models.prompt_tags).where(models.prompt_tags.c.prompt_id == prompt_id))
    db.execute(delete(models.agent_profile_prompts).where(models.agent_profile_prompts.c.prompt_id == prompt_id))
    db.delete(prompt)
    db.commit()
    logger.info(f"Deleted prompt {prompt_id}")


# ============================================================================
# Tag CRUD Operations
# ============================================================================

def create_tag(db: Session, tag_in: schemas.TagCreate) -> models.Tag:
    now = utc_now_iso()
    tag = models.Tag(project_id=tag_in.project_id, name=tag_in.name.strip(), created_at=now, updated_at=now)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def get_tag(db: Session, tag_id: str) -> models.Tag:
    return _get_or_raise(db, models.Tag, "Tag", tag_id)


def list_tags(
    db: Session, project_id: Optional[str], limit: Optional[int] = None, offset: int = 0
) -> schemas.ListResult:
    """Tags of one scope: a project's own tags, or the global ones when project_id is None."""
    query = db.query(models.Tag)
    if project_id is None:
        query = query.filter(models.Tag.project_id.is_(None))
    else:
        query = query.filter(models.Tag.project_id == project_id)
    return _paginate(query.order_by(models.Tag.name), limit, offset)


def update_tag(db: Session, tag_id: str, tag_in: schemas.TagUpdate) -> models.Tag:
    tag = get_tag(db, tag_id)
    tag.name = tag_in.name.strip()
    tag.updated_at = next_timestamp(tag.updated_at)
    db.commit()
    db.refresh(tag)
    return tag


def delete_tag(db: Session, tag_id: str) -> None:
    tag = get_tag(db, tag_id)
    for link in (EPIC_TAGS, PROMPT_TAGS, DOCUMENT_TAGS, RECORD_TAGS):
        db.execute(delete(link.table).where(link.table.c.tag_id == tag_id))
    db.delete(tag)
    db.commit()


# ============================================================================
# Document CRUD Operations
# ============================================================================

def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return slug.strip("-")


def _unique_document_slug(
    db: Session, project_id: Optional[str], desired: Optional[str], exclude_id: Optional[str] = None
) -> str:
    """First free slug among base, base-2, base-3, ... within the project scope."""
    base = slugify(desired or "document") or "document"
    candidate = base
    attempt = 1

    while True:
        query = db.query(models.Document.id).filter(models.Document.slug == candidate)
        if project_id is None:
            query = query.filter(models.Document.project_id.is_(None))
        else:
            query = query.filter(models.Document.project_id == project_id)
        if exclude_id:
            query = query.filter(models.Document.id != exclude_id)

        if query.first() is None:
            return candidate
        attempt += 1
        candidate = f"{base}-{attempt}"


def create_document(db: Session, document_in: schemas.DocumentCreate) -> models.Document:
    if document_in.project_id:
        get_project(db, document_in.project_id)

    now = utc_now_iso()
    document = models.Document(
        project_id=document_in.project_id,
        title=document_in.title,
        slug=_unique_document_slug(db, document_in.project_id, document_in.slug or document_in.title),
        content_md=document_in.content_md,
        archived=document_in.archived,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(document)
    db.flush()

    tags = replace_tags(db, DOCUMENT_TAGS, document.id, document.project_id, document_in.tags)
    db.commit()
    db.refresh(document)
    document.tags = sorted(tags)
    logger.info(f"Created document {document.id} ({document.slug})")
    return document


def get_document(
    db: Session,
    document_id: Optional[str] = None,
    project_id: Optional[str] = None,
    slug: Optional[str] = None,
) -> models.Document:
    """
    Get a document by id, or by slug within a project scope (None = global).

    Raises:
        ValidationError: If neither id nor slug is given
        NotFoundError: If nothing matches
    """
    if document_id:
        document = db.get(models.Document, document_id)
        lookup = document_id
    elif slug:
        query = db.query(models.Document).filter(models.Document.slug == slug)
        if project_id is None:
            query = query.filter(models.Document.project_id.is_(None))
        else:
            query = query.filter(models.Document.project_id == project_id)
        document = query.first()
        lookup = f"{project_id or 'global'}:{slug}"
    else:
        raise ValidationError("Document identifier requires either id or slug")

    if document is None:
        raise NotFoundError("Document", lookup)

    document.tags = tag_names_for(db, DOCUMENT_TAGS, document.id)
    return document


def list_documents(
    db: Session,
    project_id: Optional[str] = None,
    global_only: bool = False,
    tags: Optional[list[str]] = None,
    tag_keys: Optional[list[str]] = None,
    q: Optional[str] = None,
    include_archived: bool = True,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    """
    List documents, most recently updated first.

    ``tags`` requires every listed tag; ``tag_keys`` requires, per key, a tag
    named exactly ``key`` or prefixed ``key:`` (e.g. key "area" matches "area:ui").
    """
    query = db.query(models.Document)
    if project_id:
        query = query.filter(models.Document.project_id == project_id)
    elif global_only:
        query = query.filter(models.Document.project_id.is_(None))

    if not include_archived:
        query = query.filter(models.Document.archived.is_(False))

    required = normalize_tag_names(tags)
    if required:
        query = query.filter(*_has_all_tags(DOCUMENT_TAGS, models.Document.id, required))

    for key in normalize_tag_names(tag_keys):
        query = query.filter(exists(
            select(1)
            .select_from(models.document_tags)
            .join(models.Tag, models.Tag.id == models.document_tags.c.tag_id)
            .where(
                models.document_tags.c.document_id == models.Document.id,
                or_(models.Tag.name == key, models.Tag.name.like(f"{_escape_like(key)}:%", escape="\\")),
            )
        ))

    search = (q or "").strip()
    if search:
        pattern = f"%{_escape_like(search)}%"
        query = query.filter(or_(
            models.Document.title.like(pattern, escape="\\"),
            models.Document.content_md.like(pattern, escape="\\"),
        ))

    page = _paginate(query.order_by(models.Document.updated_at.desc(), models.Document.id.desc()), limit, offset)
    _attach_tags(db, DOCUMENT_TAGS, page.items)
    return page


def update_document(db: Session, document_id: str, document_in: schemas.DocumentUpdate) -> models.Document:
    """
    Update a document. The version check runs only when document_in.version is set,
    but the version is bumped either way.
    """
    current = get_document(db, document_id=document_id)
    fields = document_in.model_dump(exclude_unset=True)
    expected_version = fields.pop("version", None)
    if expected_version is None:
        expected_version = current.version
    tags = fields.pop("tags", None)
    _reject_nulls(models.Document, "Document", document_id, fields)

    if "slug" in fields:
        fields["slug"] = _unique_document_slug(db, current.project_id, fields["slug"], exclude_id=document_id)

    document = apply_versioned_update(db, models.Document, "Document", document_id, fields, expected_version)
    if tags is not None:
        replace_tags(db, DOCUMENT_TAGS, document_id, document.project_id, tags)

    db.commit()
    db.refresh(document)
    document.tags = tag_names_for(db, DOCUMENT_TAGS, document_id)
    logger.info(f"Updated document {document_id} to version {document.version}")
    return document


def delete_document(db: Session, document_id: str) -> None:
    document = _get_or_raise(db, models.Document, "Document", document_id)
    db.execute(delete(models.document_tags).where(models.document_tags.c.document_id == document_id))
    db.delete(document)
    db.commit()
    logger.info(f"Deleted document {document_id}")


# ============================================================================
# Session and Chat Operations
# ============================================================================

def create_session(db: Session, session_in: schemas.SessionCreate) -> models.AgentSession:
    get_agent(db, session_in.agent_id)
    if session_in.epic_id:
        _get_or_raise(db, models.Epic, "Epic", session_in.epic_id)

    now = utc_now_iso()
    session = models.AgentSession(
        **session_in.model_dump(),
        started_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info(f"Created session {session.id} for agent {session.agent_id}")
    return session


def update_session_status(db: Session, session_id: str, status: str) -> models.AgentSession:
    session = _get_or_raise(db, models.AgentSession, "Session", session_id)
    now = next_timestamp(session.updated_at)
    session.status = status
    if status != "running":
        session.ended_at = now
    session.updated_at = now
    db.commit()
    db.refresh(session)
    return session


def create_chat_thread(db: Session, thread_in: schemas.ChatThreadCreate) -> models.ChatThread:
    get_project(db, thread_in.project_id)
    now = utc_now_iso()
    thread = models.ChatThread(
        **thread_in.model_dump(exclude={"member_agent_ids"}),
        created_at=now,
        updated_at=now,
    )
    db.add(thread)
    db.flush()

    members = list(dict.fromkeys(thread_in.member_agent_ids))
    if members:
        db.execute(
            insert(models.chat_members),
            [{"thread_id": thread.id, "agent_id": agent_id, "created_at": now} for agent_id in members],
        )
    _commit_or_conflict(db, "Unknown member agent.", thread_id=thread.id)
    db.refresh(thread)
    return thread


def create_chat_message(db: Session, message_in: schemas.ChatMessageCreate) -> models.ChatMessage:
    """Create a message and its target rows in one commit."""
    _get_or_raise(db, models.ChatThread, "ChatThread", message_in.thread_id)
    now = utc_now_iso()
    message = models.ChatMessage(
        **message_in.model_dump(exclude={"target_agent_ids"}),
        created_at=now,
    )
    db.add(message)
    db.flush()

    for agent_id in dict.fromkeys(message_in.target_agent_ids):
        db.add(models.ChatMessageTarget(message_id=message.id, agent_id=agent_id, created_at=now))
    _commit_or_conflict(db, "Unknown target agent.", message_id=message.id)
    db.refresh(message)
    return message


def mark_message_as_read(db: Session, message_id: str, agent_id: str, read_at: Optional[str] = None) -> bool:
    """
    Record that an agent read a message. Repeated calls are no-ops.

    Returns:
        True if a read receipt was written, False if it already existed
    """
    already_read = db.execute(
        select(models.chat_message_reads.c.message_id).where(
            models.chat_message_reads.c.message_id == message_id,
            models.chat_message_reads.c.agent_id == agent_id,
        )
    ).first()
    if already_read is not None:
        logger.debug(f"Message {message_id} already marked as read by {agent_id}")
        return False

    db.execute(insert(models.chat_message_reads).values(
        message_id=message_id,
        agent_id=agent_id,
        read_at=read_at or utc_now_iso(),
    ))
    db.commit()
    logger.info(f"Marked message {message_id} as read by {agent_id}")
    return True


# ============================================================================
# Review CRUD Operations
# ============================================================================

def _comment_counts(db: Session, review_ids: list[str]) -> dict[str, int]:
    if not review_ids:
        return {}
    rows = db.query(models.ReviewComment.review_id, func.count(models.ReviewComment.id)).filter(
        models.ReviewComment.review_id.in_(review_ids)
    ).group_by(models.ReviewComment.review_id).all()
    return {review_id: count for review_id, count in rows}


def create_review(db: Session, review_in: schemas.ReviewCreate) -> models.Review:
    get_project(db, review_in.project_id)
    if review_in.epic_id:
        epic = _get_or_raise(db, models.Epic, "Epic", review_in.epic_id)
        if epic.project_id != review_in.project_id:
            raise ValidationError("Review epic must belong to the same project.", epic_id=review_in.epic_id)

    now = utc_now_iso()
    review = models.Review(**review_in.model_dump(), version=1, created_at=now, updated_at=now)
    db.add(review)
    db.commit()
    db.refresh(review)
    review.comment_count = 0
    logger.info(f"Created review {review.id} in project {review.project_id}")
    return review


def get_review(db: Session, review_id: str) -> models.Review:
    review = _get_or_raise(db, models.Review, "Review", review_id)
    review.comment_count = _comment_counts(db, [review_id]).get(review_id, 0)
    return review


def list_reviews(
    db: Session,
    project_id: str,
    status: Optional[str] = None,
    epic_id: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    query = db.query(models.Review).filter(models.Review.project_id == project_id)
    if status:
        query = query.filter(models.Review.status == status)
    if epic_id:
        query = query.filter(models.Review.epic_id == epic_id)

    page = _paginate(query.order_by(models.Review.created_at.desc(), models.Review.id.desc()), limit, offset)
    counts = _comment_counts(db, [review.id for review in page.items])
    for review in page.items:
        review.comment_count = counts.get(review.id, 0)
    return page


def update_review(
    db: Session, review_id: str, review_in: schemas.ReviewUpdate, expected_version: int
) -> models.Review:
    fields = review_in.model_dump(exclude_unset=True)
    _reject_nulls(models.Review, "Review", review_id, fields)
    review = apply_versioned_update(db, models.Review, "Review", review_id, fields, expected_version)
    db.commit()
    db.refresh(review)
    review.comment_count = _comment_counts(db, [review_id]).get(review_id, 0)
    logger.info(f"Updated review {review_id}")
    return review


def delete_review(db: Session, review_id: str) -> None:
    """Delete a review with its comments and their targets."""
    review = _get_or_raise(db, models.Review, "Review", review_id)
    comment_ids = select(models.ReviewComment.id).where(models.ReviewComment.review_id == review_id)
    db.execute(delete(models.ReviewCommentTarget).where(models.ReviewCommentTarget.comment_id.in_(comment_ids)))
    db.execute(
        delete(models.ReviewComment).where(models.ReviewComment.review_id == review_id),
        execution_options={"synchronize_session": False},
    )
    db.delete(review)
    db.commit()
    logger.info(f"Deleted review {review_id}")


# ============================================================================
# Review Comment CRUD Operations
# ============================================================================

def create_review_comment(
    db: Session,
    comment_in: schemas.ReviewCommentCreate,
    target_agent_ids: Optional[list[str]] = None,
) -> models.ReviewComment:
    """
    Create a comment and its target agents atomically.

    Raises:
        NotFoundError: If the review or parent comment does not exist
        ValidationError: If the parent is on another review or a target agent is unknown
        StorageError: If the raw transaction cannot be started
    """
    _get_or_raise(db, models.Review, "Review", comment_in.review_id)
    if comment_in.parent_id:
        parent = _get_or_raise(db, models.ReviewComment, "ReviewComment", comment_in.parent_id)
        if parent.review_id != comment_in.review_id:
            raise ValidationError("Reply must belong to the same review.", parent_id=comment_in.parent_id)

    targets = list(dict.fromkeys(target_agent_ids or []))
    if targets:
        known = {row.id for row in db.query(models.Agent.id).filter(models.Agent.id.in_(targets)).all()}
        missing = [agent_id for agent_id in targets if agent_id not in known]
        if missing:
            raise ValidationError("Unknown target agent ids provided", missing=missing)

    now = utc_now_iso()
    with ImmediateTransaction(db):
        comment = models.ReviewComment(**comment_in.model_dump(), version=1, created_at=now, updated_at=now)
        db.add(comment)
        db.flush()
        for agent_id in targets:
            db.add(models.ReviewCommentTarget(comment_id=comment.id, agent_id=agent_id, created_at=now))

    db.refresh(comment)
    logger.info(f"Created review comment {comment.id} on review {comment.review_id} ({len(targets)} targets)")
    return comment


def get_review_comment(db: Session, comment_id: str) -> models.ReviewComment:
    return _get_or_raise(db, models.ReviewComment, "ReviewComment", comment_id)


def update_review_comment(
    db: Session, comment_id: str, comment_in: schemas.ReviewCommentUpdate, expected_version: int
) -> models.ReviewComment:
    """
    Versioned comment update that skips no-op edits.

    When neither content nor status would change, the stored comment is
    returned untouched: no write, no version bump, no timestamp change.
    A content change also stamps edited_at.
    """
    current = db.get(models.ReviewComment, comment_id, populate_existing=True)
    if current is None:
        raise NotFoundError("ReviewComment", comment_id)
    if current.version != expected_version:
        raise OptimisticLockError("ReviewComment", comment_id, expected_version, current.version)

    fields = {}
    if comment_in.content is not None and comment_in.content != current.content:
        fields["content"] = comment_in.content
        fields["edited_at"] = next_timestamp(current.updated_at)
    if comment_in.status is not None and comment_in.status != current.status:
        fields["status"] = comment_in.status

    if not fields:
        logger.debug(f"Skipped review comment {comment_id} update (no changes)")
        return current

    comment = apply_versioned_update(db, models.ReviewComment, "ReviewComment", comment_id, fields, expected_version)
    db.commit()
    db.refresh(comment)
    logger.info(f"Updated review comment {comment_id}")
    return comment


_PARENT_UNSET = object()


def list_review_comments(
    db: Session,
    review_id: str,
    status: Optional[str] = None,
    file_path: Optional[str] = None,
    parent_id=_PARENT_UNSET,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.ListResult:
    """
    List a review's comments, newest first, with author and target agent names.

    ``parent_id=None`` keeps only top-level comments; a comment id keeps its
    replies; leaving it out keeps everything. Author names and targets are
    loaded with one query each for the whole page.
    """
    query = db.query(models.ReviewComment).filter(models.ReviewComment.review_id == review_id)
    if status:
        query = query.filter(models.ReviewComment.status == status)
    if file_path:
        query = query.filter(models.ReviewComment.file_path == file_path)
    if parent_id is None:
        query = query.filter(models.ReviewComment.parent_id.is_(None))
    elif parent_id is not _PARENT_UNSET:
        query = query.filter(models.ReviewComment.parent_id == parent_id)

    page = _paginate(
        query.order_by(models.ReviewComment.created_at.desc(), models.ReviewComment.id.desc()), limit, offset
    )
    comments = page.items
    if not comments:
        return page

    author_ids = {c.author_agent_id for c in comments if c.author_agent_id}
    agent_names = {}
    if author_ids:
        agent_names = dict(db.query(models.Agent.id, models.Agent.name).filter(models.Agent.id.in_(author_ids)).all())

    target_rows = db.query(
        models.ReviewCommentTarget.comment_id,
        models.ReviewCommentTarget.agent_id,
        models.Agent.name,
    ).outerjoin(
        models.Agent, models.Agent.id == models.ReviewCommentTarget.agent_id
    ).filter(
        models.ReviewCommentTarget.comment_id.in_([c.id for c in comments])
    ).order_by(models.ReviewCommentTarget.created_at).all()

    targets_by_comment: dict[str, list[schemas.ReviewCommentTargetAgent]] = {}
    for comment_id, agent_id, name in target_rows:
        targets_by_comment.setdefault(comment_id, []).append(
            schemas.ReviewCommentTargetAgent(agent_id=agent_id, name=name or "Unknown")
        )

    for comment in comments:
        comment.author_agent_name = agent_names.get(comment.author_agent_id) if comment.author_agent_id else None
        comment.target_agents = targets_by_comment.get(comment.id, [])
    return page


def add_review_comment_targets(db: Session, comment_id: str, agent_ids: list[str]) -> list[models.ReviewCommentTarget]:
    get_review_comment(db, comment_id)
    now = utc_now_iso()
    targets = [
        models.ReviewCommentTarget(comment_id=comment_id, agent_id=agent_id, created_at=now)
        for agent_id in dict.fromkeys(agent_ids)
    ]
    db.add_all(targets)
    _commit_or_conflict(db, "Unknown target agent.", comment_id=comment_id)
    logger.info(f"Added {len(targets)} targets to review comment {comment_id}")
    return targets


def get_review_comment_targets(db: Session, comment_id: str) -> list[models.ReviewCommentTarget]:
    return db.query(models.ReviewCommentTarget).filter(
        models.ReviewCommentTarget.comment_id == comment_id
    ).order_by(models.ReviewCommentTarget.created_at).all()


def delete_review_comment(db: Session, comment_id: str) -> None:
    """Delete a comment with its replies and targets."""
    reply_ids = select(models.ReviewComment.id).where(models.ReviewComment.parent_id == comment_id)
    db.execute(delete(models.ReviewCommentTarget).where(or_(
        models.ReviewCommentTarget.comment_id == comment_id,
        models.ReviewCommentTarget.comment_id.in_(reply_ids),
    )))
    db.execute(
        delete(models.ReviewComment).where(models.ReviewComment.parent_id == comment_id),
        execution_options={"synchronize_session": False},
    )
    db.execute(
        delete(models.ReviewComment).where(models.ReviewComment.id == comment_id),
        execution_options={"synchronize_session": False},
    )
    db.commit()


def delete_non_resolved_comments(db: Session, review_id: str) -> int:
    """
    Delete every comment of a review that is not resolved or wont_fix.

    Returns:
        Number of comments deleted
    """
    doomed = and_(
        models.ReviewComment.review_id == review_id,
        models.ReviewComment.status.not_in(SETTLED_COMMENT_STATUSES),
    )
    doomed_ids = [row.id for row in db.query(models.ReviewComment.id).filter(doomed).all()]
    if not doomed_ids:
        return 0

    # Replies of a deleted comment go with it through the parent_id cascade
    db.execute(delete(models.ReviewCommentTarget).where(models.ReviewCommentTarget.comment_id.in_(doomed_ids)))
    result = db.execute(
        delete(models.ReviewComment).where(models.ReviewComment.id.in_(doomed_ids)),
        execution_options={"synchronize_session": False},
    )
    db.commit()
    logger.info(f"Deleted {result.rowcount} unresolved comments from review {review_id}")
    return result.rowcount


# ============================================================================
# Watcher / Subscriber CRUD Operations
# ============================================================================

def list_watchers(db: Session, project_id: str) -> list[models.TerminalWatcher]:
    return db.query(models.TerminalWatcher).filter(
        models.TerminalWatcher.project_id == project_id
    ).order_by(models.TerminalWatcher.created_at.desc()).all()


def get_watcher(db: Session, watcher_id: str) -> Optional[models.TerminalWatcher]:
    return db.get(models.TerminalWatcher, watcher_id)


def create_watcher(db: Session, watcher_in: schemas.WatcherCreate) -> models.TerminalWatcher:
    get_project(db, watcher_in.project_id)
    now = utc_now_iso()
    watcher = models.TerminalWatcher(**watcher_in.model_dump(), created_at=now, updated_at=now)
    db.add(watcher)
    _commit_or_conflict(
        db, f"A watcher already emits '{watcher_in.event_name}' in this project.", event_name=watcher_in.event_name
    )
    db.refresh(watcher)
    logger.info(f"Created watcher {watcher.id} ({watcher.event_name})")
    return watcher


def update_watcher(db: Session, watcher_id: str, watcher_in: schemas.WatcherUpdate) -> models.TerminalWatcher:
    watcher = get_watcher(db, watcher_id)
    if watcher is None:
        raise NotFoundError("Watcher", watcher_id)
    fields = watcher_in.model_dump(exclude_unset=True)
    _reject_nulls(models.TerminalWatcher, "Watcher", watcher_id, fields)
    _apply_fields(watcher, fields)
    watcher.updated_at = next_timestamp(watcher.updated_at)
    _commit_or_conflict(db, "A watcher already emits this event in this project.", watcher_id=watcher_id)
    db.refresh(watcher)
    return watcher


def delete_watcher(db: Session, watcher_id: str) -> None:
    db.execute(delete(models.TerminalWatcher).where(models.TerminalWatcher.id == watcher_id))
    db.commit()


def list_enabled_watchers(db: Session) -> list[models.TerminalWatcher]:
    return db.query(models.TerminalWatcher).filter(
        models.TerminalWatcher.enabled.is_(True)
    ).order_by(models.TerminalWatcher.created_at.desc()).all()


def list_subscribers(db: Session, project_id: str) -> list[models.AutomationSubscriber]:
    return db.query(models.AutomationSubscriber).filter(
        models.AutomationSubscriber.project_id == project_id
    ).order_by(models.AutomationSubscriber.created_at.desc()).all()


def get_subscriber(db: Session, subscriber_id: str) -> Optional[models.AutomationSubscriber]:
    return db.get(models.AutomationSubscriber, subscriber_id)


def create_subscriber(db: Session, subscriber_in: schemas.SubscriberCreate) -> models.AutomationSubscriber:
    get_project(db, subscriber_in.project_id)
    now = utc_now_iso()
    subscriber = models.AutomationSubscriber(**subscriber_in.model_dump(), created_at=now, updated_at=now)
    db.add(subscriber)
    db.commit()
    db.refresh(subscriber)
    logger.info(f"Created subscriber {subscriber.id} on event {subscriber.event_name}")
    return subscriber


def update_subscriber(
    db: Session, subscriber_id: str, subscriber_in: schemas.SubscriberUpdate
) -> models.AutomationSubscriber:
    subscriber = get_subscriber(db, subscriber_id)
    if subscriber is None:
        raise NotFoundError("Subscriber", subscriber_id)
    fields = subscriber_in.model_dump(exclude_unset=True)
    _reject_nulls(models.AutomationSubscriber, "Subscriber", subscriber_id, fields)
    _apply_fields(subscriber, fields)
    subscriber.updated_at = next_timestamp(subscriber.updated_at)
    db.commit()
    db.refresh(subscriber)
    return subscriber


def delete_subscriber(db: Session, subscriber_id: str) -> None:
    db.execute(delete(models.AutomationSubscriber).where(models.AutomationSubscriber.id == subscriber_id))
    db.commit()


def find_subscribers_by_event_name(db: Session, project_id: str, event_name: str) -> list[models.AutomationSubscriber]:
    """Enabled subscribers of a project listening to ``event_name``, newest first."""
    return db.query(models.AutomationSubscriber).filter(
        models.AutomationSubscriber.project_id == project_id,
        models.AutomationSubscriber.event_name == event_name,
        models.AutomationSubscriber.enabled.is_(True),
    ).order_by(models.AutomationSubscriber.created_at.desc()).all()


# ============================================================================
# Guest CRUD Operations
# ============================================================================

def create_guest(db: Session, guest_in: schemas.GuestCreate) -> models.Guest:
    """
    Register a guest terminal.

    Raises:
        ConflictError: If the project already has a guest with this name
            (case-insensitive) or the tmux session is already registered
    """
    get_project(db, guest_in.project_id)

    if get_guest_by_name(db, guest_in.project_id, guest_in.name) is not None:
        raise ConflictError(
            f'Guest with name "{guest_in.name}" already exists in project',
            project_id=guest_in.project_id,
            name=guest_in.name,
        )
    if get_guest_by_tmux_session_id(db, guest_in.tmux_session_id) is not None:
        raise ConflictError(
            f'Guest with tmux session "{guest_in.tmux_session_id}" already exists',
            tmux_session_id=guest_in.tmux_session_id,
        )

    now = utc_now_iso()
    guest = models.Guest(
        project_id=guest_in.project_id,
        name=guest_in.name,
        description=guest_in.description,
        tmux_session_id=guest_in.tmux_session_id,
        last_seen_at=guest_in.last_seen_at or now,
        created_at=now,
        updated_at=now,
    )
    db.add(guest)
    _commit_or_conflict(db, "Guest already registered.", name=guest_in.name)
    db.refresh(guest)
    logger.info(f"Created guest {guest.id} ({guest.name}) in project {guest.project_id}")
    return guest


def get_guest(db: Session, guest_id: str) -> models.Guest:
    return _get_or_raise(db, models.Guest, "Guest", guest_id)


def get_guest_by_name(db: Session, project_id: str, name: str) -> Optional[models.Guest]:
    return db.query(models.Guest).filter(
        models.Guest.project_id == project_id,
        func.lower(models.Guest.name) == name.lower(),
    ).first()


def get_guest_by_tmux_session_id(db: Session, tmux_session_id: str) -> Optional[models.Guest]:
    return db.query(models.Guest).filter(models.Guest.tmux_session_id == tmux_session_id).first()


def get_guests_by_id_prefix(db: Session, prefix: str) -> list[models.Guest]:
    return db.query(models.Guest).filter(models.Guest.id.like(f"{_escape_like(prefix)}%", escape="\\")).all()


def list_guests(db: Session, project_id: str) -> list[models.Guest]:
    return db.query(models.Guest).filter(
        models.Guest.project_id == project_id
    ).order_by(models.Guest.name).all()


def list_all_guests(db: Session) -> list[models.Guest]:
    return db.query(models.Guest).order_by(models.Guest.created_at).all()


def update_guest_last_seen(db: Session, guest_id: str, last_seen_at: str) -> models.Guest:
    guest = get_guest(db, guest_id)
    guest.last_seen_at = last_seen_at
    guest.updated_at = next_timestamp(guest.updated_at)
    db.commit()
    db.refresh(guest)
    return guest


def delete_guest(db: Session, guest_id: str) -> None:
    guest = get_guest(db, guest_id)
    db.delete(guest)
    db.commit()
    logger.info(f"Deleted guest {guest_id}")
