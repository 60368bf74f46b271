"""Create a project pre-populated from a template, all or nothing."""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .database import ImmediateTransaction
from .errors import ConflictError, ValidationError
from .skill_sources import seed_sources_for_project
from .tags import PROMPT_TAGS, replace_tags
from .versioning import utc_now_iso

logger = logging.getLogger("devchain-core.template_import")


def create_project_with_template(
    db: Session,
    project_in: schemas.ProjectCreate,
    template: schemas.TemplateImportPayload,
) -> schemas.CreateProjectWithTemplateResult:
    """
    Create a project and import statuses, prompts, profiles and agents into it.

    Inserts run in order: project, statuses (by position), prompts with
    tags, profiles, then agents with their profile ids remapped to the new
    profiles. Everything happens inside one BEGIN IMMEDIATE transaction on
    the raw connection; any failure rolls back every row of this call,
    the project row included.

    Args:
        db: Database session with no pending writes
        project_in: New project fields
        template: Blueprint to import

    Returns:
        The project, per-kind import counts and template id mappings

    Raises:
        ValidationError: If an agent references a profile absent from the template
        ConflictError: If a project already exists at the root path
        StorageError: If the raw transaction cannot be started
    """
    now = utc_now_iso()
    mappings = schemas.TemplateMappings()

    with ImmediateTransaction(db):
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
            raise ConflictError(
                "A project already exists at this root path.", root_path=project_in.root_path
            ) from exc

        for status_in in sorted(template.statuses, key=lambda s: s.position):
            status = models.Status(
                project_id=project.id,
                label=status_in.label,
                color=status_in.color,
                position=status_in.position,
                mcp_hidden=status_in.mcp_hidden,
                created_at=now,
                updated_at=now,
            )
            db.add(status)
            db.flush()
            if status_in.id:
                mappings.status_id_map[status_in.id] = status.id

        for prompt_in in template.prompts:
            prompt = models.Prompt(
                project_id=project.id,
                title=prompt_in.title,
                content=prompt_in.content or "",
                version=1,
                created_at=now,
                updated_at=now,
            )
            db.add(prompt)
            db.flush()
            replace_tags(db, PROMPT_TAGS, prompt.id, project.id, prompt_in.tags)
            if prompt_in.id:
                mappings.prompt_id_map[prompt_in.id] = prompt.id

        for profile_in in template.profiles:
            profile = models.AgentProfile(
                project_id=project.id,
                name=profile_in.name,
                provider_id=profile_in.provider_id,
                family_slug=profile_in.family_slug,
                options=profile_in.options,
                instructions=profile_in.instructions,
                temperature_scaled=models.scale_temperature(profile_in.temperature),
                max_tokens=profile_in.max_tokens,
                created_at=now,
                updated_at=now,
            )
            db.add(profile)
            db.flush()
            if profile_in.id:
                mappings.profile_id_map[profile_in.id] = profile.id

        for agent_in in template.agents:
            new_profile_id = mappings.profile_id_map.get(agent_in.profile_id or "")
            if not new_profile_id:
                raise ValidationError(
                    f"Profile mapping missing for agent {agent_in.name}",
                    profile_id=agent_in.profile_id,
                )
            agent = models.Agent(
                project_id=project.id,
                profile_id=new_profile_id,
                name=agent_in.name,
                description=agent_in.description,
                created_at=now,
                updated_at=now,
            )
            db.add(agent)
            db.flush()
            if agent_in.id:
                mappings.agent_id_map[agent_in.id] = agent.id

        seed_sources_for_project(db, project.id)

    db.refresh(project)
    logger.info(
        f"Created project {project.id} from template: {len(template.statuses)} statuses, "
        f"{len(template.prompts)} prompts, {len(template.profiles)} profiles, "
        f"{len(template.agents)} agents"
    )

    return schemas.CreateProjectWithTemplateResult(
        project=schemas.ProjectRead.model_validate(project),
        imported=schemas.ImportedCounts(
            prompts=len(template.prompts),
            profiles=len(template.profiles),
            agents=len(template.agents),
            statuses=len(template.statuses),
        ),
        mappings=mappings,
        initial_prompt_set=False,
    )
