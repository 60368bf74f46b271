"""Parent and agent checks for epics.

Epics form a one-level hierarchy: a root epic may have sub-epics, and a
sub-epic may not have children of its own. All checks run before any write.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError, ValidationError

logger = logging.getLogger("devchain-core.hierarchy_validation")


def ensure_valid_epic_parent(
    db: Session,
    project_id: str,
    parent_id: Optional[str],
    child_id: Optional[str] = None,
) -> None:
    """Validate ``parent_id`` as the parent of an epic in ``project_id``.

    Args:
        db: Database session
        project_id: Project of the epic being created or reparented
        parent_id: Proposed parent; nothing is checked when empty
        child_id: Id of the epic being reparented, None on create

    Raises:
        ValidationError: Self-parent, cross-project parent, sub-epic parent,
            a descendant of the child proposed as its parent, or a child
            that already has sub-epics
        NotFoundError: If the parent epic does not exist
    """
    if not parent_id:
        return

    if child_id and parent_id == child_id:
        raise ValidationError("An epic cannot be its own parent.", epic_id=child_id, parent_id=parent_id)

    parent = db.get(models.Epic, parent_id)
    if parent is None:
        raise NotFoundError("Epic", parent_id)

    if parent.project_id != project_id:
        raise ValidationError(
            "Parent epic must belong to the same project.",
            project_id=project_id,
            parent_project_id=parent.project_id,
            parent_id=parent_id,
        )

    if parent.parent_id:
        raise ValidationError(
            "Cannot assign a sub-epic as a parent (one-level hierarchy).",
            parent_id=parent_id,
        )

    if child_id:
        # Direct children are the only descendants at depth two
        child_ids = {
            row.id
            for row in db.query(models.Epic.id).filter(models.Epic.parent_id == child_id).all()
        }
        if parent_id in child_ids:
            raise ValidationError(
                "Cannot assign a descendant as the parent epic.",
                parent_id=parent_id,
                epic_id=child_id,
            )
        if child_ids:
            raise ValidationError(
                "An epic with sub-epics cannot become a sub-epic (one-level hierarchy).",
                parent_id=parent_id,
                epic_id=child_id,
            )


def ensure_valid_agent(db: Session, project_id: str, agent_id: Optional[str]) -> None:
    """Check that ``agent_id`` (when given) belongs to ``project_id``."""
    if not agent_id:
        return

    agent = db.get(models.Agent, agent_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)

    if agent.project_id != project_id:
        raise ValidationError(
            "Agent must belong to the same project as the epic.",
            project_id=project_id,
            agent_project_id=agent.project_id,
            agent_id=agent_id,
        )
