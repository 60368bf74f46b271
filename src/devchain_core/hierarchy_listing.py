"""Top-N sub-epics for many parents in a single ranked query."""
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased

from . import models
from .config import get_settings
from .errors import ValidationError
from .tags import EPIC_TAGS, load_tag_names
from .visibility import archived_filter, hidden_subtree_exclusion

logger = logging.getLogger("devchain-core.hierarchy_listing")


def list_children_for_parents(
    db: Session,
    project_id: str,
    parent_ids: list[str],
    limit_per_parent: Optional[int] = None,
    list_type: Optional[str] = "active",
    exclude_mcp_hidden: bool = False,
) -> dict[str, list[models.Epic]]:
    """
    Fetch the most recently updated children of each parent epic.

    Children are ranked per parent by updated_at desc, then id desc, and
    rows ranked past ``limit_per_parent`` are dropped. The archived and
    hidden-subtree filters match list_project_epics.

    Args:
        db: Database session
        project_id: Project owning the parents
        parent_ids: Parent epic ids; duplicates are ignored
        limit_per_parent: Max children per parent (default from settings)
        list_type: "active", "archived" or "all"
        exclude_mcp_hidden: Drop hidden epics and their subtrees

    Returns:
        Dict keyed by every requested parent id, each holding its children
        (possibly none) with ``tags`` populated
    """
    if not parent_ids:
        return {}

    if limit_per_parent is None:
        limit_per_parent = get_settings().default_children_per_parent
    elif limit_per_parent < 0:
        raise ValidationError("limit_per_parent must not be negative.", limit_per_parent=limit_per_parent)
    result: dict[str, list[models.Epic]] = {parent_id: [] for parent_id in parent_ids}

    rank = func.row_number().over(
        partition_by=models.Epic.parent_id,
        order_by=(models.Epic.updated_at.desc(), models.Epic.id.desc()),
    ).label("rn")

    conditions = [
        models.Epic.project_id == project_id,
        models.Epic.parent_id.in_(list(result)),
    ]
    status_condition = archived_filter(list_type)
    if status_condition is not None:
        conditions.append(status_condition)
    if exclude_mcp_hidden:
        conditions.append(hidden_subtree_exclusion(project_id))

    ranked = (
        select(models.Epic, rank)
        .join(models.Status, models.Status.id == models.Epic.status_id)
        .where(*conditions)
        .subquery("ranked")
    )
    ranked_epic = aliased(models.Epic, ranked)

    children = db.execute(
        select(ranked_epic)
        .where(ranked.c.rn <= limit_per_parent)
        .order_by(ranked.c.parent_id, ranked.c.rn)
    ).scalars().all()

    tags_map = load_tag_names(db, EPIC_TAGS, [child.id for child in children])
    for child in children:
        child.tags = tags_map.get(child.id, [])
        result[child.parent_id].append(child)

    logger.debug(
        f"Loaded {len(children)} children for {len(result)} parents in project {project_id}"
    )
    return result
