"""Listing filters for epics: archived state and hidden subtrees.

Neither filter is denormalized onto the epic rows. Both are derived from the
epic's status at query time, so relabelling a status or toggling its
mcp_hidden flag changes what listings return immediately.
"""
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import aliased

from . import models
from .errors import ValidationError


LIST_TYPES = ("active", "archived", "all")

ARCHIVED_LABEL_PATTERN = "%archiv%"


def hidden_subtree_exclusion(project_id: str):
    """Build a WHERE predicate dropping hidden epics and everything under them.

    The recursive CTE starts from epics whose status has mcp_hidden set and
    repeatedly adds epics whose parent is already in the set. The predicate
    applies to ``models.Epic`` and is meant for queries scoped to
    ``project_id``.
    """
    hidden = aliased(models.Epic, name="hidden_epic")
    hidden_status = aliased(models.Status, name="hidden_status")
    anchor = (
        select(hidden.id)
        .join(hidden_status, hidden.status_id == hidden_status.id)
        .where(hidden_status.mcp_hidden.is_(True), hidden.project_id == project_id)
    )
    excluded_tree = anchor.cte("excluded_tree", recursive=True)

    child = aliased(models.Epic, name="child_epic")
    excluded_tree = excluded_tree.union_all(
        select(child.id)
        .join(excluded_tree, child.parent_id == excluded_tree.c.id)
        .where(child.project_id == project_id)
    )
    return models.Epic.id.not_in(select(excluded_tree.c.id))


def archived_filter(list_type: Optional[str]):
    """Predicate on ``models.Status`` for the active/archived/all listing types.

    A status counts as archived when its label contains "archiv" in any case
    (Archive, Archived, ...). Returns None for "all".
    """
    list_type = (list_type or "active").lower()
    if list_type not in LIST_TYPES:
        raise ValidationError(f"Unknown epic list type: {list_type}", type=list_type)

    label = func.lower(models.Status.label)
    if list_type == "active":
        return label.not_like(ARCHIVED_LABEL_PATTERN)
    if list_type == "archived":
        return label.like(ARCHIVED_LABEL_PATTERN)
    return None
