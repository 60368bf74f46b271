"""Tests for archived filtering and hidden-subtree exclusion in epic listings."""
import pytest

from devchain_core import crud, schemas
from devchain_core.errors import ValidationError


def _titles(page):
    return sorted(epic.title for epic in page.items)


@pytest.fixture
def hidden_status(db, project):
    return crud.create_status(db, schemas.StatusCreate(
        project_id=project.id, label="Parked", color="#000000", position=10, mcp_hidden=True,
    ))


@pytest.fixture
def archived_status(db, project):
    return crud.create_status(db, schemas.StatusCreate(
        project_id=project.id, label="Archived", color="#999999", position=11,
    ))


class TestHiddenSubtree:
    def test_hidden_parent_hides_visible_child(self, db, project, make_epic, hidden_status):
        """A in a hidden status, B visible under A: both drop out; unrelated C stays."""
        a = make_epic(title="A", status_id=hidden_status.id)
        make_epic(title="B", parent_id=a.id)
        make_epic(title="C")

        page = crud.list_project_epics(db, project.id, exclude_mcp_hidden=True)

        assert _titles(page) == ["C"]
        assert page.total == 1

    def test_flag_off_lists_everything(self, db, project, make_epic, hidden_status):
        a = make_epic(title="A", status_id=hidden_status.id)
        make_epic(title="B", parent_id=a.id)
        make_epic(title="C")

        assert _titles(crud.list_project_epics(db, project.id)) == ["A", "B", "C"]

    def test_hidden_child_only_hides_itself(self, db, project, make_epic, hidden_status):
        root = make_epic(title="Root")
        make_epic(title="Hidden child", parent_id=root.id, status_id=hidden_status.id)
        make_epic(title="Visible child", parent_id=root.id)

        page = crud.list_project_epics(db, project.id, exclude_mcp_hidden=True)
        assert _titles(page) == ["Root", "Visible child"]

    def test_toggling_status_flag_applies_immediately(self, db, project, make_epic, statuses):
        """Visibility is derived from the status at query time."""
        a = make_epic(title="A")
        make_epic(title="B", parent_id=a.id)

        crud.update_status(db, statuses[0].id, schemas.StatusUpdate(mcp_hidden=True))
        assert crud.list_project_epics(db, project.id, exclude_mcp_hidden=True).items == []

        crud.update_status(db, statuses[0].id, schemas.StatusUpdate(mcp_hidden=False))
        assert _titles(crud.list_project_epics(db, project.id, exclude_mcp_hidden=True)) == ["A", "B"]

    def test_assigned_epics_respect_hidden_subtree(self, db, project, make_epic, hidden_status, agent):
        a = make_epic(title="A", status_id=hidden_status.id)
        make_epic(title="B", parent_id=a.id, agent_id=agent.id)
        make_epic(title="C", agent_id=agent.id)

        page = crud.list_assigned_epics(db, project.id, "builder", exclude_mcp_hidden=True)
        assert _titles(page) == ["C"]

    def test_children_listing_respects_hidden_subtree(self, db, project, make_epic, hidden_status):
        root = make_epic(title="Root")
        make_epic(title="Hidden", parent_id=root.id, status_id=hidden_status.id)
        make_epic(title="Shown", parent_id=root.id)

        result = crud.list_sub_epics_for_parents(db, project.id, [root.id], exclude_mcp_hidden=True)
        assert [epic.title for epic in result[root.id]] == ["Shown"]


class TestArchivedFilter:
    def test_active_excludes_archived(self, db, project, make_epic, archived_status):
        make_epic(title="Live")
        make_epic(title="Old", status_id=archived_status.id)

        assert _titles(crud.list_project_epics(db, project.id, list_type="active")) == ["Live"]
        assert _titles(crud.list_project_epics(db, project.id, list_type="archived")) == ["Old"]
        assert _titles(crud.list_project_epics(db, project.id, list_type="all")) == ["Live", "Old"]

    def test_label_match_is_case_insensitive(self, db, project, make_epic):
        status = crud.create_status(db, schemas.StatusCreate(
            project_id=project.id, label="ARCHIVE bin", color="#111111", position=12,
        ))
        make_epic(title="Binned", status_id=status.id)

        assert _titles(crud.list_project_epics(db, project.id, list_type="archived")) == ["Binned"]

    def test_unknown_list_type_rejected(self, db, project):
        with pytest.raises(ValidationError):
            crud.list_project_epics(db, project.id, list_type="deleted")


class TestProjectEpicSearch:
    def test_search_matches_title_and_description(self, db, project, make_epic):
        make_epic(title="Login page")
        make_epic(title="Other", description="fix LOGIN redirect")
        make_epic(title="Unrelated")

        assert _titles(crud.list_project_epics(db, project.id, q="login")) == ["Login page", "Other"]

    def test_search_by_id_prefix(self, db, project, make_epic):
        epic = make_epic(title="Target")
        make_epic(title="Noise")

        page = crud.list_project_epics(db, project.id, q=epic.id[:8])
        assert [e.id for e in page.items] == [epic.id]

    def test_parent_only(self, db, project, make_epic):
        root = make_epic(title="Root")
        make_epic(title="Child", parent_id=root.id)

        assert _titles(crud.list_project_epics(db, project.id, parent_only=True)) == ["Root"]

    def test_pagination_reports_total(self, db, project, make_epic):
        for i in range(5):
            make_epic(title=f"E{i}")

        page = crud.list_project_epics(db, project.id, limit=2, offset=2)
        assert page.total == 5
        assert len(page.items) == 2
        assert page.limit == 2
        assert page.offset == 2

    def test_zero_limit_returns_empty_page(self, db, project, make_epic):
        make_epic(title="A")
        make_epic(title="B")

        page = crud.list_project_epics(db, project.id, limit=0)
        assert page.items == []
        assert page.limit == 0
        assert page.total == 2

    def test_negative_paging_rejected(self, db, project):
        with pytest.raises(ValidationError):
            crud.list_project_epics(db, project.id, limit=-1)
        with pytest.raises(ValidationError):
            crud.list_project_epics(db, project.id, offset=-1)
