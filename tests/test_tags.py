"""Tests for tag resolution, replacement and batch loading."""
from devchain_core import crud, models, schemas
from devchain_core.tags import EPIC_TAGS, load_tag_names, normalize_tag_names, replace_tags


def _tag_count(db, name=None):
    query = db.query(models.Tag)
    if name is not None:
        query = query.filter(models.Tag.name == name)
    return query.count()


class TestNormalizeTagNames:
    def test_trims_and_deduplicates_in_order(self):
        assert normalize_tag_names(["a", "a", " b ", "", "  "]) == ["a", "b"]

    def test_none_is_empty(self):
        assert normalize_tag_names(None) == []


class TestReplaceTags:
    def test_duplicate_and_padded_names_collapse(self, db, make_epic):
        """["a", "a", " b "] yields exactly tags a and b."""
        epic = make_epic(tags=["a", "a", " b "])

        assert crud.get_epic(db, epic.id).tags == ["a", "b"]
        assert _tag_count(db) == 2

    def test_second_entity_reuses_project_tag(self, db, make_epic):
        make_epic(title="First", tags=["a"])
        make_epic(title="Second", tags=["a"])

        assert _tag_count(db, "a") == 1

    def test_replace_is_exact(self, db, make_epic):
        """Replacing drops tags not in the new list."""
        epic = make_epic(tags=["a", "b"])
        crud.update_epic(db, epic.id, schemas.EpicUpdate(tags=["b", "c"]), expected_version=1)

        assert crud.get_epic(db, epic.id).tags == ["b", "c"]

    def test_empty_list_clears_tags(self, db, make_epic):
        epic = make_epic(tags=["a"])
        crud.update_epic(db, epic.id, schemas.EpicUpdate(tags=[]), expected_version=1)

        assert crud.get_epic(db, epic.id).tags == []

    def test_omitted_tags_are_left_alone(self, db, make_epic):
        epic = make_epic(tags=["keep"])
        crud.update_epic(db, epic.id, schemas.EpicUpdate(title="Renamed"), expected_version=1)

        assert crud.get_epic(db, epic.id).tags == ["keep"]

    def test_existing_global_tag_is_reused(self, db, project, make_epic):
        """A project epic tagged with a global tag's name links the global tag."""
        global_tag = crud.create_tag(db, schemas.TagCreate(name="shared"))
        epic = make_epic(tags=["shared"])

        linked = db.execute(
            EPIC_TAGS.table.select().where(EPIC_TAGS.owner_column == epic.id)
        ).all()
        assert [row.tag_id for row in linked] == [global_tag.id]
        assert _tag_count(db, "shared") == 1

    def test_project_tag_wins_over_global(self, db, project, make_epic):
        crud.create_tag(db, schemas.TagCreate(name="area"))
        project_tag = crud.create_tag(db, schemas.TagCreate(project_id=project.id, name="area"))

        epic = make_epic()
        replace_tags(db, EPIC_TAGS, epic.id, project.id, ["area"])
        db.commit()

        linked = db.execute(
            EPIC_TAGS.table.select().where(EPIC_TAGS.owner_column == epic.id)
        ).all()
        assert [row.tag_id for row in linked] == [project_tag.id]

    def test_new_tags_take_project_scope(self, db, project, make_epic):
        make_epic(tags=["fresh"])

        tag = db.query(models.Tag).filter(models.Tag.name == "fresh").one()
        assert tag.project_id == project.id

    def test_global_prompt_creates_global_tag(self, db, project):
        """Entities without a project create global tags and ignore project ones."""
        crud.create_tag(db, schemas.TagCreate(project_id=project.id, name="style"))
        crud.create_prompt(db, schemas.PromptCreate(title="Global", content="x", tags=["style"]))

        scopes = sorted(
            str(tag.project_id) for tag in db.query(models.Tag).filter(models.Tag.name == "style").all()
        )
        assert scopes == sorted([project.id, "None"])


class TestLoadTagNames:
    def test_every_requested_id_has_an_entry(self, db, make_epic):
        """Entities without tags still appear with an empty list."""
        tagged = make_epic(tags=["z", "a"])
        untagged = make_epic()

        result = load_tag_names(db, EPIC_TAGS, [tagged.id, untagged.id])

        assert result == {tagged.id: ["a", "z"], untagged.id: []}

    def test_small_chunks_cover_all_ids(self, db, make_epic):
        """Chunked loading returns the same result as a single query."""
        epics = [make_epic(title=f"E{i}", tags=[f"t{i}"]) for i in range(5)]
        ids = [epic.id for epic in epics]

        chunked = load_tag_names(db, EPIC_TAGS, ids, chunk_size=2)
        single = load_tag_names(db, EPIC_TAGS, ids, chunk_size=100)

        assert chunked == single
        assert chunked[ids[3]] == ["t3"]

    def test_empty_request(self, db):
        assert load_tag_names(db, EPIC_TAGS, []) == {}
