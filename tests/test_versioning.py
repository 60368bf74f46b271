"""Tests for optimistic locking on versioned entities."""
import pytest

from devchain_core import crud, schemas
from devchain_core.errors import NotFoundError, OptimisticLockError, ValidationError
from devchain_core.versioning import next_timestamp, parse_timestamp


class TestEpicOptimisticLock:
    """Concurrent writers holding the same version."""

    def test_second_writer_with_stale_version_is_rejected(self, db, make_epic):
        """Two writers read version 1; the first wins, the second gets a lock error."""
        epic = make_epic(title="Original")

        first = crud.update_epic(db, epic.id, schemas.EpicUpdate(title="Writer A"), expected_version=1)
        assert first.version == 2

        with pytest.raises(OptimisticLockError) as exc_info:
            crud.update_epic(db, epic.id, schemas.EpicUpdate(title="Writer B"), expected_version=1)

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

        stored = crud.get_epic(db, epic.id)
        assert stored.title == "Writer A"
        assert stored.version == 2

    def test_retry_with_fresh_version_succeeds(self, db, make_epic):
        """After re-fetching, the losing writer can apply its change."""
        epic = make_epic()
        crud.update_epic(db, epic.id, schemas.EpicUpdate(title="A"), expected_version=1)

        current = crud.get_epic(db, epic.id)
        updated = crud.update_epic(db, epic.id, schemas.EpicUpdate(title="B"), expected_version=current.version)

        assert updated.title == "B"
        assert updated.version == 3

    def test_empty_update_still_bumps_version(self, db, make_epic):
        """An accepted update with no fields moves the version forward."""
        epic = make_epic()
        updated = crud.update_epic(db, epic.id, schemas.EpicUpdate(), expected_version=1)
        assert updated.version == 2

    def test_updated_at_strictly_increases(self, db, make_epic):
        """Each accepted update moves updated_at forward."""
        epic = make_epic()
        before = epic.updated_at

        stamps = [before]
        for version in range(1, 6):
            updated = crud.update_epic(
                db, epic.id, schemas.EpicUpdate(description=f"v{version}"), expected_version=version
            )
            stamps.append(updated.updated_at)

        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))

    def test_missing_epic_raises_not_found(self, db, project):
        with pytest.raises(NotFoundError):
            crud.update_epic(db, "missing", schemas.EpicUpdate(title="x"), expected_version=1)

    def test_data_round_trips_through_update(self, db, make_epic):
        """Structured data is stored as JSON and read back as a dict."""
        epic = make_epic(data={"points": 3})
        updated = crud.update_epic(
            db, epic.id, schemas.EpicUpdate(data={"points": 5, "risk": "low"}), expected_version=1
        )
        assert updated.data == {"points": 5, "risk": "low"}

    def test_null_title_rejected_before_write(self, db, make_epic):
        epic = make_epic(title="Keep")

        with pytest.raises(ValidationError, match="Epic title cannot be null"):
            crud.update_epic(db, epic.id, schemas.EpicUpdate(title=None), expected_version=1)

        stored = crud.get_epic(db, epic.id)
        assert (stored.title, stored.version) == ("Keep", 1)


class TestPromptAndRecordVersions:
    def test_prompt_stale_version_rejected(self, db, project):
        prompt = crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="P", content="c"))
        crud.update_prompt(db, prompt.id, schemas.PromptUpdate(content="c2"), expected_version=1)

        with pytest.raises(OptimisticLockError):
            crud.update_prompt(db, prompt.id, schemas.PromptUpdate(content="c3"), expected_version=1)

        assert crud.get_prompt(db, prompt.id).content == "c2"

    def test_prompt_null_content_rejected(self, db, project):
        prompt = crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="P", content="c"))

        with pytest.raises(ValidationError):
            crud.update_prompt(db, prompt.id, schemas.PromptUpdate(content=None), expected_version=1)

        assert crud.get_prompt(db, prompt.id).version == 1

    def test_record_update_bumps_version(self, db, make_epic):
        epic = make_epic()
        record = crud.create_record(db, schemas.RecordCreate(epic_id=epic.id, type="note", data={"a": 1}))

        updated = crud.update_record(db, record.id, schemas.RecordUpdate(data={"a": 2}), expected_version=1)

        assert updated.version == 2
        assert updated.data == {"a": 2}


class TestDocumentVersion:
    def test_version_check_is_optional(self, db, project):
        """Without an expected version the update is applied and still bumps the version."""
        document = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Notes"))

        updated = crud.update_document(db, document.id, schemas.DocumentUpdate(content_md="# Hi"))
        assert updated.version == 2

        with pytest.raises(OptimisticLockError):
            crud.update_document(db, document.id, schemas.DocumentUpdate(content_md="late", version=1))

    def test_null_slug_or_content_rejected(self, db, project):
        document = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Notes"))

        with pytest.raises(ValidationError):
            crud.update_document(db, document.id, schemas.DocumentUpdate(slug=None))
        with pytest.raises(ValidationError):
            crud.update_document(db, document.id, schemas.DocumentUpdate(content_md=None))

        stored = crud.get_document(db, document_id=document.id)
        assert (stored.slug, stored.version) == ("notes", 1)


class TestReviewCommentNoOp:
    """Review comments skip writes that change nothing."""

    @pytest.fixture
    def comment(self, db, project):
        review = crud.create_review(db, schemas.ReviewCreate(
            project_id=project.id, title="Review", base_ref="main", head_ref="feature",
        ))
        return crud.create_review_comment(db, schemas.ReviewCommentCreate(review_id=review.id, content="Fix this"))

    def test_identical_content_is_not_written(self, db, comment):
        """Same content and status: version and timestamps stay put."""
        result = crud.update_review_comment(
            db, comment.id, schemas.ReviewCommentUpdate(content="Fix this", status="open"), expected_version=1
        )

        assert result.version == 1
        assert result.edited_at is None
        assert result.updated_at == comment.updated_at

    def test_content_change_stamps_edited_at(self, db, comment):
        result = crud.update_review_comment(
            db, comment.id, schemas.ReviewCommentUpdate(content="Fixed wording"), expected_version=1
        )

        assert result.version == 2
        assert result.content == "Fixed wording"
        assert result.edited_at is not None

    def test_status_change_does_not_stamp_edited_at(self, db, comment):
        result = crud.update_review_comment(
            db, comment.id, schemas.ReviewCommentUpdate(status="resolved"), expected_version=1
        )

        assert result.version == 2
        assert result.status == "resolved"
        assert result.edited_at is None

    def test_stale_version_rejected_even_for_no_op(self, db, comment):
        crud.update_review_comment(db, comment.id, schemas.ReviewCommentUpdate(status="resolved"), expected_version=1)

        with pytest.raises(OptimisticLockError):
            crud.update_review_comment(
                db, comment.id, schemas.ReviewCommentUpdate(status="resolved"), expected_version=1
            )


class TestNextTimestamp:
    def test_future_previous_is_nudged_by_one_microsecond(self):
        """A previous value ahead of the clock still yields a later timestamp."""
        previous = "2999-01-01T00:00:00.000000Z"
        result = next_timestamp(previous)

        assert result == "2999-01-01T00:00:00.000001Z"
        assert parse_timestamp(result) > parse_timestamp(previous)

    def test_none_previous_returns_now(self):
        assert next_timestamp(None).endswith("Z")
