"""Tests for repository operations outside the versioning and hierarchy core."""
import pytest

from devchain_core import crud, models, schemas, skill_sources
from devchain_core.errors import ConflictError, NotFoundError, ValidationError


class TestProjects:
    def test_new_project_gets_default_statuses(self, db, project):
        labels = [status.label for status in crud.list_statuses(db, project.id).items]
        assert labels == ["Proposed", "In Progress", "Review", "Done", "Blocked"]

    def test_duplicate_root_path_conflicts(self, db, project):
        with pytest.raises(ConflictError):
            crud.create_project(db, schemas.ProjectCreate(name="Again", root_path=project.root_path))

    def test_null_root_path_is_a_validation_error(self, db, project):
        """Clearing a required column is bad input, not a root path conflict."""
        with pytest.raises(ValidationError, match="Project root_path cannot be null"):
            crud.update_project(db, project.id, schemas.ProjectUpdate(root_path=None))

        assert crud.get_project(db, project.id).root_path == "/work/demo"

    def test_containing_path_prefers_longest_root(self, db, project):
        nested = crud.create_project(db, schemas.ProjectCreate(name="Nested", root_path="/work/demo/sub"))

        assert crud.find_project_containing_path(db, "/work/demo/sub/src/app.py").id == nested.id
        assert crud.find_project_containing_path(db, "/work/demo/README.md").id == project.id
        assert crud.find_project_containing_path(db, "/work/demo").id == project.id

    def test_containing_path_respects_separator(self, db, project):
        """/work/demo2 is not inside /work/demo."""
        assert crud.find_project_containing_path(db, "/work/demo2/file") is None

    def test_new_project_seeds_registered_sources(self, db):
        skill_sources.create_community_source(db, schemas.CommunitySourceCreate(
            name="Team-Skills", repo_owner="acme", repo_name="skills",
        ))
        project = crud.create_project(db, schemas.ProjectCreate(name="Fresh", root_path="/work/fresh"))

        row = skill_sources.get_source_project_enabled(db, project.id, "team-skills")
        assert row is not None
        assert row.enabled is False


class TestStatuses:
    def test_duplicate_position_conflicts(self, db, project):
        with pytest.raises(ConflictError):
            crud.create_status(db, schemas.StatusCreate(project_id=project.id, label="X", color="#fff", position=0))

    def test_status_in_use_cannot_be_deleted(self, db, make_epic, statuses):
        make_epic()
        with pytest.raises(ConflictError):
            crud.delete_status(db, statuses[0].id)

    def test_find_by_label_ignores_case(self, db, project):
        assert crud.find_status_by_label(db, project.id, "in progress").label == "In Progress"

    def test_move_epics_between_statuses(self, db, make_epic, statuses):
        epics = [make_epic(title=f"E{i}") for i in range(2)]

        moved = crud.update_epics_status(db, statuses[0].id, statuses[3].id)

        assert moved == 2
        assert crud.count_epics_by_status(db, statuses[0].id) == 0
        for epic in epics:
            stored = crud.get_epic(db, epic.id)
            assert stored.status_id == statuses[3].id
            assert stored.version == 2


class TestAgentProfiles:
    def test_temperature_stored_scaled(self, db, profile):
        assert profile.temperature_scaled == 70
        assert profile.temperature == pytest.approx(0.7)

    def test_update_temperature(self, db, profile):
        updated = crud.update_agent_profile(db, profile.id, schemas.AgentProfileUpdate(temperature=1.5))
        assert updated.temperature_scaled == 150

    def test_referenced_profile_cannot_be_deleted(self, db, profile, agent):
        with pytest.raises(ConflictError):
            crud.delete_agent_profile(db, profile.id)

    def test_profile_prompts_keep_order(self, db, project, profile):
        first = crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="First", content="1"))
        second = crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="Second", content="2"))

        crud.set_agent_profile_prompts(db, profile.id, [second.id, first.id])

        assert [p.title for p in crud.get_agent_profile_prompts(db, profile.id)] == ["Second", "First"]

    def test_unknown_prompt_ids_rejected(self, db, profile):
        with pytest.raises(ValidationError, match="Unknown prompt ids"):
            crud.set_agent_profile_prompts(db, profile.id, ["nope"])

    def test_cross_project_prompts_rejected(self, db, profile):
        global_prompt = crud.create_prompt(db, schemas.PromptCreate(title="Global", content="g"))
        with pytest.raises(ValidationError, match="Cross-project"):
            crud.set_agent_profile_prompts(db, profile.id, [global_prompt.id])


class TestAgents:
    def test_profile_from_other_project_rejected(self, db, other_project, profile):
        with pytest.raises(ValidationError):
            crud.create_agent(db, schemas.AgentCreate(project_id=other_project.id, profile_id=profile.id, name="X"))

    def test_lookup_by_name_is_case_insensitive(self, db, project, agent):
        assert crud.get_agent_by_name(db, project.id, "BUILDER").id == agent.id

    def test_running_session_blocks_delete(self, db, agent):
        crud.create_session(db, schemas.SessionCreate(agent_id=agent.id))
        with pytest.raises(ConflictError, match="active session"):
            crud.delete_agent(db, agent.id)

    def test_finished_sessions_removed_with_agent(self, db, agent, make_epic):
        epic = make_epic(agent_id=agent.id)
        session = crud.create_session(db, schemas.SessionCreate(agent_id=agent.id))
        crud.update_session_status(db, session.id, "stopped")

        crud.delete_agent(db, agent.id)

        assert db.query(models.AgentSession).count() == 0
        assert crud.get_epic(db, epic.id).agent_id is None
        with pytest.raises(NotFoundError):
            crud.get_agent(db, agent.id)


class TestEpicsForProject:
    def test_defaults_to_lowest_position_status(self, db, project, statuses, agent):
        epic = crud.create_epic_for_project(db, project.id, schemas.EpicForProjectCreate(
            title="Quick", agent_name="builder",
        ))

        assert epic.status_id == statuses[0].id
        assert epic.agent_id == agent.id

    def test_foreign_status_rejected(self, db, project, other_project):
        other_status = crud.list_statuses(db, other_project.id).items[0]
        with pytest.raises(ValidationError, match="Status must belong to the target project."):
            crud.create_epic_for_project(db, project.id, schemas.EpicForProjectCreate(
                title="Nope", status_id=other_status.id,
            ))

    def test_assigned_listing_requires_agent_name(self, db, project):
        with pytest.raises(ValidationError):
            crud.list_assigned_epics(db, project.id, "  ")

    def test_delete_removes_sub_epics_and_content(self, db, make_epic):
        root = make_epic(title="Root", tags=["x"])
        child = make_epic(title="Child", parent_id=root.id)
        crud.create_record(db, schemas.RecordCreate(epic_id=child.id, type="note", data={}, tags=["r"]))
        crud.create_epic_comment(db, schemas.EpicCommentCreate(epic_id=root.id, author_name="me", content="c"))

        crud.delete_epic(db, root.id)

        assert db.query(models.Epic).count() == 0
        assert db.query(models.Record).count() == 0
        assert db.query(models.EpicComment).count() == 0

    def test_comments_listed_oldest_first(self, db, make_epic):
        epic = make_epic()
        for text in ("first", "second"):
            crud.create_epic_comment(db, schemas.EpicCommentCreate(epic_id=epic.id, author_name="me", content=text))

        page = crud.list_epic_comments(db, epic.id)
        assert [comment.content for comment in page.items] == ["first", "second"]


class TestPrompts:
    def test_summary_preview_is_truncated(self, db, project):
        crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="Long", content="x" * 250))

        summary = crud.list_prompts(db, project_id=project.id).items[0]
        assert summary.content_preview == "x" * 200 + "…"

    def test_tag_filter_requires_all_tags(self, db, project):
        crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="Both", content="", tags=["a", "b"]))
        crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="One", content="", tags=["a"]))

        page = crud.list_prompts(db, project_id=project.id, tags=["a", "b"])
        assert [summary.title for summary in page.items] == ["Both"]

    def test_global_only_scope(self, db, project):
        crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="Scoped", content=""))
        crud.create_prompt(db, schemas.PromptCreate(title="Global", content=""))

        assert [s.title for s in crud.list_prompts(db, global_only=True).items] == ["Global"]

    def test_title_search_matches_underscore_literally(self, db, project):
        crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="run_tests", content=""))
        crud.create_prompt(db, schemas.PromptCreate(project_id=project.id, title="run-tests", content=""))

        page = crud.list_prompts(db, project_id=project.id, q="run_")
        assert [summary.title for summary in page.items] == ["run_tests"]


class TestDocuments:
    def test_slug_collisions_get_numeric_suffix(self, db, project):
        first = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Design Notes"))
        second = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Design Notes"))

        assert first.slug == "design-notes"
        assert second.slug == "design-notes-2"

    def test_same_slug_allowed_across_scopes(self, db, project):
        scoped = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Guide"))
        global_doc = crud.create_document(db, schemas.DocumentCreate(title="Guide"))

        assert scoped.slug == global_doc.slug == "guide"

    def test_update_keeps_own_slug(self, db, project):
        document = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Roadmap"))
        updated = crud.update_document(db, document.id, schemas.DocumentUpdate(slug="Roadmap"))

        assert updated.slug == "roadmap"

    def test_lookup_by_slug(self, db, project):
        document = crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Runbook"))

        assert crud.get_document(db, project_id=project.id, slug="runbook").id == document.id
        with pytest.raises(NotFoundError):
            crud.get_document(db, slug="runbook")
        with pytest.raises(ValidationError):
            crud.get_document(db)

    def test_tag_key_filter(self, db, project):
        crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="UI", tags=["area:ui"]))
        crud.create_document(db, schemas.DocumentCreate(project_id=project.id, title="Plain", tags=["misc"]))

        page = crud.list_documents(db, project_id=project.id, tag_keys=["area"])
        assert [doc.title for doc in page.items] == ["UI"]


class TestReviews:
    @pytest.fixture
    def review(self, db, project):
        return crud.create_review(db, schemas.ReviewCreate(
            project_id=project.id, title="PR", base_ref="main", head_ref="feature",
        ))

    def test_comment_listing_is_enriched(self, db, review, agent):
        crud.create_review_comment(db, schemas.ReviewCommentCreate(
            review_id=review.id, content="Please check", author_type="agent", author_agent_id=agent.id,
        ), target_agent_ids=[agent.id])

        comment = crud.list_review_comments(db, review.id).items[0]

        assert comment.author_agent_name == "Builder"
        assert [(t.agent_id, t.name) for t in comment.target_agents] == [(agent.id, "Builder")]
        assert crud.get_review(db, review.id).comment_count == 1

    def test_unknown_target_rejected_without_writing(self, db, review):
        with pytest.raises(ValidationError):
            crud.create_review_comment(
                db, schemas.ReviewCommentCreate(review_id=review.id, content="x"), target_agent_ids=["ghost"],
            )
        assert db.query(models.ReviewComment).count() == 0

    def test_top_level_filter(self, db, review):
        parent = crud.create_review_comment(db, schemas.ReviewCommentCreate(review_id=review.id, content="Top"))
        crud.create_review_comment(db, schemas.ReviewCommentCreate(
            review_id=review.id, parent_id=parent.id, content="Reply",
        ))

        assert [c.content for c in crud.list_review_comments(db, review.id, parent_id=None).items] == ["Top"]
        assert [c.content for c in crud.list_review_comments(db, review.id, parent_id=parent.id).items] == ["Reply"]
        assert crud.list_review_comments(db, review.id).total == 2

    def test_delete_non_resolved_keeps_settled(self, db, review):
        kept = crud.create_review_comment(db, schemas.ReviewCommentCreate(
            review_id=review.id, content="Done", status="resolved",
        ))
        crud.create_review_comment(db, schemas.ReviewCommentCreate(review_id=review.id, content="Open"))

        assert crud.delete_non_resolved_comments(db, review.id) == 1
        assert [c.id for c in crud.list_review_comments(db, review.id).items] == [kept.id]


class TestChat:
    def test_mark_as_read_is_idempotent(self, db, project, agent):
        thread = crud.create_chat_thread(db, schemas.ChatThreadCreate(project_id=project.id, member_agent_ids=[agent.id]))
        message = crud.create_chat_message(db, schemas.ChatMessageCreate(thread_id=thread.id, content="hi"))

        assert crud.mark_message_as_read(db, message.id, agent.id) is True
        assert crud.mark_message_as_read(db, message.id, agent.id) is False


class TestAutomation:
    def _watcher(self, project, **overrides):
        fields = dict(
            project_id=project.id, name="Errors", condition={"type": "contains", "pattern": "ERR"},
            event_name="terminal.error",
        )
        fields.update(overrides)
        return schemas.WatcherCreate(**fields)

    def test_duplicate_event_name_conflicts(self, db, project):
        crud.create_watcher(db, self._watcher(project))
        with pytest.raises(ConflictError):
            crud.create_watcher(db, self._watcher(project, name="Again"))

    def test_missing_watcher(self, db):
        assert crud.get_watcher(db, "missing") is None
        with pytest.raises(NotFoundError):
            crud.update_watcher(db, "missing", schemas.WatcherUpdate(enabled=False))

    def test_enabled_watchers_only(self, db, project):
        crud.create_watcher(db, self._watcher(project))
        crud.create_watcher(db, self._watcher(project, event_name="terminal.idle", enabled=False))

        assert [w.event_name for w in crud.list_enabled_watchers(db)] == ["terminal.error"]

    def test_subscribers_by_event(self, db, project):
        for name, enabled in (("On", True), ("Off", False)):
            crud.create_subscriber(db, schemas.SubscriberCreate(
                project_id=project.id, name=name, enabled=enabled, event_name="terminal.error",
                action_type="send_message", action_inputs={},
            ))

        found = crud.find_subscribers_by_event_name(db, project.id, "terminal.error")
        assert [s.name for s in found] == ["On"]


class TestGuests:
    def _guest(self, project, name="Reviewer", tmux="tmux-a"):
        return schemas.GuestCreate(project_id=project.id, name=name, tmux_session_id=tmux)

    def test_name_conflict_is_case_insensitive(self, db, project):
        crud.create_guest(db, self._guest(project))
        with pytest.raises(ConflictError, match='Guest with name "REVIEWER" already exists in project'):
            crud.create_guest(db, self._guest(project, name="REVIEWER", tmux="tmux-b"))

    def test_tmux_session_conflict(self, db, project):
        crud.create_guest(db, self._guest(project))
        with pytest.raises(ConflictError):
            crud.create_guest(db, self._guest(project, name="Other"))

    def test_lookup_helpers(self, db, project):
        guest = crud.create_guest(db, self._guest(project))
        crud.create_guest(db, self._guest(project, name="Alpha", tmux="tmux-b"))

        assert [g.id for g in crud.get_guests_by_id_prefix(db, guest.id[:8])] == [guest.id]
        assert crud.get_guest_by_tmux_session_id(db, "tmux-a").id == guest.id
        assert [g.name for g in crud.list_guests(db, project.id)] == ["Alpha", "Reviewer"]

    def test_id_prefix_treats_wildcards_literally(self, db, project):
        crud.create_guest(db, self._guest(project))

        assert crud.get_guests_by_id_prefix(db, "%") == []
        assert crud.get_guests_by_id_prefix(db, "_") == []


class TestSkillSources:
    def test_builtin_names_are_reserved(self, db):
        with pytest.raises(ValidationError):
            skill_sources.create_community_source(db, schemas.CommunitySourceCreate(
                name="Anthropic", repo_owner="x", repo_name="y",
            ))

    def test_existing_projects_seeded_disabled(self, db, project):
        skill_sources.create_community_source(db, schemas.CommunitySourceCreate(
            name="Team", repo_owner="acme", repo_name="skills",
        ))

        rows = skill_sources.list_source_project_enabled(db, project.id)
        assert [(row.source_name, row.enabled) for row in rows] == [("team", False)]

    def test_duplicate_repository_conflicts(self, db):
        skill_sources.create_community_source(db, schemas.CommunitySourceCreate(
            name="One", repo_owner="Acme", repo_name="Skills",
        ))
        with pytest.raises(ConflictError):
            skill_sources.create_community_source(db, schemas.CommunitySourceCreate(
                name="Two", repo_owner="acme", repo_name="skills",
            ))

    def test_local_name_clash_with_community(self, db):
        skill_sources.create_community_source(db, schemas.CommunitySourceCreate(
            name="Shared", repo_owner="acme", repo_name="skills",
        ))
        with pytest.raises(ConflictError):
            skill_sources.create_local_source(db, schemas.LocalSourceCreate(name="shared", folder_path="/s"))

    def test_toggle_and_delete(self, db, project):
        source = skill_sources.create_local_source(db, schemas.LocalSourceCreate(name="Mine", folder_path="/s"))

        row = skill_sources.set_source_project_enabled(db, project.id, "MINE", True)
        assert row.enabled is True

        skill_sources.delete_local_source(db, source.id)
        assert skill_sources.get_source_project_enabled(db, project.id, "mine") is None
