"""Project deletion across every dependent table.

Rows are removed children first so each DELETE satisfies the foreign keys
still pointing at it. The order below is a hand-maintained topological sort
of the schema: a new table referencing any of these needs a step here too.
"""
import logging

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError

logger = logging.getLogger("devchain-core.cascade")


def _deletion_steps(project_id: str) -> list[tuple[str, object]]:
    """Ordered (label, DELETE statement) pairs for one project."""
    epic_ids = select(models.Epic.id).where(models.Epic.project_id == project_id)
    thread_ids = select(models.ChatThread.id).where(models.ChatThread.project_id == project_id)
    message_ids = select(models.ChatMessage.id).where(models.ChatMessage.thread_id.in_(thread_ids))
    agent_ids = select(models.Agent.id).where(models.Agent.project_id == project_id)
    document_ids = select(models.Document.id).where(models.Document.project_id == project_id)
    prompt_ids = select(models.Prompt.id).where(models.Prompt.project_id == project_id)
    profile_ids = select(models.AgentProfile.id).where(models.AgentProfile.project_id == project_id)
    session_ids = select(models.AgentSession.id).where(models.AgentSession.agent_id.in_(agent_ids))
    review_ids = select(models.Review.id).where(models.Review.project_id == project_id)
    comment_ids = select(models.ReviewComment.id).where(models.ReviewComment.review_id.in_(review_ids))
    record_ids = select(models.Record.id).where(models.Record.epic_id.in_(epic_ids))

    return [
        # Chat rows hanging off the project's messages
        ("chat_message_reads", delete(models.chat_message_reads).where(
            models.chat_message_reads.c.message_id.in_(message_ids))),
        ("chat_message_targets", delete(models.ChatMessageTarget).where(
            models.ChatMessageTarget.message_id.in_(message_ids))),
        ("chat_thread_session_invites", delete(models.ChatThreadSessionInvite).where(
            models.ChatThreadSessionInvite.invite_message_id.in_(message_ids))),

        # Chat rows hanging off the project's agents or threads
        ("chat_message_reads", delete(models.chat_message_reads).where(
            models.chat_message_reads.c.agent_id.in_(agent_ids))),
        ("chat_message_targets", delete(models.ChatMessageTarget).where(
            models.ChatMessageTarget.agent_id.in_(agent_ids))),
        ("chat_thread_session_invites", delete(models.ChatThreadSessionInvite).where(or_(
            models.ChatThreadSessionInvite.agent_id.in_(agent_ids),
            models.ChatThreadSessionInvite.thread_id.in_(thread_ids)))),
        ("chat_activities", delete(models.ChatActivity).where(or_(
            models.ChatActivity.agent_id.in_(agent_ids),
            models.ChatActivity.thread_id.in_(thread_ids)))),
        ("chat_members", delete(models.chat_members).where(or_(
            models.chat_members.c.agent_id.in_(agent_ids),
            models.chat_members.c.thread_id.in_(thread_ids)))),

        ("chat_messages", delete(models.ChatMessage).where(models.ChatMessage.thread_id.in_(thread_ids))),
        ("chat_threads", delete(models.ChatThread).where(models.ChatThread.project_id == project_id)),

        # Sessions reference agents with RESTRICT
        ("transcripts", delete(models.Transcript).where(models.Transcript.session_id.in_(session_ids))),
        ("sessions", delete(models.AgentSession).where(models.AgentSession.agent_id.in_(agent_ids))),

        # Reviews reference epics and agents
        ("review_comment_targets", delete(models.ReviewCommentTarget).where(or_(
            models.ReviewCommentTarget.comment_id.in_(comment_ids),
            models.ReviewCommentTarget.agent_id.in_(agent_ids)))),
        ("review_comments", delete(models.ReviewComment).where(models.ReviewComment.review_id.in_(review_ids))),
        ("reviews", delete(models.Review).where(models.Review.project_id == project_id)),

        ("epic_comments", delete(models.EpicComment).where(models.EpicComment.epic_id.in_(epic_ids))),
        ("record_tags", delete(models.record_tags).where(models.record_tags.c.record_id.in_(record_ids))),
        ("records", delete(models.Record).where(models.Record.epic_id.in_(epic_ids))),
        ("epic_tags", delete(models.epic_tags).where(models.epic_tags.c.epic_id.in_(epic_ids))),
        # Must precede statuses
        ("epics", delete(models.Epic).where(models.Epic.project_id == project_id)),

        ("document_tags", delete(models.document_tags).where(models.document_tags.c.document_id.in_(document_ids))),
        ("documents", delete(models.Document).where(models.Document.project_id == project_id)),

        ("prompt_tags", delete(models.prompt_tags).where(models.prompt_tags.c.prompt_id.in_(prompt_ids))),
        ("agent_profile_prompts", delete(models.agent_profile_prompts).where(
            models.agent_profile_prompts.c.prompt_id.in_(prompt_ids))),
        ("prompts", delete(models.Prompt).where(models.Prompt.project_id == project_id)),

        # Agents reference profiles, so they go first
        ("agents", delete(models.Agent).where(models.Agent.project_id == project_id)),
        ("agent_profile_prompts", delete(models.agent_profile_prompts).where(
            models.agent_profile_prompts.c.profile_id.in_(profile_ids))),
        ("agent_profiles", delete(models.AgentProfile).where(models.AgentProfile.project_id == project_id)),

        ("tags", delete(models.Tag).where(models.Tag.project_id == project_id)),
        ("statuses", delete(models.Status).where(models.Status.project_id == project_id)),
        ("guests", delete(models.Guest).where(models.Guest.project_id == project_id)),
        ("automation_subscribers", delete(models.AutomationSubscriber).where(
            models.AutomationSubscriber.project_id == project_id)),
        ("terminal_watchers", delete(models.TerminalWatcher).where(
            models.TerminalWatcher.project_id == project_id)),
        ("source_project_enabled", delete(models.SourceProjectEnabled).where(
            models.SourceProjectEnabled.project_id == project_id)),
        ("projects", delete(models.Project).where(models.Project.id == project_id)),
    ]


def delete_project_cascade(db: Session, project_id: str) -> None:
    """
    Delete a project and every row that depends on it, in one commit.

    Raises:
        NotFoundError: If the project does not exist
    """
    if db.get(models.Project, project_id) is None:
        raise NotFoundError("Project", project_id)

    try:
        for label, stmt in _deletion_steps(project_id):
            result = db.execute(stmt, execution_options={"synchronize_session": False})
            if result.rowcount:
                logger.debug(f"Deleted {result.rowcount} rows from {label} for project {project_id}")
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Deleted project {project_id} and all related records")
