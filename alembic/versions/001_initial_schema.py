"""Initial schema: projects, workflow, agents, epics, content, chat, reviews, automation, skill sources.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', sa.String(36), primary_key=True)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.String(40), nullable=False),
        sa.Column('updated_at', sa.String(40), nullable=False),
    ]


def _project_fk(nullable: bool = False) -> sa.Column:
    return sa.Column('project_id', sa.String(36), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=nullable)


def _tag_junction(name: str, owner_key: str, owner_table: str) -> None:
    op.create_table(
        name,
        sa.Column(owner_key, sa.String(36), sa.ForeignKey(f'{owner_table}.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag_id', sa.String(36), sa.ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('created_at', sa.String(40), nullable=False),
    )


def upgrade() -> None:
    # Projects and workflow
    op.create_table(
        'projects',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('root_path', sa.String(1024), nullable=False, unique=True),
        sa.Column('is_template', sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        'statuses',
        _id(),
        _project_fk(),
        sa.Column('label', sa.String(255), nullable=False),
        sa.Column('color', sa.String(32), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('mcp_hidden', sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'position', name='statuses_project_position_idx'),
    )
    op.create_index('ix_statuses_project_id', 'statuses', ['project_id'])

    # Providers, profiles, agents
    op.create_table(
        'providers',
        _id(),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('bin_path', sa.String(1024)),
        sa.Column('mcp_configured', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('mcp_endpoint', sa.String(1024)),
        sa.Column('mcp_registered_at', sa.String(40)),
        *_timestamps(),
    )

    op.create_table(
        'agent_profiles',
        _id(),
        _project_fk(nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('provider_id', sa.String(36), sa.ForeignKey('providers.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('family_slug', sa.String(255)),
        sa.Column('options', sa.Text),
        sa.Column('system_prompt', sa.Text),
        sa.Column('instructions', sa.Text),
        sa.Column('temperature', sa.Integer),
        sa.Column('max_tokens', sa.Integer),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'name', name='agent_profiles_project_name_unique'),
    )
    op.create_index('ix_agent_profiles_project_id', 'agent_profiles', ['project_id'])

    op.create_table(
        'agents',
        _id(),
        _project_fk(),
        sa.Column('profile_id', sa.String(36), sa.ForeignKey('agent_profiles.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        *_timestamps(),
    )
    op.create_index('ix_agents_project_id', 'agents', ['project_id'])
    op.create_index('ix_agents_profile_id', 'agents', ['profile_id'])

    # Epics and their content
    op.create_table(
        'epics',
        _id(),
        _project_fk(),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('status_id', sa.String(36), sa.ForeignKey('statuses.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('parent_id', sa.String(36), sa.ForeignKey('epics.id', ondelete='CASCADE')),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='SET NULL')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('data', sa.Text),
        *_timestamps(),
    )
    op.create_index('ix_epics_status_id', 'epics', ['status_id'])
    op.create_index('ix_epics_agent_id', 'epics', ['agent_id'])
    op.create_index('epics_project_parent_updated_idx', 'epics', ['project_id', 'parent_id', 'updated_at'])

    op.create_table(
        'tags',
        _id(),
        _project_fk(nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_tags_project_id', 'tags', ['project_id'])
    op.create_index('ix_tags_name', 'tags', ['name'])

    op.create_table(
        'prompts',
        _id(),
        _project_fk(nullable=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps(),
    )
    op.create_index('ix_prompts_project_id', 'prompts', ['project_id'])

    op.create_table(
        'records',
        _id(),
        sa.Column('epic_id', sa.String(36), sa.ForeignKey('epics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('data', sa.Text, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps(),
    )
    op.create_index('ix_records_epic_id', 'records', ['epic_id'])

    op.create_table(
        'epic_comments',
        _id(),
        sa.Column('epic_id', sa.String(36), sa.ForeignKey('epics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_name', sa.String(255), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_epic_comments_epic_id', 'epic_comments', ['epic_id'])

    op.create_table(
        'documents',
        _id(),
        _project_fk(nullable=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False),
        sa.Column('content_md', sa.Text, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('archived', sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'slug', name='documents_project_slug_unique'),
    )
    op.create_index('ix_documents_project_id', 'documents', ['project_id'])

    _tag_junction('epic_tags', 'epic_id', 'epics')
    _tag_junction('prompt_tags', 'prompt_id', 'prompts')
    _tag_junction('document_tags', 'document_id', 'documents')
    _tag_junction('record_tags', 'record_id', 'records')

    op.create_table(
        'agent_profile_prompts',
        sa.Column('profile_id', sa.String(36), sa.ForeignKey('agent_profiles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('prompt_id', sa.String(36), sa.ForeignKey('prompts.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.String(40), nullable=False),
    )

    # Sessions and chat
    op.create_table(
        'sessions',
        _id(),
        sa.Column('epic_id', sa.String(36), sa.ForeignKey('epics.id', ondelete='SET NULL')),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='RESTRICT')),
        sa.Column('tmux_session_id', sa.String(255)),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('started_at', sa.String(40), nullable=False),
        sa.Column('ended_at', sa.String(40)),
        *_timestamps(),
    )
    op.create_index('ix_sessions_agent_id', 'sessions', ['agent_id'])

    op.create_table(
        'transcripts',
        _id(),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('archived_at', sa.String(40)),
        *_timestamps(),
    )
    op.create_index('ix_transcripts_session_id', 'transcripts', ['session_id'])

    op.create_table(
        'chat_threads',
        _id(),
        _project_fk(),
        sa.Column('title', sa.String(500)),
        sa.Column('is_group', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_by_type', sa.String(20), nullable=False),
        sa.Column('created_by_agent_id', sa.String(36)),
        *_timestamps(),
    )
    op.create_index('ix_chat_threads_project_id', 'chat_threads', ['project_id'])

    op.create_table(
        'chat_members',
        sa.Column('thread_id', sa.String(36), sa.ForeignKey('chat_threads.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('created_at', sa.String(40), nullable=False),
    )

    op.create_table(
        'chat_messages',
        _id(),
        sa.Column('thread_id', sa.String(36), sa.ForeignKey('chat_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_type', sa.String(20), nullable=False),
        sa.Column('author_agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='SET NULL')),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('created_at', sa.String(40), nullable=False),
    )
    op.create_index('ix_chat_messages_thread_id', 'chat_messages', ['thread_id'])

    op.create_table(
        'chat_message_targets',
        _id(),
        sa.Column('message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.String(40), nullable=False),
    )
    op.create_index('ix_chat_message_targets_message_id', 'chat_message_targets', ['message_id'])

    op.create_table(
        'chat_message_reads',
        sa.Column('message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('read_at', sa.String(40), nullable=False),
    )

    op.create_table(
        'chat_thread_session_invites',
        _id(),
        sa.Column('thread_id', sa.String(36), sa.ForeignKey('chat_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=False),
        sa.Column('invite_message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sent_at', sa.String(40), nullable=False),
        sa.Column('acknowledged_at', sa.String(40)),
        sa.UniqueConstraint('thread_id', 'agent_id', 'session_id', name='chat_thread_session_invites_unique'),
    )

    op.create_table(
        'chat_activities',
        _id(),
        sa.Column('thread_id', sa.String(36), sa.ForeignKey('chat_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('started_at', sa.String(40), nullable=False),
        sa.Column('finished_at', sa.String(40)),
        sa.Column('start_message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='SET NULL')),
        sa.Column('finish_message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='SET NULL')),
    )

    # Reviews
    op.create_table(
        'reviews',
        _id(),
        _project_fk(),
        sa.Column('epic_id', sa.String(36), sa.ForeignKey('epics.id', ondelete='SET NULL')),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('status', sa.String(30), nullable=False, server_default='draft'),
        sa.Column('mode', sa.String(30), nullable=False, server_default='working_tree'),
        sa.Column('base_ref', sa.String(255), nullable=False),
        sa.Column('head_ref', sa.String(255), nullable=False),
        sa.Column('base_sha', sa.String(64)),
        sa.Column('head_sha', sa.String(64)),
        sa.Column('created_by', sa.String(20), nullable=False, server_default='user'),
        sa.Column('created_by_agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='SET NULL')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps(),
    )
    op.create_index('ix_reviews_project_id', 'reviews', ['project_id'])

    op.create_table(
        'review_comments',
        _id(),
        sa.Column('review_id', sa.String(36), sa.ForeignKey('reviews.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_path', sa.String(1024)),
        sa.Column('parent_id', sa.String(36), sa.ForeignKey('review_comments.id', ondelete='CASCADE')),
        sa.Column('line_start', sa.Integer),
        sa.Column('line_end', sa.Integer),
        sa.Column('side', sa.String(10)),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('comment_type', sa.String(30), nullable=False, server_default='comment'),
        sa.Column('status', sa.String(30), nullable=False, server_default='open'),
        sa.Column('author_type', sa.String(20), nullable=False, server_default='user'),
        sa.Column('author_agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='SET NULL')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('edited_at', sa.String(40)),
        *_timestamps(),
    )
    op.create_index('ix_review_comments_review_id', 'review_comments', ['review_id'])

    op.create_table(
        'review_comment_targets',
        _id(),
        sa.Column('comment_id', sa.String(36), sa.ForeignKey('review_comments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.String(40), nullable=False),
    )
    op.create_index('ix_review_comment_targets_comment_id', 'review_comment_targets', ['comment_id'])

    # Guests and automation
    op.create_table(
        'guests',
        _id(),
        _project_fk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('tmux_session_id', sa.String(255), nullable=False, unique=True),
        sa.Column('last_seen_at', sa.String(40), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_guests_project_id', 'guests', ['project_id'])
    op.create_index('guests_project_name_unique', 'guests', ['project_id', sa.text('lower(name)')], unique=True)

    op.create_table(
        'terminal_watchers',
        _id(),
        _project_fk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('scope', sa.String(20), nullable=False, server_default='all'),
        sa.Column('scope_filter_id', sa.String(36)),
        sa.Column('poll_interval_ms', sa.Integer, nullable=False, server_default='5000'),
        sa.Column('viewport_lines', sa.Integer, nullable=False, server_default='50'),
        sa.Column('condition', sa.JSON, nullable=False),
        sa.Column('cooldown_ms', sa.Integer, nullable=False, server_default='60000'),
        sa.Column('cooldown_mode', sa.String(20), nullable=False, server_default='time'),
        sa.Column('event_name', sa.String(255), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'event_name', name='terminal_watchers_event_name_unique'),
    )
    op.create_index('ix_terminal_watchers_project_id', 'terminal_watchers', ['project_id'])

    op.create_table(
        'automation_subscribers',
        _id(),
        _project_fk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('event_name', sa.String(255), nullable=False),
        sa.Column('event_filter', sa.JSON),
        sa.Column('action_type', sa.String(100), nullable=False),
        sa.Column('action_inputs', sa.JSON, nullable=False),
        sa.Column('delay_ms', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cooldown_ms', sa.Integer, nullable=False, server_default='5000'),
        sa.Column('retry_on_error', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('group_name', sa.String(255)),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('priority', sa.Integer, nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_automation_subscribers_project_id', 'automation_subscribers', ['project_id'])
    op.create_index('ix_automation_subscribers_event_name', 'automation_subscribers', ['event_name'])

    # Skill sources
    op.create_table(
        'community_skill_sources',
        _id(),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('repo_owner', sa.String(255), nullable=False),
        sa.Column('repo_name', sa.String(255), nullable=False),
        sa.Column('branch', sa.String(255), nullable=False, server_default='main'),
        *_timestamps(),
        sa.UniqueConstraint('repo_owner', 'repo_name', name='community_skill_sources_repo_unique'),
    )

    op.create_table(
        'local_skill_sources',
        _id(),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('folder_path', sa.String(1024), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        'source_project_enabled',
        _id(),
        _project_fk(),
        sa.Column('source_name', sa.String(255), nullable=False),
        sa.Column('enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'source_name', name='source_project_enabled_unique'),
    )
    op.create_index('ix_source_project_enabled_project_id', 'source_project_enabled', ['project_id'])


def downgrade() -> None:
    for table in (
        'source_project_enabled',
        'local_skill_sources',
        'community_skill_sources',
        'automation_subscribers',
        'terminal_watchers',
        'guests',
        'review_comment_targets',
        'review_comments',
        'reviews',
        'chat_activities',
        'chat_thread_session_invites',
        'chat_message_reads',
        'chat_message_targets',
        'chat_messages',
        'chat_members',
        'chat_threads',
        'transcripts',
        'sessions',
        'agent_profile_prompts',
        'record_tags',
        'document_tags',
        'prompt_tags',
        'epic_tags',
        'documents',
        'epic_comments',
        'records',
        'prompts',
        'tags',
        'epics',
        'agents',
        'agent_profiles',
        'providers',
        'statuses',
        'projects',
    ):
        op.drop_table(table)
