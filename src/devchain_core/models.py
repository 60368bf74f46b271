"""SQLAlchemy database models."""
import json
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    Boolean,
    ForeignKey,
    UniqueConstraint,
    Index,
    Table,
    JSON,
    func,
)
from sqlalchemy.orm import declarative_base

from .errors import ValidationError
from .versioning import utc_now_iso

# Base class for all models
Base = declarative_base()


def generate_id() -> str:
    return str(uuid4())


def dump_json(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def load_json(raw: Optional[str], entity: str, entity_id: str):
    """Decode a stored JSON object column; corrupt payloads surface as ValidationError."""
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise ValidationError(f"Stored data of {entity} {entity_id} is not valid JSON", entity_id=entity_id) from exc
    if not isinstance(value, dict):
        raise ValidationError(f"Stored data of {entity} {entity_id} is not a JSON object", entity_id=entity_id)
    return value


def scale_temperature(value):
    """Temperatures are stored as integers (x100)."""
    if value is None:
        return None
    return int(round(value * 100))


# Tag junction tables, one per taggable entity kind
epic_tags = Table(
    "epic_tags",
    Base.metadata,
    Column("epic_id", String(36), ForeignKey("epics.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(40), nullable=False, default=utc_now_iso),
)

prompt_tags = Table(
    "prompt_tags",
    Base.metadata,
    Column("prompt_id", String(36), ForeignKey("prompts.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(40), nullable=False, default=utc_now_iso),
)

document_tags = Table(
    "document_tags",
    Base.metadata,
    Column("document_id", String(36), ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(40), nullable=False, default=utc_now_iso),
)

record_tags = Table(
    "record_tags",
    Base.metadata,
    Column("record_id", String(36), ForeignKey("records.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(40), nullable=False, default=utc_now_iso),
)

# Ordered prompt list attached to an agent profile
agent_profile_prompts = Table(
    "agent_profile_prompts",
    Base.metadata,
    Column("profile_id", String(36), ForeignKey("agent_profiles.id", ondelete="CASCADE"), primary_key=True),
    Column("prompt_id", String(36), ForeignKey("prompts.id", ondelete="CASCADE"), primary_key=True),
    Column("position", Integer, nullable=False, default=0),
    Column("created_at", String(40), nullable=False, default=utc_now_iso),
)

chat_members = Table(
    "chat_members",
    Base.metadata,
    Column("thread_id", String(36), ForeignKey("chat_threads.id", ondelete="CASCADE"), primary_key=True),
    Column("agent_id", String(36), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(40), nullable=False, default=utc_now_iso),
)

chat_message_reads = Table(
    "chat_message_reads",
    Base.metadata,
    Column("message_id", String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), primary_key=True),
    Column("agent_id", String(36), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True),
    Column("read_at", String(40), nullable=False),
)


class Project(Base):
    """
    Project model: root of ownership for every other entity.

    Deleting a project goes through cascade.delete_project_cascade, which
    removes dependents in foreign key order.
    """

    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    root_path = Column(String(1024), nullable=False, unique=True)
    is_template = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.name}>"


class Status(Base):
    """
    Workflow stage of a project.

    mcp_hidden hides the stage, and every epic below an epic in that
    stage, from listings that ask for hidden-subtree exclusion.
    """

    __tablename__ = "statuses"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String(255), nullable=False)
    color = Column(String(32), nullable=False)
    position = Column(Integer, nullable=False)
    mcp_hidden = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "position", name="statuses_project_position_idx"),
    )

    def __repr__(self) -> str:
        return f"<Status {self.label} ({self.position})>"


class Provider(Base):
    """Agent runtime provider (claude, codex, ...)."""

    __tablename__ = "providers"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(100), nullable=False, unique=True)
    bin_path = Column(String(1024))
    mcp_configured = Column(Boolean, nullable=False, default=False)
    mcp_endpoint = Column(String(1024))
    mcp_registered_at = Column(String(40))
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class AgentProfile(Base):
    """Reusable agent configuration. A null project_id means global."""

    __tablename__ = "agent_profiles"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    name = Column(String(255), nullable=False)
    provider_id = Column(String(36), ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False)
    family_slug = Column(String(255))
    options = Column(Text)
    system_prompt = Column(Text)
    instructions = Column(Text)
    temperature_scaled = Column("temperature", Integer)
    max_tokens = Column(Integer)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "name", name="agent_profiles_project_name_unique"),
    )

    @property
    def temperature(self):
        if self.temperature_scaled is None:
            return None
        return self.temperature_scaled / 100

    @temperature.setter
    def temperature(self, value):
        self.temperature_scaled = scale_temperature(value)

    def __repr__(self) -> str:
        return f"<AgentProfile {self.name}>"


class Agent(Base):
    """Agent instance bound to a profile of the same project."""

    __tablename__ = "agents"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    profile_id = Column(String(36), ForeignKey("agent_profiles.id", ondelete="RESTRICT"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    def __repr__(self) -> str:
        return f"<Agent {self.name}>"


class Epic(Base):
    """
    Work item. At most two levels deep: a sub-epic's parent is always a root epic.

    data holds a JSON object serialized as text; ``tags`` is filled in by the
    repository from epic_tags and is not a column.
    """

    __tablename__ = "epics"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    status_id = Column(String(36), ForeignKey("statuses.id", ondelete="RESTRICT"), nullable=False, index=True)
    parent_id = Column(String(36), ForeignKey("epics.id", ondelete="CASCADE"))
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="SET NULL"), index=True)
    version = Column(Integer, nullable=False, default=1)
    data_json = Column("data", Text)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        Index("epics_project_parent_updated_idx", "project_id", "parent_id", "updated_at"),
    )

    tags = ()

    @property
    def data(self):
        return load_json(self.data_json, "Epic", self.id)

    @data.setter
    def data(self, value):
        self.data_json = dump_json(value)

    def __repr__(self) -> str:
        return f"<Epic {self.id}: {self.title}>"


class Tag(Base):
    """Tag shared across entity kinds. A null project_id means global."""

    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    name = Column(String(255), nullable=False, index=True)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    def __repr__(self) -> str:
        return f"<Tag {self.name}>"


class Prompt(Base):
    __tablename__ = "prompts"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    tags = ()


class Record(Base):
    """Structured JSON record attached to an epic; tag scope comes from the epic's project."""

    __tablename__ = "records"

    id = Column(String(36), primary_key=True, default=generate_id)
    epic_id = Column(String(36), ForeignKey("epics.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(100), nullable=False)
    data_json = Column("data", Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    tags = ()

    @property
    def data(self):
        return load_json(self.data_json, "Record", self.id)

    @data.setter
    def data(self, value):
        self.data_json = dump_json(value)


class EpicComment(Base):
    __tablename__ = "epic_comments"

    id = Column(String(36), primary_key=True, default=generate_id)
    epic_id = Column(String(36), ForeignKey("epics.id", ondelete="CASCADE"), nullable=False, index=True)
    author_name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class Document(Base):
    """Markdown document; slug is unique within the project scope."""

    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    title = Column(String(500), nullable=False)
    slug = Column(String(255), nullable=False)
    content_md = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "slug", name="documents_project_slug_unique"),
    )

    tags = ()


class AgentSession(Base):
    """Terminal session of an agent. status is running, stopped or failed."""

    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=generate_id)
    epic_id = Column(String(36), ForeignKey("epics.id", ondelete="SET NULL"))
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="RESTRICT"), index=True)
    tmux_session_id = Column(String(255))
    status = Column(String(20), nullable=False)
    started_at = Column(String(40), nullable=False)
    ended_at = Column(String(40))
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class Transcript(Base):
    __tablename__ = "transcripts"

    id = Column(String(36), primary_key=True, default=generate_id)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    archived_at = Column(String(40))
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class ChatThread(Base):
    __tablename__ = "chat_threads"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(500))
    is_group = Column(Boolean, nullable=False, default=False)
    created_by_type = Column(String(20), nullable=False)
    created_by_agent_id = Column(String(36))
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    thread_id = Column(String(36), ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False, index=True)
    author_type = Column(String(20), nullable=False)
    author_agent_id = Column(String(36), ForeignKey("agents.id", ondelete="SET NULL"))
    content = Column(Text, nullable=False)
    created_at = Column(String(40), nullable=False)


class ChatMessageTarget(Base):
    __tablename__ = "chat_message_targets"

    id = Column(String(36), primary_key=True, default=generate_id)
    message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(String(40), nullable=False)


class ChatThreadSessionInvite(Base):
    __tablename__ = "chat_thread_session_invites"

    id = Column(String(36), primary_key=True, default=generate_id)
    thread_id = Column(String(36), ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(255), nullable=False)
    invite_message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False)
    sent_at = Column(String(40), nullable=False)
    acknowledged_at = Column(String(40))

    __table_args__ = (
        UniqueConstraint("thread_id", "agent_id", "session_id", name="chat_thread_session_invites_unique"),
    )


class ChatActivity(Base):
    __tablename__ = "chat_activities"

    id = Column(String(36), primary_key=True, default=generate_id)
    thread_id = Column(String(36), ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(String(40), nullable=False)
    finished_at = Column(String(40))
    start_message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="SET NULL"))
    finish_message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="SET NULL"))


class Review(Base):
    """Code review of an epic's changes. Versioned."""

    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    epic_id = Column(String(36), ForeignKey("epics.id", ondelete="SET NULL"))
    title = Column(String(500), nullable=False)
    description = Column(Text)
    status = Column(String(30), nullable=False, default="draft")
    mode = Column(String(30), nullable=False, default="working_tree")
    base_ref = Column(String(255), nullable=False)
    head_ref = Column(String(255), nullable=False)
    base_sha = Column(String(64))
    head_sha = Column(String(64))
    created_by = Column(String(20), nullable=False, default="user")
    created_by_agent_id = Column(String(36), ForeignKey("agents.id", ondelete="SET NULL"))
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    comment_count = 0


class ReviewComment(Base):
    """Review comment; replies point at their parent comment."""

    __tablename__ = "review_comments"

    id = Column(String(36), primary_key=True, default=generate_id)
    review_id = Column(String(36), ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(String(1024))
    parent_id = Column(String(36), ForeignKey("review_comments.id", ondelete="CASCADE"))
    line_start = Column(Integer)
    line_end = Column(Integer)
    side = Column(String(10))
    content = Column(Text, nullable=False)
    comment_type = Column(String(30), nullable=False, default="comment")
    status = Column(String(30), nullable=False, default="open")
    author_type = Column(String(20), nullable=False, default="user")
    author_agent_id = Column(String(36), ForeignKey("agents.id", ondelete="SET NULL"))
    version = Column(Integer, nullable=False, default=1)
    edited_at = Column(String(40))
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    author_agent_name = None
    target_agents = ()


class ReviewCommentTarget(Base):
    __tablename__ = "review_comment_targets"

    id = Column(String(36), primary_key=True, default=generate_id)
    comment_id = Column(String(36), ForeignKey("review_comments.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(String(40), nullable=False)


class Guest(Base):
    """External terminal registered into a project. Name is unique per project, case-insensitively."""

    __tablename__ = "guests"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    tmux_session_id = Column(String(255), nullable=False, unique=True)
    last_seen_at = Column(String(40), nullable=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


Index("guests_project_name_unique", Guest.project_id, func.lower(Guest.name), unique=True)


class TerminalWatcher(Base):
    """Polls agent terminals and emits event_name when condition matches."""

    __tablename__ = "terminal_watchers"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    enabled = Column(Boolean, nullable=False, default=True)
    scope = Column(String(20), nullable=False, default="all")
    scope_filter_id = Column(String(36))
    poll_interval_ms = Column(Integer, nullable=False, default=5000)
    viewport_lines = Column(Integer, nullable=False, default=50)
    condition = Column(JSON, nullable=False)
    cooldown_ms = Column(Integer, nullable=False, default=60000)
    cooldown_mode = Column(String(20), nullable=False, default="time")
    event_name = Column(String(255), nullable=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "event_name", name="terminal_watchers_event_name_unique"),
    )


class AutomationSubscriber(Base):
    """Runs an action when a watcher event fires."""

    __tablename__ = "automation_subscribers"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    enabled = Column(Boolean, nullable=False, default=True)
    event_name = Column(String(255), nullable=False, index=True)
    event_filter = Column(JSON)
    action_type = Column(String(100), nullable=False)
    action_inputs = Column(JSON, nullable=False)
    delay_ms = Column(Integer, nullable=False, default=0)
    cooldown_ms = Column(Integer, nullable=False, default=5000)
    retry_on_error = Column(Boolean, nullable=False, default=False)
    group_name = Column(String(255))
    position = Column(Integer, nullable=False, default=0)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class CommunitySkillSource(Base):
    """Skill source backed by a GitHub repository."""

    __tablename__ = "community_skill_sources"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False, unique=True)
    repo_owner = Column(String(255), nullable=False)
    repo_name = Column(String(255), nullable=False)
    branch = Column(String(255), nullable=False, default="main")
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        UniqueConstraint("repo_owner", "repo_name", name="community_skill_sources_repo_unique"),
    )


class LocalSkillSource(Base):
    """Skill source backed by a local folder."""

    __tablename__ = "local_skill_sources"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False, unique=True)
    folder_path = Column(String(1024), nullable=False, unique=True)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)


class SourceProjectEnabled(Base):
    """Per-project on/off switch for a skill source, keyed by normalized source name."""

    __tablename__ = "source_project_enabled"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    source_name = Column(String(255), nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "source_name", name="source_project_enabled_unique"),
    )
