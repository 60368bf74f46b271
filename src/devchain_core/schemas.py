"""Pydantic schemas for repository inputs and composite results."""
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ListResult(BaseModel, Generic[T]):
    """One page of a listing plus the unpaginated total."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: list[T]
    total: int
    limit: int
    offset: int


# Project Schemas

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    root_path: str = Field(..., min_length=1)
    is_template: bool = False


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    root_path: Optional[str] = Field(None, min_length=1)
    is_template: Optional[bool] = None


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    root_path: str
    is_template: bool
    created_at: str
    updated_at: str


# Status Schemas

class StatusCreate(BaseModel):
    project_id: str
    label: str = Field(..., min_length=1, max_length=255)
    color: str = Field(..., min_length=1, max_length=32)
    position: int = Field(..., ge=0)
    mcp_hidden: bool = False


class StatusUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=255)
    color: Optional[str] = Field(None, min_length=1, max_length=32)
    position: Optional[int] = Field(None, ge=0)
    mcp_hidden: Optional[bool] = None


# Provider Schemas

class ProviderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    bin_path: Optional[str] = None
    mcp_configured: bool = False
    mcp_endpoint: Optional[str] = None


class ProviderUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    bin_path: Optional[str] = None
    mcp_configured: Optional[bool] = None
    mcp_endpoint: Optional[str] = None
    mcp_registered_at: Optional[str] = None


# Agent Profile / Agent Schemas

class AgentProfileCreate(BaseModel):
    project_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    provider_id: str
    family_slug: Optional[str] = None
    options: Optional[str] = None
    system_prompt: Optional[str] = None
    instructions: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, gt=0)


class AgentProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    provider_id: Optional[str] = None
    family_slug: Optional[str] = None
    options: Optional[str] = None
    system_prompt: Optional[str] = None
    instructions: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, gt=0)


class AgentCreate(BaseModel):
    project_id: str
    profile_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class AgentUpdate(BaseModel):
    profile_id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


# Epic Schemas

class EpicCreate(BaseModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status_id: str
    parent_id: Optional[str] = None
    agent_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    tags: list[str] = Field(default_factory=list)


class EpicForProjectCreate(BaseModel):
    """Epic creation by name lookups: status defaults to the first one, agent by name."""

    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status_id: Optional[str] = None
    parent_id: Optional[str] = None
    agent_name: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    tags: list[str] = Field(default_factory=list)


class EpicUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status_id: Optional[str] = None
    parent_id: Optional[str] = None
    agent_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None


class EpicCommentCreate(BaseModel):
    epic_id: str
    author_name: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)


# Record Schemas

class RecordCreate(BaseModel):
    epic_id: str
    type: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any]
    tags: list[str] = Field(default_factory=list)


class RecordUpdate(BaseModel):
    type: Optional[str] = Field(None, min_length=1, max_length=100)
    data: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None


# Prompt Schemas

class PromptCreate(BaseModel):
    project_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=500)
    content: str = ""
    tags: list[str] = Field(default_factory=list)


class PromptUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    content: Optional[str] = None
    tags: Optional[list[str]] = None


class PromptSummary(BaseModel):
    """Prompt list entry with a shortened content preview."""

    id: str
    project_id: Optional[str] = None
    title: str
    content_preview: str
    version: int
    tags: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


# Tag Schemas

class TagCreate(BaseModel):
    project_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)


class TagUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


# Document Schemas

class DocumentCreate(BaseModel):
    project_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=500)
    slug: Optional[str] = None
    content_md: str = ""
    archived: bool = False
    tags: list[str] = Field(default_factory=list)


class DocumentUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    slug: Optional[str] = None
    content_md: Optional[str] = None
    archived: Optional[bool] = None
    tags: Optional[list[str]] = None
    version: Optional[int] = Field(None, ge=1, description="Expected version; skips the check when omitted")


# Review Schemas

class ReviewCreate(BaseModel):
    project_id: str
    epic_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: str = "draft"
    mode: str = "working_tree"
    base_ref: str
    head_ref: str
    base_sha: Optional[str] = None
    head_sha: Optional[str] = None
    created_by: str = "user"
    created_by_agent_id: Optional[str] = None


class ReviewUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[str] = None
    head_sha: Optional[str] = None


class ReviewCommentCreate(BaseModel):
    review_id: str
    file_path: Optional[str] = None
    parent_id: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    side: Optional[str] = None
    content: str = Field(..., min_length=1)
    comment_type: str = "comment"
    status: str = "open"
    author_type: str = "user"
    author_agent_id: Optional[str] = None


class ReviewCommentUpdate(BaseModel):
    content: Optional[str] = Field(None, min_length=1)
    status: Optional[str] = None


class ReviewCommentTargetAgent(BaseModel):
    agent_id: str
    name: str


# Automation Schemas

class WatcherCreate(BaseModel):
    project_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: bool = True
    scope: str = "all"
    scope_filter_id: Optional[str] = None
    poll_interval_ms: int = Field(5000, ge=1000, le=60000)
    viewport_lines: int = Field(50, ge=10, le=200)
    condition: dict[str, Any]
    cooldown_ms: int = Field(60000, ge=0)
    cooldown_mode: str = "time"
    event_name: str = Field(..., min_length=1, max_length=255)


class WatcherUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: Optional[bool] = None
    scope: Optional[str] = None
    scope_filter_id: Optional[str] = None
    poll_interval_ms: Optional[int] = Field(None, ge=1000, le=60000)
    viewport_lines: Optional[int] = Field(None, ge=10, le=200)
    condition: Optional[dict[str, Any]] = None
    cooldown_ms: Optional[int] = Field(None, ge=0)
    cooldown_mode: Optional[str] = None
    event_name: Optional[str] = Field(None, min_length=1, max_length=255)


class SubscriberCreate(BaseModel):
    project_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: bool = True
    event_name: str = Field(..., min_length=1, max_length=255)
    event_filter: Optional[dict[str, Any]] = None
    action_type: str = Field(..., min_length=1)
    action_inputs: dict[str, Any]
    delay_ms: int = Field(0, ge=0, le=30000)
    cooldown_ms: int = Field(5000, ge=0, le=60000)
    retry_on_error: bool = False
    group_name: Optional[str] = None
    position: int = 0
    priority: int = 0


class SubscriberUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: Optional[bool] = None
    event_name: Optional[str] = Field(None, min_length=1, max_length=255)
    event_filter: Optional[dict[str, Any]] = None
    action_type: Optional[str] = None
    action_inputs: Optional[dict[str, Any]] = None
    delay_ms: Optional[int] = Field(None, ge=0, le=30000)
    cooldown_ms: Optional[int] = Field(None, ge=0, le=60000)
    retry_on_error: Optional[bool] = None
    group_name: Optional[str] = None
    position: Optional[int] = None
    priority: Optional[int] = None


# Guest Schemas

class GuestCreate(BaseModel):
    project_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    tmux_session_id: str = Field(..., min_length=1)
    last_seen_at: Optional[str] = None


# Session / Chat Schemas

class SessionCreate(BaseModel):
    agent_id: str
    epic_id: Optional[str] = None
    tmux_session_id: Optional[str] = None
    status: str = "running"


class ChatThreadCreate(BaseModel):
    project_id: str
    title: Optional[str] = None
    is_group: bool = False
    created_by_type: str = "user"
    created_by_agent_id: Optional[str] = None
    member_agent_ids: list[str] = Field(default_factory=list)


class ChatMessageCreate(BaseModel):
    thread_id: str
    author_type: str = "user"
    author_agent_id: Optional[str] = None
    content: str = Field(..., min_length=1)
    target_agent_ids: list[str] = Field(default_factory=list)


# Skill Source Schemas

class CommunitySourceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    repo_owner: str = Field(..., min_length=1)
    repo_name: str = Field(..., min_length=1)
    branch: str = "main"


class LocalSourceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    folder_path: str = Field(..., min_length=1)


# Template Import Schemas

class TemplateStatus(BaseModel):
    id: Optional[str] = None
    label: str
    color: str
    position: int
    mcp_hidden: bool = False


class TemplatePrompt(BaseModel):
    id: Optional[str] = None
    title: str
    content: Optional[str] = ""
    tags: list[str] = Field(default_factory=list)


class TemplateProfile(BaseModel):
    id: Optional[str] = None
    name: str
    provider_id: str
    family_slug: Optional[str] = None
    options: Optional[str] = None
    instructions: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class TemplateAgent(BaseModel):
    id: Optional[str] = None
    name: str
    profile_id: Optional[str] = None
    description: Optional[str] = None


class TemplateImportPayload(BaseModel):
    """Blueprint for a new project. Ids are template-local and get remapped."""

    statuses: list[TemplateStatus] = Field(default_factory=list)
    prompts: list[TemplatePrompt] = Field(default_factory=list)
    profiles: list[TemplateProfile] = Field(default_factory=list)
    agents: list[TemplateAgent] = Field(default_factory=list)


class ImportedCounts(BaseModel):
    prompts: int
    profiles: int
    agents: int
    statuses: int


class TemplateMappings(BaseModel):
    """Template-local id -> new id, per entity kind."""

    prompt_id_map: dict[str, str] = Field(default_factory=dict)
    profile_id_map: dict[str, str] = Field(default_factory=dict)
    agent_id_map: dict[str, str] = Field(default_factory=dict)
    status_id_map: dict[str, str] = Field(default_factory=dict)


class CreateProjectWithTemplateResult(BaseModel):
    project: ProjectRead
    imported: ImportedCounts
    mappings: TemplateMappings
    initial_prompt_set: bool = False
