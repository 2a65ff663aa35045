"""Agent event model and typed decoding of tool inputs."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

KEYWORD_LIMIT = 500

IMPLEMENTATION_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})
RESEARCH_TOOLS = frozenset({"Read", "Glob", "Grep", "LS", "WebFetch", "WebSearch"})
COMMAND_TOOLS = frozenset({"Bash"})
DELEGATION_TOOLS = frozenset({"Task", "Agent"})
TASK_TOOLS = frozenset({"TaskCreate", "TaskUpdate", "TaskList", "TaskGet"})


class ToolCategory(str, Enum):
    IMPLEMENTATION = "implementation"
    RESEARCH = "research"
    COMMAND = "command"
    TASK = "task"
    OTHER = "other"


def classify_tool(tool: str | None) -> ToolCategory:
    if tool in IMPLEMENTATION_TOOLS:
        return ToolCategory.IMPLEMENTATION
    if tool in RESEARCH_TOOLS:
        return ToolCategory.RESEARCH
    if tool in COMMAND_TOOLS:
        return ToolCategory.COMMAND
    if tool in DELEGATION_TOOLS or tool in TASK_TOOLS:
        return ToolCategory.TASK
    return ToolCategory.OTHER


class AgentEvent(BaseModel):
    """Immutable record of one agent action as produced by ingestion."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    agent_id: str = "main"
    timestamp: datetime
    hook_type: str
    tool: str | None = None
    file_path: str | None = None
    input: str | None = None
    output: str | None = None
    error: str | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> ToolCategory:
        return classify_tool(self.tool)


def _clip(value: str | None) -> str | None:
    if not value:
        return None
    return value[:KEYWORD_LIMIT]


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def keywords(self) -> list[str]:
        return []


class FileToolInput(_ToolInput):
    kind: Literal["file"] = "file"
    file_path: str | None = None
    content: str | None = None
    new_string: str | None = None

    def keywords(self) -> list[str]:
        return [text for text in (_clip(self.content), _clip(self.new_string)) if text]


class CommandToolInput(_ToolInput):
    kind: Literal["command"] = "command"
    command: str = ""
    description: str | None = None

    def keywords(self) -> list[str]:
        return [text for text in (_clip(self.command), _clip(self.description)) if text]


class SearchToolInput(_ToolInput):
    kind: Literal["search"] = "search"
    pattern: str | None = None
    query: str | None = None
    path: str | None = None
    url: str | None = None

    def keywords(self) -> list[str]:
        return [text for text in (_clip(self.pattern), _clip(self.query)) if text]


class DelegationToolInput(_ToolInput):
    kind: Literal["delegation"] = "delegation"
    description: str | None = None
    prompt: str | None = None
    subagent_type: str | None = None

    def keywords(self) -> list[str]:
        return [text for text in (_clip(self.description), _clip(self.prompt)) if text]


class TaskCreateInput(_ToolInput):
    kind: Literal["task_create"] = "task_create"
    subject: str = ""
    description: str = ""
    active_form: str = Field(default="", alias="activeForm")
    priority: str | None = None
    tags: list[str] = Field(default_factory=list)
    task_id: str | None = Field(default=None, alias="taskId")
    id: str | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _ensure_tags(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [item for item in value if isinstance(item, str)]

    def keywords(self) -> list[str]:
        return [text for text in (_clip(self.subject), _clip(self.description)) if text]


class TaskUpdateInput(_ToolInput):
    kind: Literal["task_update"] = "task_update"
    task_id: str = Field(default="", alias="taskId")
    status: str | None = None
    owner: str | None = None
    subject: str | None = None
    description: str | None = None
    active_form: str | None = Field(default=None, alias="activeForm")

    def keywords(self) -> list[str]:
        return [text for text in (_clip(self.subject), _clip(self.description)) if text]


class TaskListInput(_ToolInput):
    kind: Literal["task_list"] = "task_list"


class UnrecognizedToolInput(_ToolInput):
    kind: Literal["unrecognized"] = "unrecognized"
    raw: dict[str, Any] = Field(default_factory=dict)


ToolInput = Union[
    FileToolInput,
    CommandToolInput,
    SearchToolInput,
    DelegationToolInput,
    TaskCreateInput,
    TaskUpdateInput,
    TaskListInput,
    UnrecognizedToolInput,
]

_INPUT_MODELS: dict[str, type[_ToolInput]] = {
    **{tool: FileToolInput for tool in IMPLEMENTATION_TOOLS},
    **{tool: SearchToolInput for tool in RESEARCH_TOOLS},
    **{tool: CommandToolInput for tool in COMMAND_TOOLS},
    **{tool: DelegationToolInput for tool in DELEGATION_TOOLS},
    "TaskCreate": TaskCreateInput,
    "TaskUpdate": TaskUpdateInput,
    "TaskList": TaskListInput,
}


def decode_tool_input(event: AgentEvent) -> ToolInput:
    """Decode the event's tool input into its typed variant.

    Unknown tools, missing payloads and payloads that fail validation all
    decode to :class:`UnrecognizedToolInput`.
    """

    metadata = event.metadata or {}
    raw = metadata.get("tool_input", metadata)
    if not isinstance(raw, dict):
        return UnrecognizedToolInput()

    model = _INPUT_MODELS.get(event.tool or "")
    if model is None:
        return UnrecognizedToolInput(raw=raw)
    try:
        return model.model_validate(raw)
    except ValidationError:
        return UnrecognizedToolInput(raw=raw)


__all__ = [
    "AgentEvent",
    "CommandToolInput",
    "DelegationToolInput",
    "FileToolInput",
    "SearchToolInput",
    "TaskCreateInput",
    "TaskListInput",
    "TaskUpdateInput",
    "ToolCategory",
    "ToolInput",
    "UnrecognizedToolInput",
    "classify_tool",
    "decode_tool_input",
    "TASK_TOOLS",
]
