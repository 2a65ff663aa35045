"""Event-to-task correlation."""

from .engine import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    CorrelationEngine,
    CorrelationMatch,
    CorrelationOutcome,
    ScoredTask,
    infer_status,
    parse_task_list,
)
from .events import AgentEvent, ToolCategory, classify_tool, decode_tool_input
from .similarity import combined_similarity, jaro_winkler, normalize_string, token_similarity, tokenize
from .status import STATUS_ORDER, TaskStatus, can_advance, parse_status

__all__ = [
    "AgentEvent",
    "CorrelationEngine",
    "CorrelationMatch",
    "CorrelationOutcome",
    "DEFAULT_CONFIDENCE_THRESHOLD",
    "STATUS_ORDER",
    "ScoredTask",
    "TaskStatus",
    "ToolCategory",
    "can_advance",
    "classify_tool",
    "combined_similarity",
    "decode_tool_input",
    "infer_status",
    "jaro_winkler",
    "normalize_string",
    "parse_status",
    "parse_task_list",
    "token_similarity",
    "tokenize",
]
