"""内置工具的 ToolSpec（`tools/list` 输出；顺序稳定）。"""

from __future__ import annotations

from typing import Any, Dict, List

from contextflow.tools.protocol import ToolSpec

_PROJECT = {"type": "string", "description": "Project key. Defaults to MCP_SHARED_CONTEXT_PROJECT or 'shared'."}
_FORMAT = {"type": "string", "enum": ["text", "json"], "description": "Return text (default) or JSON."}
_STRING_ARRAY: Dict[str, Any] = {"type": "array", "items": {"type": "string"}}


def _limit(description: str) -> Dict[str, Any]:
    """1..200 的整数 schema。"""

    return {"type": "integer", "minimum": 1, "maximum": 200, "description": description}


def _object(properties: Dict[str, Any], *, required: List[str] | None = None) -> Dict[str, Any]:
    """object schema（`additionalProperties: false`）。"""

    schema: Dict[str, Any] = {"type": "object", "properties": properties, "additionalProperties": False}
    if required:
        schema["required"] = list(required)
    return schema


READ_SHARED_CONTEXT_SPEC = ToolSpec(
    name="read_shared_context",
    description=(
        "Read recent shared context entries (notes + handoffs) from the common file "
        "so another assistant can resume work."
    ),
    input_schema=_object(
        {
            "project": _PROJECT,
            "agent": {"type": "string", "description": "Optional filter by agent name (e.g. claude, codex, gemini)."},
            "session_id": {"type": "string", "description": "Optional filter by session/task thread id."},
            "kind": {"type": "string", "enum": ["note", "handoff"], "description": "Optional filter by entry type."},
            "since": {
                "type": "string",
                "description": "Optional ISO-8601 timestamp. Only entries at/after this time are returned.",
            },
            "limit": _limit("How many recent entries to return. Default 20."),
            "format": {
                "type": "string",
                "enum": ["text", "json"],
                "description": "Return a human-readable transcript (`text`) or raw JSON entries (`json`). Default text.",
            },
        }
    ),
)

APPEND_SHARED_NOTE_SPEC = ToolSpec(
    name="append_shared_note",
    description="Append a progress note to the shared context file while you are working.",
    input_schema=_object(
        {
            "agent": {"type": "string", "description": "Agent name writing the note (e.g. codex, claude, gemini)."},
            "text": {"type": "string", "description": "The note text to append. Provide this or `content`."},
            "content": {
                "type": "string",
                "description": "Alias for `text` for client compatibility. Provide this or `text`.",
            },
            "project": _PROJECT,
            "session_id": {"type": "string", "description": "Optional session/thread/task id."},
            "task": {"type": "string", "description": "Optional current task title."},
            "tags": {**_STRING_ARRAY, "description": "Optional tags for filtering later."},
        },
        required=["agent"],
    ),
)

WRITE_SHARED_HANDOFF_SPEC = ToolSpec(
    name="write_shared_handoff",
    description="Write a structured handoff entry so another assistant can continue where you left off.",
    input_schema=_object(
        {
            "agent": {"type": "string", "description": "Agent creating the handoff."},
            "summary": {"type": "string", "description": "What was completed and current state."},
            "next_steps": {**_STRING_ARRAY, "description": "Ordered next actions for the next assistant."},
            "open_questions": {**_STRING_ARRAY, "description": "Unknowns/blockers/questions."},
            "files": {**_STRING_ARRAY, "description": "Relevant files or paths touched."},
            "project": _PROJECT,
            "session_id": {"type": "string", "description": "Optional session/thread/task id."},
            "task": {"type": "string", "description": "Optional task title."},
        },
        required=["agent", "summary"],
    ),
)

GET_LATEST_HANDOFF_SPEC = ToolSpec(
    name="get_latest_handoff",
    description="Get the most recent handoff entry, optionally filtered by project/agent/session.",
    input_schema=_object(
        {
            "project": _PROJECT,
            "agent": {"type": "string", "description": "Optional filter by handoff author."},
            "session_id": {"type": "string", "description": "Optional filter by session/thread id."},
            "format": _FORMAT,
        }
    ),
)

LIST_SESSIONS_SPEC = ToolSpec(
    name="list_sessions",
    description=(
        "List resumable work sessions in the shared context file (grouped by session_id), "
        "similar to a resume picker."
    ),
    input_schema=_object(
        {
            "project": _PROJECT,
            "agent": {"type": "string", "description": "Optional filter: include only sessions with entries by this agent."},
            "since": {
                "type": "string",
                "description": "Optional ISO-8601 timestamp. Only include sessions active at/after this time.",
            },
            "limit": _limit("Max sessions to return, newest first. Default 20."),
            "include_unsessioned": {
                "type": "boolean",
                "description": (
                    "Include entries with no session_id grouped under a synthetic '(no-session-id)' bucket. "
                    "Default false."
                ),
            },
            "format": _FORMAT,
        }
    ),
)

CHOOSE_SESSION_SPEC = ToolSpec(
    name="choose_session",
    description=(
        "Choose a session from the current session list by index or session_id and return the selected "
        "session with a ready-to-use resume_session payload."
    ),
    input_schema=_object(
        {
            "index": {
                "type": "integer",
                "minimum": 1,
                "maximum": 200,
                "description": "1-based index from list_sessions output (within the same filters/limit).",
            },
            "session_id": {"type": "string", "description": "Choose directly by session_id instead of index."},
            "project": _PROJECT,
            "agent": {"type": "string", "description": "Optional filter: include only sessions with entries by this agent."},
            "since": {
                "type": "string",
                "description": "Optional ISO-8601 timestamp. Only choose from sessions active at/after this time.",
            },
            "limit": _limit("Same list limit behavior as list_sessions. Default 20."),
            "include_unsessioned": {
                "type": "boolean",
                "description": "Include the synthetic no-session bucket in the candidate list. Default false.",
            },
            "format": _FORMAT,
        }
    ),
)

RESUME_SESSION_SPEC = ToolSpec(
    name="resume_session",
    description=(
        "Return the latest handoff and recent entries for a specific session_id so an assistant "
        "can resume the exact work item."
    ),
    input_schema=_object(
        {
            "session_id": {"type": "string", "description": "Session/task id to resume."},
            "project": _PROJECT,
            "limit": _limit("How many recent entries from this session to include. Default 20."),
            "format": _FORMAT,
        }
    ),
)

TOOL_SPECS: List[ToolSpec] = [
    READ_SHARED_CONTEXT_SPEC,
    APPEND_SHARED_NOTE_SPEC,
    WRITE_SHARED_HANDOFF_SPEC,
    GET_LATEST_HANDOFF_SPEC,
    LIST_SESSIONS_SPEC,
    CHOOSE_SESSION_SPEC,
    RESUME_SESSION_SPEC,
]
