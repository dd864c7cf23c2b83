"""
Tool 入参模型（pydantic）与校验入口。

约定：
- 所有模型 `extra="forbid"`；值为 null 的 key 等价于未传；
- 字符串默认 trim，空串视为未传（note text / handoff summary 保留原文）；
- 数组元素必须为非空字符串（trim 后）；长度/数量上限来自 `LimitsConfig`（通过 validation context 传入）；
- 校验失败统一转换为 `InvalidArgumentError`（在任何 I/O 之前中止）。
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from contextflow.config.loader import LimitsConfig
from contextflow.core.errors import InvalidArgumentError
from contextflow.core.utils import normalize_iso

DEFAULT_LIMIT = 20


def _trim_or_none(value: Optional[str]) -> Optional[str]:
    """trim；空串返回 None。"""

    if value is None:
        return None
    return value.strip() or None


OptStr = Annotated[Optional[StrictStr], AfterValidator(_trim_or_none)]
Limit = Annotated[StrictInt, Field(ge=1, le=200)]
Format = Literal["text", "json"]


def _limits(info: ValidationInfo) -> LimitsConfig:
    """从 validation context 取上限配置（缺省为默认值）。"""

    ctx = info.context or {}
    limits = ctx.get("limits") if isinstance(ctx, dict) else None
    return limits if isinstance(limits, LimitsConfig) else LimitsConfig()


def _check_string_items(values: Optional[List[str]], name: str, info: ValidationInfo) -> Optional[List[str]]:
    """trim 数组元素并检查空元素/数量/单项长度。"""

    if values is None:
        return None
    limits = _limits(info)
    out: List[str] = []
    for i, item in enumerate(values):
        trimmed = item.strip()
        if not trimmed:
            raise ValueError(f"Empty string not allowed at {name}[{i}]")
        if len(trimmed) > limits.max_array_item_chars:
            raise ValueError(f"{name}[{i}] exceeds max length ({limits.max_array_item_chars} chars)")
        out.append(trimmed)
    if len(out) > limits.max_array_items:
        raise ValueError(f"{name} exceeds max items ({limits.max_array_items})")
    return out


def _normalize_since(value: Optional[str]) -> Optional[str]:
    """把 since 规范化为 UTC 毫秒 ISO；无法解析时报错。"""

    if value is None:
        return None
    normalized = normalize_iso(value)
    if normalized is None:
        raise ValueError("Invalid date for since; expected ISO-8601")
    return normalized


class _ArgsBase(BaseModel):
    """入参模型基类（null 等价于未传）。"""

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        """去掉值为 None 的 key（JSON `null` 与缺省同义）。"""

        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class _EntryArgsBase(_ArgsBase):
    """写入类工具的公共字段。"""

    agent: StrictStr
    project: OptStr = None
    session_id: OptStr = None
    task: OptStr = None

    @field_validator("agent")
    @classmethod
    def _agent_not_empty(cls, value: str) -> str:
        """agent 必填且 trim 后非空。"""

        value = value.strip()
        if not value:
            raise ValueError("String cannot be empty: agent")
        return value


class AppendNoteArgs(_EntryArgsBase):
    """append_shared_note 入参（`content` 是 `text` 的别名，先出现的非空值生效）。"""

    text: Optional[StrictStr] = None
    content: Optional[StrictStr] = None
    tags: Optional[List[StrictStr]] = None

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: Optional[List[str]], info: ValidationInfo) -> Optional[List[str]]:
        """校验 tags。"""

        return _check_string_items(value, "tags", info)

    @model_validator(mode="after")
    def _resolve_text(self, info: ValidationInfo) -> "AppendNoteArgs":
        """合并 text/content，并检查长度上限。"""

        candidate = self.text if self.text else (self.content if self.content else None)
        if not candidate:
            raise ValueError("Missing required string: text (or content)")
        max_chars = _limits(info).max_note_text_chars
        if len(candidate) > max_chars:
            raise ValueError(f"text exceeds max length ({max_chars} chars)")
        self.text = candidate
        return self

    @property
    def note_text(self) -> str:
        """解析后的 note 正文。"""

        return self.text or ""


class WriteHandoffArgs(_EntryArgsBase):
    """write_shared_handoff 入参。"""

    summary: StrictStr
    next_steps: Optional[List[StrictStr]] = None
    open_questions: Optional[List[StrictStr]] = None
    files: Optional[List[StrictStr]] = None

    @field_validator("summary")
    @classmethod
    def _check_summary(cls, value: str, info: ValidationInfo) -> str:
        """summary 非空（不 trim）且不超过上限。"""

        if not value:
            raise ValueError("String cannot be empty: summary")
        max_chars = _limits(info).max_handoff_summary_chars
        if len(value) > max_chars:
            raise ValueError(f"summary exceeds max length ({max_chars} chars)")
        return value

    @field_validator("next_steps", "open_questions", "files")
    @classmethod
    def _check_lists(cls, value: Optional[List[str]], info: ValidationInfo) -> Optional[List[str]]:
        """校验字符串数组字段。"""

        return _check_string_items(value, info.field_name or "items", info)


class ReadContextArgs(_ArgsBase):
    """read_shared_context 入参。"""

    project: OptStr = None
    agent: OptStr = None
    session_id: OptStr = None
    kind: Optional[Literal["note", "handoff"]] = None
    since: Annotated[OptStr, AfterValidator(_normalize_since)] = None
    limit: Limit = DEFAULT_LIMIT
    format: Format = "text"


class LatestHandoffArgs(_ArgsBase):
    """get_latest_handoff 入参。"""

    project: OptStr = None
    agent: OptStr = None
    session_id: OptStr = None
    format: Format = "text"


class ListSessionsArgs(_ArgsBase):
    """list_sessions 入参。"""

    project: OptStr = None
    agent: OptStr = None
    since: Annotated[OptStr, AfterValidator(_normalize_since)] = None
    limit: Limit = DEFAULT_LIMIT
    include_unsessioned: StrictBool = False
    format: Format = "text"


class ChooseSessionArgs(ListSessionsArgs):
    """choose_session 入参（index 与 session_id 二选一）。"""

    index: Optional[Limit] = None
    session_id: OptStr = None

    @model_validator(mode="after")
    def _exactly_one_choice(self) -> "ChooseSessionArgs":
        """index 与 session_id 必须且只能提供一个。"""

        if self.index is None and self.session_id is None:
            raise ValueError("choose_session requires either index or session_id")
        if self.index is not None and self.session_id is not None:
            raise ValueError("choose_session accepts either index or session_id, not both")
        return self


class ResumeSessionArgs(_ArgsBase):
    """resume_session 入参（session_id 可由 active session 回退）。"""

    session_id: OptStr = None
    project: OptStr = None
    limit: Limit = DEFAULT_LIMIT
    format: Format = "text"


ArgsT = TypeVar("ArgsT", bound=_ArgsBase)


def _format_validation_error(exc: ValidationError) -> str:
    """把 pydantic 错误压缩为一句可读消息（取第一条）。"""

    errors = exc.errors(include_url=False)
    if not errors:
        return "Invalid arguments"
    first = errors[0]
    msg = str(first.get("msg") or "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, ") :]
    loc = ".".join(str(p) for p in first.get("loc") or ())
    kind = first.get("type")
    if kind == "missing":
        return f"Missing required argument: {loc}"
    if kind == "extra_forbidden":
        return f"Unexpected argument: {loc}"
    if kind == "value_error" or not loc:
        return msg
    return f"{loc}: {msg}"


def parse_args(model: Type[ArgsT], raw: Any, *, limits: Optional[LimitsConfig] = None) -> ArgsT:
    """
    校验工具入参。

    参数：
    - model：入参模型类
    - raw：`tools/call` 的 arguments（非 dict 视为 `{}`）
    - limits：上限配置

    异常：
    - InvalidArgumentError：校验失败（message 可直接展示给调用方）
    """

    data: Dict[str, Any] = raw if isinstance(raw, dict) else {}
    try:
        return model.model_validate(data, context={"limits": limits or LimitsConfig()})
    except ValidationError as e:
        raise InvalidArgumentError(
            _format_validation_error(e),
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e
