"""Data models for cross-layer communication."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    model_validator,
)
from pydantic.alias_generators import to_camel

# ツール許可文字列の形式: Name(arguments)
TOOL_GRANT_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*\(.+\)$"

ToolGrant = Annotated[str, StringConstraints(pattern=TOOL_GRANT_PATTERN)]

CONTINUE_MESSAGE = "continue"

# tool_command の導出に使う入力キー（優先順）
_COMMAND_INPUT_KEYS = ("command", "file_path", "path", "url", "pattern")


class _WireModel(BaseModel):
    """呼び出し側から受け取る入力の基底クラス（camelCase / snake_case 両対応）."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class Session(BaseModel):
    """セッション情報."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    project_id: str | None = None
    name: str | None = None
    cwd: str
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class StreamInput(_WireModel):
    """メッセージ送信の入力."""

    message: str = Field(min_length=1)
    session_id: str | None = Field(default=None, min_length=1)
    cwd: str | None = Field(default=None, min_length=1)
    allowed_tools: list[ToolGrant] | None = None
    bypass_permissions: bool | None = None

    @model_validator(mode="after")
    def _require_cwd_for_new_session(self) -> StreamInput:
        if not self.session_id and not self.cwd:
            msg = "cwd is required when creating a new session (no sessionId provided)"
            raise ValueError(msg)
        return self


class ToolUse(_WireModel):
    """エージェントのツール呼び出し."""

    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class PermissionRequest(_WireModel):
    """ツール実行の許可要求."""

    tool_name: str
    tool_command: str
    original_tool_use: ToolUse

    @classmethod
    def from_tool_use(cls, tool_use: ToolUse) -> PermissionRequest:
        """ツール呼び出しから許可要求を組み立てる."""
        return cls(
            tool_name=tool_use.name,
            tool_command=derive_tool_command(tool_use.input),
            original_tool_use=tool_use,
        )

    def suggested_grant(self) -> str:
        """この要求を許可するための ToolGrant 文字列を返す."""
        return f"{self.tool_name}({self.tool_command})"


class ContinueDirective(_WireModel):
    """許可要求後の再開指示."""

    message: Literal["continue"]
    allowed_tools: list[ToolGrant]


class AuthorizationState(_WireModel):
    """許可待ち状態のスナップショット."""

    is_waiting_for_permission: bool = False
    pending_request: PermissionRequest | None = None

    @model_validator(mode="after")
    def _pending_iff_waiting(self) -> AuthorizationState:
        if self.is_waiting_for_permission != (self.pending_request is not None):
            msg = "pending_request must be set if and only if waiting for permission"
            raise ValueError(msg)
        return self


def derive_tool_command(tool_input: dict[str, Any]) -> str:
    """
    ツール入力から許可判定用のコマンド文字列を導出する.

    Args:
        tool_input: ツール呼び出しの入力

    Returns:
        コマンド文字列。該当するキーがない場合は "*"
    """
    for key in _COMMAND_INPUT_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return "*"


# --- ChunkData: エージェント出力の逐次単位 ---


class TextChunk(BaseModel):
    """テキスト断片."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ThinkingChunk(BaseModel):
    """思考過程の断片."""

    model_config = ConfigDict(frozen=True)

    type: Literal["thinking"] = "thinking"
    text: str


class ToolUseChunk(BaseModel):
    """ツール呼び出し開始."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)

    def to_tool_use(self) -> ToolUse:
        return ToolUse(id=self.id, name=self.name, input=self.input)


class ToolResultChunk(BaseModel):
    """ツール実行結果."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str = ""
    is_error: bool = False


class PermissionRequestChunk(BaseModel):
    """ツール実行の許可要求イベント."""

    model_config = ConfigDict(frozen=True)

    type: Literal["permission_request"] = "permission_request"
    request: PermissionRequest


ChunkData = Annotated[
    Union[TextChunk, ThinkingChunk, ToolUseChunk, ToolResultChunk, PermissionRequestChunk],
    Field(discriminator="type"),
]
CHUNK_TYPES = (
    TextChunk,
    ThinkingChunk,
    ToolUseChunk,
    ToolResultChunk,
    PermissionRequestChunk,
)


# --- StructuredMessage: エージェントの完結したプロトコルメッセージ ---


class SystemMessage(BaseModel):
    """セッション開始などのシステムメッセージ."""

    model_config = ConfigDict(frozen=True)

    type: Literal["system"] = "system"
    subtype: str = "init"
    session_id: str | None = None
    cwd: str | None = None


class AssistantMessage(BaseModel):
    """エージェントの応答メッセージ."""

    model_config = ConfigDict(frozen=True)

    type: Literal["assistant"] = "assistant"
    session_id: str | None = None
    text: str = ""


class ResultMessage(BaseModel):
    """ターン終了時の結果メッセージ（エージェントが割り当てたセッションIDを含む）."""

    model_config = ConfigDict(frozen=True)

    type: Literal["result"] = "result"
    session_id: str
    subtype: str = "success"
    is_error: bool = False
    result: str | None = None
    stop_reason: str | None = None


StructuredMessage = Annotated[
    Union[SystemMessage, AssistantMessage, ResultMessage],
    Field(discriminator="type"),
]
MESSAGE_TYPES = (SystemMessage, AssistantMessage, ResultMessage)


def is_result_message(message: object) -> bool:
    """結果メッセージかどうかを判定する."""
    return isinstance(message, ResultMessage)


def find_result_session_id(messages: list[Any]) -> str | None:
    """最初の結果メッセージからセッションIDを取り出す."""
    for message in messages:
        if is_result_message(message) and message.session_id:
            return str(message.session_id)
    return None


@dataclass(frozen=True)
class StreamParams:
    """エージェントストリームを開くためのパラメータ（Orchestrator → AgentStreamClient）."""

    message: str
    cwd: str
    resume_id: str | None = None
    allowed_tools: tuple[str, ...] = ()
    bypass_permissions: bool | None = None


@dataclass
class StreamOutcome:
    """run() の成功結果."""

    session: Session
    messages: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON 互換の辞書に変換する."""
        return {
            "session": self.session.model_dump(mode="json"),
            "messages": [m.model_dump(mode="json") for m in self.messages],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)
