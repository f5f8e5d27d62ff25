"""Input validation for the session orchestrator."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agent_session_bridge.application.errors import InputValidationError
from agent_session_bridge.application.models import (
    TOOL_GRANT_PATTERN,
    ContinueDirective,
    StreamInput,
)
from agent_session_bridge.application.result import Err, Ok, Result

ModelT = TypeVar("ModelT", bound=BaseModel)

_TOOL_GRANT_RE = re.compile(TOOL_GRANT_PATTERN)

NEW_SESSION_CWD_MESSAGE = (
    "cwd is required when creating a new session (no sessionId provided)"
)


def is_valid_tool_grant(grant: object) -> bool:
    """ToolGrant 形式（Name(arguments)）に一致するかを判定する."""
    return isinstance(grant, str) and _TOOL_GRANT_RE.fullmatch(grant) is not None


def _lookup(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def check_new_session_precondition(
    raw: Mapping[str, Any],
) -> Result[None, InputValidationError]:
    """
    新規セッション作成時に cwd が指定されているかを検査する.

    フィールド単位の検証より先に、生の入力全体に対して実行する。
    空文字列は未指定として扱う。

    Args:
        raw: 生の入力

    Returns:
        成功時は Ok(None)、cwd が不足している場合は Err
    """
    session_id = _lookup(raw, "sessionId", "session_id")
    cwd = _lookup(raw, "cwd")
    if not session_id and not cwd:
        return Err(
            InputValidationError(
                NEW_SESSION_CWD_MESSAGE,
                details={"errors": [{"loc": ["cwd"], "msg": NEW_SESSION_CWD_MESSAGE}]},
            )
        )
    return Ok(None)


def _validate_model(
    model: type[ModelT], raw: object, message: str
) -> Result[ModelT, InputValidationError]:
    try:
        return Ok(model.model_validate(raw))
    except PydanticValidationError as e:
        errors = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
            for err in e.errors()
        ]
        return Err(InputValidationError(message, cause=e, details={"errors": errors}))


def validate_stream_input(raw: object) -> Result[StreamInput, InputValidationError]:
    """
    メッセージ送信の入力を検証する.

    Args:
        raw: 生の入力（Mapping または StreamInput）

    Returns:
        検証済みの StreamInput、または InputValidationError
    """
    if isinstance(raw, StreamInput):
        return Ok(raw)
    if not isinstance(raw, Mapping):
        return Err(
            InputValidationError(
                "Invalid input",
                details={"errors": [{"loc": [], "msg": "input must be a mapping"}]},
            )
        )

    precondition = check_new_session_precondition(raw)
    if isinstance(precondition, Err):
        return precondition

    return _validate_model(StreamInput, raw, "Invalid input")


def validate_continue_directive(
    raw: object,
) -> Result[ContinueDirective, InputValidationError]:
    """再開指示（message="continue" と allowedTools）を検証する."""
    if isinstance(raw, ContinueDirective):
        return Ok(raw)
    return _validate_model(ContinueDirective, raw, "Invalid continue directive")
