"""Error taxonomy surfaced by the session orchestrator."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """エラー種別タグ."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    LOOKUP = "lookup"
    PERSISTENCE = "persistence"
    UPSTREAM = "upstream"
    PRECONDITION = "precondition"
    MISSING_SESSION_ID = "missing_session_id"
    UNEXPECTED = "unexpected"


class OrchestratorError(Exception):
    """オーケストレーターが返すエラーの基底クラス."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize OrchestratorError.

        Args:
            message: エラーメッセージ
            cause: 原因となった例外（診断用）
            details: 追加の診断情報
        """
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details: dict[str, Any] = details or {}
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class InputValidationError(OrchestratorError):
    """入力が不正な場合のエラー（副作用は発生していない）."""

    kind = ErrorKind.VALIDATION


class SessionNotFoundError(OrchestratorError):
    """指定されたセッションが存在しない場合のエラー."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} not found", details={"session_id": session_id}
        )
        self.session_id = session_id


class SessionLookupError(OrchestratorError):
    """セッションの取得に失敗した場合のエラー."""

    kind = ErrorKind.LOOKUP


class SessionPersistenceError(OrchestratorError):
    """セッションの保存に失敗した場合のエラー."""

    kind = ErrorKind.PERSISTENCE


class UpstreamError(OrchestratorError):
    """エージェント呼び出しに失敗した場合のエラー."""

    kind = ErrorKind.UPSTREAM


class PreconditionError(OrchestratorError):
    """内部不変条件が破られた場合のエラー."""

    kind = ErrorKind.PRECONDITION


class MissingSessionIdError(OrchestratorError):
    """新規セッションでエージェントがセッションIDを返さなかった場合のエラー."""

    kind = ErrorKind.MISSING_SESSION_ID


class UnexpectedError(OrchestratorError):
    """想定外の例外を境界で包んだエラー."""

    kind = ErrorKind.UNEXPECTED
