"""Tool-permission authorization state machine."""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from agent_session_bridge.application.models import (
    AssistantMessage,
    AuthorizationState,
    ContinueDirective,
    PermissionRequest,
    PermissionRequestChunk,
    ResultMessage,
    TextChunk,
    ToolResultChunk,
    ToolUse,
    ToolUseChunk,
)
from agent_session_bridge.application.validation import is_valid_tool_grant
from agent_session_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import structlog

# 許可要求を示すエージェント出力中のフレーズ
DEFAULT_PERMISSION_KEYWORDS: tuple[str, ...] = (
    "requested permissions",
    "haven't granted it yet",
    "permission denied",
)


class AuthorizationPhase(str, Enum):
    """許可フローの状態."""

    IDLE = "idle"
    WAITING_FOR_PERMISSION = "waiting_for_permission"
    GRANTED = "granted"
    DENIED = "denied"


class PermissionStateError(RuntimeError):
    """状態遷移が不正な場合の例外."""

    def __init__(self, phase: AuthorizationPhase, message: str) -> None:
        super().__init__(f"Invalid authorization state (current: {phase.value}): {message}")
        self.phase = phase


@dataclass
class ToolUseHistory:
    """ストリーム中に観測したツール呼び出しの履歴."""

    by_id: dict[str, ToolUse] = field(default_factory=dict)
    last: ToolUse | None = None

    def record(self, tool_use: ToolUse) -> None:
        self.by_id[tool_use.id] = tool_use
        self.last = tool_use

    def resolve(self, tool_use_id: str | None = None) -> ToolUse | None:
        """ID が分かればその呼び出しを、分からなければ直近の呼び出しを返す."""
        if tool_use_id is not None and tool_use_id in self.by_id:
            return self.by_id[tool_use_id]
        return self.last

    def clear(self) -> None:
        self.by_id.clear()
        self.last = None


class PermissionSignalDetector(Protocol):
    """チャンク・メッセージから許可要求を検出する戦略."""

    def detect(self, item: Any, history: ToolUseHistory) -> PermissionRequest | None:
        """許可要求を検出した場合にその内容を返す."""
        ...


class StructuredPermissionDetector:
    """構造化された permission_request イベントを検出する."""

    def detect(self, item: Any, history: ToolUseHistory) -> PermissionRequest | None:
        if isinstance(item, PermissionRequestChunk):
            return item.request
        return None


class KeywordPermissionDetector:
    """
    エージェント出力中のキーワードから許可要求を推定する.

    テキスト断片・ツール結果・結果メッセージの本文を大文字小文字を無視して照合し、
    対象のツール呼び出しはツール結果の tool_use_id、なければ直近の呼び出しとみなす。
    """

    def __init__(self, keywords: Iterable[str] = DEFAULT_PERMISSION_KEYWORDS) -> None:
        self.keywords = tuple(k.lower() for k in keywords if k)

    def _extract_text(self, item: Any) -> tuple[str, str | None]:
        if isinstance(item, ToolResultChunk):
            return item.content, item.tool_use_id
        if isinstance(item, TextChunk | AssistantMessage):
            return item.text, None
        if isinstance(item, ResultMessage):
            return item.result or "", None
        return "", None

    def detect(self, item: Any, history: ToolUseHistory) -> PermissionRequest | None:
        text, tool_use_id = self._extract_text(item)
        if not text:
            return None
        lowered = text.lower()
        if not any(keyword in lowered for keyword in self.keywords):
            return None
        tool_use = history.resolve(tool_use_id)
        if tool_use is None:
            return None
        return PermissionRequest.from_tool_use(tool_use)


class CompositePermissionDetector:
    """複数の検出器を順に試し、最初に検出された要求を返す."""

    def __init__(self, *detectors: PermissionSignalDetector) -> None:
        self.detectors = detectors

    def detect(self, item: Any, history: ToolUseHistory) -> PermissionRequest | None:
        for detector in self.detectors:
            request = detector.detect(item, history)
            if request is not None:
                return request
        return None


def default_detector(
    keywords: Iterable[str] | None = None,
) -> CompositePermissionDetector:
    """構造化イベント優先、キーワード照合をフォールバックとする検出器を作成する."""
    return CompositePermissionDetector(
        StructuredPermissionDetector(),
        KeywordPermissionDetector(
            DEFAULT_PERMISSION_KEYWORDS if keywords is None else keywords
        ),
    )


_GRANT_PARTS_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.+)\)$", re.DOTALL)


def grant_allows(grant: str, request: PermissionRequest) -> bool:
    """
    ToolGrant が許可要求にマッチするかを判定する.

    - ツール名: 大文字小文字を無視して fnmatch で比較
    - 引数: tool_command に対する fnmatch パターン（大文字小文字区別あり）
    - 末尾の ``:*`` は前方一致（例: ``Bash(git status:*)``）

    Args:
        grant: ToolGrant 文字列（例: "Bash(git status:*)", "Edit(/src/*)"）
        request: 許可要求

    Returns:
        マッチする場合 True
    """
    match = _GRANT_PARTS_RE.fullmatch(grant)
    if match is None:
        return False
    name_pattern, args_pattern = match.groups()
    if args_pattern.endswith(":*"):
        args_pattern = args_pattern[:-2] + "*"
    return fnmatch.fnmatch(
        request.tool_name.lower(), name_pattern.lower()
    ) and fnmatch.fnmatchcase(request.tool_command, args_pattern)


def find_matching_grant(
    grants: Iterable[str], request: PermissionRequest
) -> str | None:
    """許可要求にマッチする最初の ToolGrant を返す."""
    for grant in grants:
        if grant_allows(grant, request):
            return grant
    return None


def extend_allowed_tools(current: Sequence[str], additions: Sequence[str]) -> list[str]:
    """許可リストを順序を保ったまま重複なしで拡張する."""
    extended = list(dict.fromkeys(current))
    for grant in additions:
        if grant not in extended:
            extended.append(grant)
    return extended


class PermissionAuthorizationStateMachine:
    """
    ツール実行許可の状態機械.

    Idle → WaitingForPermission → {Granted, Denied} と遷移する。
    許可待ちの要求は常に高々1件で、待機中に届いた別の許可シグナルは
    プロトコル違反として記録し、保留中の要求は上書きしない。
    """

    def __init__(
        self,
        detector: PermissionSignalDetector | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        """
        Initialize PermissionAuthorizationStateMachine.

        Args:
            detector: 許可シグナル検出器（省略時は default_detector()）
            logger: 構造化ロガー
        """
        self._detector = detector if detector is not None else default_detector()
        self._logger = logger if logger is not None else get_logger(__name__)
        self._phase = AuthorizationPhase.IDLE
        self._pending: PermissionRequest | None = None
        self._history = ToolUseHistory()
        self.rejected_signals: list[PermissionRequest] = []

    @property
    def phase(self) -> AuthorizationPhase:
        return self._phase

    @property
    def pending_request(self) -> PermissionRequest | None:
        return self._pending

    @property
    def is_waiting(self) -> bool:
        return self._phase == AuthorizationPhase.WAITING_FOR_PERMISSION

    def snapshot(self) -> AuthorizationState:
        """現在の状態を AuthorizationState として返す."""
        return AuthorizationState(
            is_waiting_for_permission=self.is_waiting,
            pending_request=self._pending,
        )

    def observe(self, item: Any) -> PermissionRequest | None:
        """
        チャンクまたはメッセージを検査する.

        Args:
            item: ChunkData または StructuredMessage

        Returns:
            Idle → WaitingForPermission に遷移した場合はその許可要求、それ以外は None
        """
        if isinstance(item, ToolUseChunk):
            self._history.record(item.to_tool_use())

        request = self._detector.detect(item, self._history)
        if request is None:
            return None

        if self.is_waiting:
            self.rejected_signals.append(request)
            self._logger.warning(
                "Ignoring permission signal while another request is pending",
                pending_tool=self._pending.tool_name if self._pending else None,
                ignored_tool=request.tool_name,
            )
            return None

        self._phase = AuthorizationPhase.WAITING_FOR_PERMISSION
        self._pending = request
        self._logger.info(
            "Waiting for permission",
            tool_name=request.tool_name,
            tool_command=request.tool_command,
            tool_use_id=request.original_tool_use.id,
        )
        return request

    def grant(
        self, directive: ContinueDirective, current_tools: Sequence[str] = ()
    ) -> list[str]:
        """
        保留中の要求を許可する.

        Args:
            directive: 再開指示
            current_tools: 現在の許可リスト

        Returns:
            拡張後の許可リスト

        Raises:
            PermissionStateError: 許可待ちでない場合
            ValueError: ToolGrant 形式に一致しない許可が含まれる場合
        """
        if not self.is_waiting:
            raise PermissionStateError(self._phase, "No pending permission request")

        invalid = [g for g in directive.allowed_tools if not is_valid_tool_grant(g)]
        if invalid:
            msg = f"Invalid tool grants: {invalid}"
            raise ValueError(msg)

        extended = extend_allowed_tools(current_tools, directive.allowed_tools)
        self._logger.info(
            "Permission granted",
            tool_name=self._pending.tool_name if self._pending else None,
            allowed_tools=extended,
        )
        self._phase = AuthorizationPhase.GRANTED
        self._pending = None
        return extended

    def deny(self) -> None:
        """
        保留中の要求を拒否する.

        Raises:
            PermissionStateError: 許可待ちでない場合
        """
        if not self.is_waiting:
            raise PermissionStateError(self._phase, "No pending permission request")

        self._logger.info(
            "Permission denied",
            tool_name=self._pending.tool_name if self._pending else None,
        )
        self._phase = AuthorizationPhase.DENIED
        self._pending = None

    def reset(self) -> None:
        """次のストリームに備えて Idle に戻す."""
        if self.is_waiting:
            raise PermissionStateError(self._phase, "Cannot reset while waiting")
        self._phase = AuthorizationPhase.IDLE
        self._history.clear()
