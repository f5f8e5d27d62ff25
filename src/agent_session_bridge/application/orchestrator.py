"""Streaming message orchestration between persisted sessions and the agent."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from agent_session_bridge.application.authorization import (
    PermissionAuthorizationStateMachine,
    PermissionSignalDetector,
    default_detector,
)
from agent_session_bridge.application.errors import (
    InputValidationError,
    MissingSessionIdError,
    OrchestratorError,
    PreconditionError,
    SessionLookupError,
    SessionNotFoundError,
    SessionPersistenceError,
    UnexpectedError,
    UpstreamError,
)
from agent_session_bridge.application.models import (
    ContinueDirective,
    PermissionRequest,
    Session,
    StreamInput,
    StreamOutcome,
    StreamParams,
    find_result_session_id,
)
from agent_session_bridge.application.relay import ChunkRelay, ChunkSink, ChunkSinkError
from agent_session_bridge.application.result import Err, Ok, Result
from agent_session_bridge.application.validation import (
    validate_continue_directive,
    validate_stream_input,
)
from agent_session_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import structlog

    from agent_session_bridge.infrastructure.config import Config

# コールバック型定義
# (PermissionRequest) -> ContinueDirective | dict | None（None は拒否）
PermissionDecisionCallback = Callable[
    [PermissionRequest],
    Awaitable[ContinueDirective | Mapping[str, Any] | None],
]


class SessionStore(Protocol):
    """セッションの永続化ストア."""

    async def find_by_id(self, session_id: str) -> Session | None: ...

    async def upsert(
        self,
        *,
        id: str,  # noqa: A002
        project_id: str | None,
        name: str | None,
        cwd: str,
    ) -> Session: ...


class AgentStreamClient(Protocol):
    """エージェントとのストリームを開くクライアント."""

    def open_stream(self, params: StreamParams) -> AsyncIterator[Any]: ...


def _known_session_id(messages: list[Any]) -> str | None:
    """再開に使うセッションIDを取り出す（結果メッセージ優先）."""
    session_id = find_result_session_id(messages)
    if session_id is not None:
        return session_id
    for message in messages:
        candidate = getattr(message, "session_id", None)
        if candidate:
            return str(candidate)
    return None


class SessionOrchestrator:
    """
    メッセージ送信のオーケストレーター.

    入力検証 → セッション解決 → エージェントストリーム中継（許可フロー含む）
    → セッションID確定 → 永続化 の順に処理し、結果を Result で返す。
    どの失敗も例外として run() の外へは送出しない。
    """

    def __init__(
        self,
        session_store: SessionStore,
        agent_client: AgentStreamClient,
        *,
        on_permission_request: PermissionDecisionCallback | None = None,
        detector: PermissionSignalDetector | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        """
        Initialize SessionOrchestrator.

        Args:
            session_store: セッションストア
            agent_client: エージェントストリームクライアント
            on_permission_request: 許可要求時に呼び出し側の判断を取得するコールバック
                （未設定の場合、許可要求は拒否として扱う）
            detector: 許可シグナル検出器
            logger: 構造化ロガー
        """
        self._session_store = session_store
        self._agent_client = agent_client
        self._on_permission_request = on_permission_request
        self._detector = detector if detector is not None else default_detector()
        self._logger = logger if logger is not None else get_logger(__name__)

    async def run(
        self,
        raw_input: StreamInput | Mapping[str, Any],
        on_chunk: ChunkSink,
    ) -> Result[StreamOutcome, OrchestratorError]:
        """
        メッセージをエージェントへ送信し、応答をストリーミングで中継する.

        Args:
            raw_input: 入力（message, sessionId, cwd, allowedTools, bypassPermissions）
            on_chunk: チャンクを受け取るシンク

        Returns:
            成功時は Ok(StreamOutcome)、失敗時は Err(OrchestratorError)
        """
        try:
            return await self._run(raw_input, on_chunk)
        except Exception as e:
            self._logger.exception("Unexpected error occurred")
            return Err(UnexpectedError("Unexpected error in run", cause=e))

    async def _run(
        self,
        raw_input: StreamInput | Mapping[str, Any],
        on_chunk: ChunkSink,
    ) -> Result[StreamOutcome, OrchestratorError]:
        validated = validate_stream_input(raw_input)
        if isinstance(validated, Err):
            self._logger.error(
                "Input validation failed",
                error_kind=validated.error.kind.value,
                errors=validated.error.details.get("errors"),
            )
            return validated
        params = validated.value

        session: Session | None = None
        if params.session_id:
            found = await self._find_session(params.session_id)
            if isinstance(found, Err):
                return found
            session = found.value

        cwd = params.cwd or (session.cwd if session is not None else None)
        if not cwd:
            error = PreconditionError("Working directory could not be resolved")
            self._logger.error("Missing cwd", error_kind=error.kind.value)
            return Err(error)

        streamed = await self._stream(params, session, cwd, on_chunk)
        if isinstance(streamed, Err):
            return streamed
        messages = streamed.value

        if not params.session_id:
            if not params.cwd:
                error = PreconditionError("cwd is required when creating a new session")
                self._logger.error("Missing cwd for new session", error_kind=error.kind.value)
                return Err(error)
            created = await self._create_session(messages, params.cwd)
            if isinstance(created, Err):
                return created
            session = created.value

        if session is None:
            error = PreconditionError("Session was not created or found")
            self._logger.error("Session unresolved", error_kind=error.kind.value)
            return Err(error)

        session = await self._refresh_session(session)
        self._logger.info(
            "Message stream completed",
            session_id=session.id,
            message_count=len(messages),
        )
        return Ok(StreamOutcome(session=session, messages=messages))

    async def _find_session(self, session_id: str) -> Result[Session, OrchestratorError]:
        """既存セッションを取得する."""
        try:
            session = await self._session_store.find_by_id(session_id)
        except Exception as e:
            self._logger.exception("Session retrieval failed", session_id=session_id)
            return Err(
                SessionLookupError(
                    "Failed to get session", cause=e, details={"session_id": session_id}
                )
            )

        if session is None:
            error = SessionNotFoundError(session_id)
            self._logger.error(
                "Session not found", session_id=session_id, error_kind=error.kind.value
            )
            return Err(error)
        return Ok(session)

    async def _stream(
        self,
        params: StreamInput,
        session: Session | None,
        cwd: str,
        on_chunk: ChunkSink,
    ) -> Result[list[Any], OrchestratorError]:
        """
        エージェントストリームを中継し、許可要求があれば呼び出し側の判断に従って再開する.

        Returns:
            全ストリームで受け取った構造化メッセージ（到着順）
        """
        machine = PermissionAuthorizationStateMachine(self._detector, self._logger)
        relay = ChunkRelay(on_chunk, machine, self._logger)

        message = params.message
        allowed_tools = list(params.allowed_tools or [])
        resume_id = session.id if session is not None else None

        while True:
            stream_params = StreamParams(
                message=message,
                cwd=cwd,
                resume_id=resume_id,
                allowed_tools=tuple(allowed_tools),
                bypass_permissions=params.bypass_permissions,
            )
            try:
                await relay.relay(self._agent_client.open_stream(stream_params))
            except ChunkSinkError:
                raise
            except Exception as e:
                self._logger.exception(
                    "Agent streaming call failed", resume_id=resume_id, cwd=cwd
                )
                return Err(UpstreamError("Failed to send message to agent", cause=e))

            if not machine.is_waiting:
                return Ok(relay.messages)

            request = machine.pending_request
            decision = await self._await_decision(request) if request else None
            if decision is None:
                machine.deny()
                return Ok(relay.messages)

            directive = validate_continue_directive(decision)
            if isinstance(directive, Err):
                machine.deny()
                self._logger.error(
                    "Continue directive validation failed",
                    error_kind=directive.error.kind.value,
                    errors=directive.error.details.get("errors"),
                )
                return directive

            allowed_tools = machine.grant(directive.value, allowed_tools)
            machine.reset()
            message = directive.value.message
            resume_id = resume_id or _known_session_id(relay.messages)
            if resume_id is None:
                error = MissingSessionIdError("Agent did not return a session id to resume")
                self._logger.error("Cannot resume stream", error_kind=error.kind.value)
                return Err(error)

            self._logger.info(
                "Resuming agent stream with extended allow-list",
                resume_id=resume_id,
                allowed_tools=allowed_tools,
            )

    async def _await_decision(
        self, request: PermissionRequest
    ) -> ContinueDirective | Mapping[str, Any] | None:
        """呼び出し側の許可判断を待つ（タイムアウトなし）."""
        if self._on_permission_request is None:
            self._logger.info(
                "No permission handler configured, denying",
                tool_name=request.tool_name,
            )
            return None
        return await self._on_permission_request(request)

    async def _create_session(
        self, messages: list[Any], cwd: str
    ) -> Result[Session, OrchestratorError]:
        """エージェントが割り当てたIDで新規セッションを作成する."""
        session_id = find_result_session_id(messages)
        if session_id is None:
            error = MissingSessionIdError("Agent did not return a session id")
            self._logger.error(
                "Session id missing from agent result",
                error_kind=error.kind.value,
                message_count=len(messages),
            )
            return Err(error)

        try:
            session = await self._session_store.upsert(
                id=session_id, project_id=None, name=None, cwd=cwd
            )
        except Exception as e:
            self._logger.exception("Session creation failed", session_id=session_id)
            return Err(
                SessionPersistenceError(
                    "Failed to create session",
                    cause=e,
                    details={"session_id": session_id},
                )
            )
        self._logger.info("Session created", session_id=session.id, cwd=cwd)
        return Ok(session)

    async def _refresh_session(self, session: Session) -> Session:
        """
        通信成功後にセッションを再保存する.

        失敗しても会話結果は破棄せず、直前のセッションをそのまま返す。
        """
        try:
            return await self._session_store.upsert(
                id=session.id,
                project_id=session.project_id,
                name=session.name,
                cwd=session.cwd,
            )
        except Exception:
            self._logger.warning(
                "Session refresh failed, keeping last known session",
                session_id=session.id,
                exc_info=True,
            )
            return session


def create_orchestrator(
    config: Config | None = None,
    on_permission_request: PermissionDecisionCallback | None = None,
) -> SessionOrchestrator:
    """
    設定からオーケストレーターを組み立てる.

    ロギングを設定値で初期化してから、JSON ファイルストアと ACP クライアントを接続する。

    Args:
        config: アプリケーション設定（省略時は get_config()）
        on_permission_request: 許可要求時のコールバック

    Returns:
        JSON ファイルストアと ACP クライアントを使うオーケストレーター
    """
    from agent_session_bridge.infrastructure.acp_client import ACPStreamClient
    from agent_session_bridge.infrastructure.config import get_config
    from agent_session_bridge.infrastructure.logging import configure_logging
    from agent_session_bridge.infrastructure.session_store import JsonSessionStore

    if config is None:
        config = get_config()

    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)
    logger.info(
        "Creating session orchestrator",
        agent_command=config.agent_command,
        sessions_file=str(config.sessions_file),
    )

    return SessionOrchestrator(
        JsonSessionStore(config.sessions_file),
        ACPStreamClient(command=config.agent_command),
        on_permission_request=on_permission_request,
        detector=default_detector(config.permission_keywords),
    )
