"""Tests for the session orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_session_bridge.application.errors import (
    ErrorKind,
    InputValidationError,
    MissingSessionIdError,
    SessionLookupError,
    SessionNotFoundError,
    SessionPersistenceError,
    UnexpectedError,
    UpstreamError,
)
from agent_session_bridge.application.models import (
    PermissionRequest,
    PermissionRequestChunk,
    ResultMessage,
    Session,
    StreamParams,
    SystemMessage,
    TextChunk,
    ToolResultChunk,
    ToolUse,
    ToolUseChunk,
)
from agent_session_bridge.application.orchestrator import (
    SessionOrchestrator,
    create_orchestrator,
)
from agent_session_bridge.application.result import Err, Ok
from agent_session_bridge.infrastructure import config as config_module
from agent_session_bridge.infrastructure.acp_client import ACPStreamClient
from agent_session_bridge.infrastructure.config import Config
from agent_session_bridge.infrastructure.session_store import (
    InMemorySessionStore,
    JsonSessionStore,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

PERMISSION_TEXT = "Claude requested permissions to use Bash, but you haven't granted it yet."


class FakeAgentClient:
    """ターンごとに決まった要素を返すエージェントクライアント."""

    def __init__(self, *turns: list[Any], error: Exception | None = None) -> None:
        self.turns = list(turns)
        self.error = error
        self.calls: list[StreamParams] = []

    async def open_stream(self, params: StreamParams) -> AsyncIterator[Any]:
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        items = self.turns.pop(0) if self.turns else []
        for item in items:
            yield item


def _permission_turn(session_id: str = "abc") -> list[Any]:
    return [
        SystemMessage(session_id=session_id),
        ToolUseChunk(id="t1", name="Bash", input={"command": "rm -rf build"}),
        ToolResultChunk(tool_use_id="t1", content=PERMISSION_TEXT, is_error=True),
        ResultMessage(session_id=session_id, result="I need your approval first."),
    ]


@pytest.fixture
def logger() -> MagicMock:
    """構造化ロガーのモック."""
    return MagicMock()


@pytest.fixture
def store() -> MagicMock:
    """SessionStore のモック（upsert は受け取った値からセッションを返す）."""
    mock = MagicMock()
    mock.find_by_id = AsyncMock(return_value=None)
    mock.upsert = AsyncMock(side_effect=lambda **kwargs: Session(**kwargs))
    return mock


@pytest.fixture
def existing_session() -> Session:
    """既存セッション."""
    return Session(id="s1", cwd="/work", name="demo")


class TestRunValidation:
    """入力検証とセッション解決のテスト."""

    @pytest.mark.asyncio
    async def test_missing_session_id_and_cwd(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """sessionId も cwd もない場合、ストアもエージェントも呼ばれないことを確認する."""
        agent = FakeAgentClient()
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi"}, lambda _: None)

        assert isinstance(result, Err)
        assert isinstance(result.error, InputValidationError)
        store.find_by_id.assert_not_awaited()
        store.upsert.assert_not_awaited()
        assert agent.calls == []
        logger.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_allowed_tools(self, store: MagicMock, logger: MagicMock) -> None:
        """不正な許可文字列で入力全体が拒否されることを確認する."""
        agent = FakeAgentClient()
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run(
            {"message": "hi", "sessionId": "s1", "allowedTools": ["rm -rf"]},
            lambda _: None,
        )

        assert result.is_err()
        assert result.unwrap_err().kind == ErrorKind.VALIDATION
        store.find_by_id.assert_not_awaited()
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_session_not_found(self, store: MagicMock, logger: MagicMock) -> None:
        """存在しないセッションではエージェントが呼ばれないことを確認する."""
        agent = FakeAgentClient()
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run(
            {"message": "hi", "sessionId": "missing"}, lambda _: None
        )

        error = result.unwrap_err()
        assert isinstance(error, SessionNotFoundError)
        assert error.session_id == "missing"
        store.find_by_id.assert_awaited_once_with("missing")
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_session_lookup_failure(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """ストアの取得失敗が原因付きで返されることを確認する."""
        cause = OSError("disk error")
        store.find_by_id.side_effect = cause
        agent = FakeAgentClient()
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi", "sessionId": "s1"}, lambda _: None)

        error = result.unwrap_err()
        assert isinstance(error, SessionLookupError)
        assert error.cause is cause
        assert agent.calls == []
        logger.exception.assert_called_once()


class TestRunStreaming:
    """ストリーム中継とセッション確定のテスト."""

    @pytest.mark.asyncio
    async def test_new_session_created_from_result(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """結果メッセージのIDで新規セッションが作成されることを確認する."""
        result_message = ResultMessage(session_id="abc")
        agent = FakeAgentClient([result_message])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp/x"}, lambda _: None)

        assert isinstance(result, Ok)
        assert result.value.session.id == "abc"
        assert result.value.session.cwd == "/tmp/x"
        assert result.value.messages == [result_message]
        assert agent.calls[0].resume_id is None
        assert agent.calls[0].cwd == "/tmp/x"
        store.find_by_id.assert_not_awaited()
        assert store.upsert.await_count == 2
        store.upsert.assert_any_await(id="abc", project_id=None, name=None, cwd="/tmp/x")

    @pytest.mark.asyncio
    async def test_existing_session_cwd_used(
        self, store: MagicMock, logger: MagicMock, existing_session: Session
    ) -> None:
        """既存セッションの cwd がエージェントに渡されることを確認する."""
        store.find_by_id.return_value = existing_session
        agent = FakeAgentClient([ResultMessage(session_id="s1")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "go", "sessionId": "s1"}, lambda _: None)

        assert result.is_ok()
        assert agent.calls[0].cwd == "/work"
        assert agent.calls[0].resume_id == "s1"
        assert agent.calls[0].message == "go"
        store.upsert.assert_awaited_once_with(
            id="s1", project_id=None, name="demo", cwd="/work"
        )

    @pytest.mark.asyncio
    async def test_caller_cwd_takes_precedence(
        self, store: MagicMock, logger: MagicMock, existing_session: Session
    ) -> None:
        """呼び出し側の cwd が既存セッションの cwd より優先されることを確認する."""
        store.find_by_id.return_value = existing_session
        agent = FakeAgentClient([ResultMessage(session_id="s1")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        await orchestrator.run(
            {
                "message": "go",
                "sessionId": "s1",
                "cwd": "/elsewhere",
                "allowedTools": ["Read(*)"],
                "bypassPermissions": True,
            },
            lambda _: None,
        )

        assert agent.calls[0] == StreamParams(
            message="go",
            cwd="/elsewhere",
            resume_id="s1",
            allowed_tools=("Read(*)",),
            bypass_permissions=True,
        )

    @pytest.mark.asyncio
    async def test_chunks_relayed_in_order(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """チャンクが発生順にシンクへ渡されることを確認する."""
        chunks = [TextChunk(text=str(i)) for i in range(5)]
        agent = FakeAgentClient([*chunks, ResultMessage(session_id="abc")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)
        received: list[Any] = []

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp"}, received.append)

        assert result.is_ok()
        assert received == chunks
        assert result.unwrap().messages == [ResultMessage(session_id="abc")]

    @pytest.mark.asyncio
    async def test_missing_result_message(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """新規セッションで結果メッセージがない場合のエラーを確認する."""
        agent = FakeAgentClient([TextChunk(text="hello")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp"}, lambda _: None)

        assert isinstance(result.unwrap_err(), MissingSessionIdError)
        store.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_creation_failure(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """新規セッションの保存失敗が PersistenceError になることを確認する."""
        cause = OSError("read-only")
        store.upsert.side_effect = cause
        agent = FakeAgentClient([ResultMessage(session_id="abc")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp"}, lambda _: None)

        error = result.unwrap_err()
        assert isinstance(error, SessionPersistenceError)
        assert error.cause is cause
        store.upsert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_failure_is_swallowed(
        self, store: MagicMock, logger: MagicMock, existing_session: Session
    ) -> None:
        """後続の再保存が失敗しても成功として返されることを確認する."""
        store.find_by_id.return_value = existing_session
        store.upsert.side_effect = OSError("disk full")
        message = ResultMessage(session_id="s1")
        agent = FakeAgentClient([message])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "go", "sessionId": "s1"}, lambda _: None)

        assert isinstance(result, Ok)
        assert result.value.session is existing_session
        assert result.value.messages == [message]
        logger.warning.assert_called_once()
        assert logger.warning.call_args.kwargs["session_id"] == "s1"

    @pytest.mark.asyncio
    async def test_refresh_failure_after_creation(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """新規作成後の再保存失敗では作成直後のセッションが返されることを確認する."""
        created = Session(id="abc", cwd="/tmp")
        store.upsert.side_effect = [created, OSError("disk full")]
        agent = FakeAgentClient([ResultMessage(session_id="abc")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp"}, lambda _: None)

        assert result.unwrap().session is created

    @pytest.mark.asyncio
    async def test_upstream_failure(self, store: MagicMock, logger: MagicMock) -> None:
        """エージェント呼び出しの失敗が UpstreamError になることを確認する."""
        cause = ConnectionError("agent crashed")
        agent = FakeAgentClient(error=cause)
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp"}, lambda _: None)

        error = result.unwrap_err()
        assert isinstance(error, UpstreamError)
        assert error.cause is cause
        assert len(agent.calls) == 1
        store.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sink_failure_is_wrapped(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """シンクの例外が境界で包まれて返されることを確認する."""
        agent = FakeAgentClient([TextChunk(text="x"), ResultMessage(session_id="abc")])
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        def sink(chunk: Any) -> None:
            raise RuntimeError("consumer gone")

        result = await orchestrator.run({"message": "hi", "cwd": "/tmp"}, sink)

        error = result.unwrap_err()
        assert isinstance(error, UnexpectedError)
        assert error.kind == ErrorKind.UNEXPECTED
        store.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_runs_keep_session_id(
        self, logger: MagicMock, existing_session: Session
    ) -> None:
        """同じセッションへの繰り返し実行でIDが変わらないことを確認する."""
        store = InMemorySessionStore([existing_session])
        agent = FakeAgentClient(
            [ResultMessage(session_id="s1")], [ResultMessage(session_id="s1")]
        )
        orchestrator = SessionOrchestrator(store, agent, logger=logger)

        first = await orchestrator.run({"message": "go", "sessionId": "s1"}, lambda _: None)
        second = await orchestrator.run({"message": "go", "sessionId": "s1"}, lambda _: None)

        assert first.unwrap().session.id == "s1"
        assert second.unwrap().session.id == "s1"
        assert len(second.unwrap().messages) == 1
        assert second.unwrap().session.created_at == existing_session.created_at


class TestRunPermissionFlow:
    """ツール実行許可フローのテスト."""

    @pytest.mark.asyncio
    async def test_grant_resumes_with_extended_allow_list(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """許可後に拡張した許可リストで再開されることを確認する."""
        agent = FakeAgentClient(
            _permission_turn(),
            [TextChunk(text="done"), ResultMessage(session_id="abc")],
        )
        decide = AsyncMock(
            return_value={"message": "continue", "allowedTools": ["Bash(rm -rf build)"]}
        )
        orchestrator = SessionOrchestrator(
            store, agent, on_permission_request=decide, logger=logger
        )
        received: list[Any] = []

        result = await orchestrator.run(
            {"message": "clean", "cwd": "/w", "allowedTools": ["Read(*)"]},
            received.append,
        )

        outcome = result.unwrap()
        decide.assert_awaited_once()
        request = decide.await_args.args[0]
        assert isinstance(request, PermissionRequest)
        assert request.tool_name == "Bash"
        assert request.tool_command == "rm -rf build"

        assert [type(c).__name__ for c in received] == [
            "ToolUseChunk",
            "ToolResultChunk",
            "PermissionRequestChunk",
            "TextChunk",
        ]
        assert len(agent.calls) == 2
        assert agent.calls[1].message == "continue"
        assert agent.calls[1].resume_id == "abc"
        assert agent.calls[1].cwd == "/w"
        assert agent.calls[1].allowed_tools == ("Read(*)", "Bash(rm -rf build)")
        assert len(outcome.messages) == 3
        assert outcome.session.id == "abc"

    @pytest.mark.asyncio
    async def test_denied_returns_partial_messages(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """拒否時は再開せず、それまでのメッセージを成功として返すことを確認する."""
        agent = FakeAgentClient(_permission_turn())
        decide = AsyncMock(return_value=None)
        orchestrator = SessionOrchestrator(
            store, agent, on_permission_request=decide, logger=logger
        )

        result = await orchestrator.run({"message": "clean", "cwd": "/w"}, lambda _: None)

        outcome = result.unwrap()
        assert len(agent.calls) == 1
        assert len(outcome.messages) == 2
        assert outcome.session.id == "abc"

    @pytest.mark.asyncio
    async def test_no_handler_denies(self, store: MagicMock, logger: MagicMock) -> None:
        """コールバック未設定の場合は拒否として扱われることを確認する."""
        agent = FakeAgentClient(_permission_turn())
        orchestrator = SessionOrchestrator(store, agent, logger=logger)
        received: list[Any] = []

        result = await orchestrator.run({"message": "clean", "cwd": "/w"}, received.append)

        assert result.is_ok()
        assert len(agent.calls) == 1
        assert sum(isinstance(c, PermissionRequestChunk) for c in received) == 1

    @pytest.mark.asyncio
    async def test_invalid_directive(self, store: MagicMock, logger: MagicMock) -> None:
        """不正な再開指示が検証エラーになり、再開されないことを確認する."""
        agent = FakeAgentClient(_permission_turn(), [ResultMessage(session_id="abc")])
        decide = AsyncMock(return_value={"message": "continue", "allowedTools": ["rm"]})
        orchestrator = SessionOrchestrator(
            store, agent, on_permission_request=decide, logger=logger
        )

        result = await orchestrator.run({"message": "clean", "cwd": "/w"}, lambda _: None)

        assert result.unwrap_err().kind == ErrorKind.VALIDATION
        assert len(agent.calls) == 1
        store.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_signal_while_waiting(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """待機中の2件目のシグナルは記録のみで、判断は1回だけ求められることを確認する."""
        turn = [
            ToolUseChunk(id="t1", name="Bash", input={"command": "rm -rf build"}),
            ToolResultChunk(tool_use_id="t1", content=PERMISSION_TEXT),
            ToolUseChunk(id="t2", name="Bash", input={"command": "rm -rf dist"}),
            ToolResultChunk(tool_use_id="t2", content="permission denied"),
            ResultMessage(session_id="abc"),
        ]
        agent = FakeAgentClient(turn)
        decide = AsyncMock(return_value=None)
        orchestrator = SessionOrchestrator(
            store, agent, on_permission_request=decide, logger=logger
        )

        result = await orchestrator.run({"message": "clean", "cwd": "/w"}, lambda _: None)

        assert result.is_ok()
        decide.assert_awaited_once()
        assert decide.await_args.args[0].tool_command == "rm -rf build"
        logger.warning.assert_called_once()

    @pytest.mark.asyncio
    async def test_structured_permission_event(
        self, store: MagicMock, logger: MagicMock, existing_session: Session
    ) -> None:
        """構造化された許可要求イベントでも許可フローが動くことを確認する."""
        store.find_by_id.return_value = existing_session
        request = PermissionRequest.from_tool_use(
            ToolUse(id="t9", name="Write", input={"file_path": "/work/a.txt"})
        )
        agent = FakeAgentClient(
            [PermissionRequestChunk(request=request), ResultMessage(session_id="s1")],
            [ResultMessage(session_id="s1")],
        )

        async def decide(req: PermissionRequest) -> dict[str, Any]:
            return {"message": "continue", "allowedTools": [req.suggested_grant()]}

        orchestrator = SessionOrchestrator(
            store, agent, on_permission_request=decide, logger=logger
        )

        result = await orchestrator.run({"message": "write", "sessionId": "s1"}, lambda _: None)

        assert result.is_ok()
        assert agent.calls[1].allowed_tools == ("Write(/work/a.txt)",)
        assert agent.calls[1].resume_id == "s1"

    @pytest.mark.asyncio
    async def test_decision_callback_failure(
        self, store: MagicMock, logger: MagicMock
    ) -> None:
        """判断コールバックの例外が境界で包まれることを確認する."""
        agent = FakeAgentClient(_permission_turn())
        decide = AsyncMock(side_effect=RuntimeError("ui closed"))
        orchestrator = SessionOrchestrator(
            store, agent, on_permission_request=decide, logger=logger
        )

        result = await orchestrator.run({"message": "clean", "cwd": "/w"}, lambda _: None)

        error = result.unwrap_err()
        assert isinstance(error, UnexpectedError)
        assert isinstance(error.cause, RuntimeError)


class TestCreateOrchestrator:
    """create_orchestrator のテスト."""

    def test_wires_components(self, tmp_path: Path) -> None:
        """設定からJSONストアとACPクライアントで組み立てられることを確認する."""
        config = Config(
            agent_command=["my-agent"],
            sessions_file=tmp_path / "sessions.json",
            permission_keywords=["needs approval"],
        )

        with patch("agent_session_bridge.infrastructure.logging.configure_logging"):
            orchestrator = create_orchestrator(config)

        assert isinstance(orchestrator, SessionOrchestrator)
        assert isinstance(orchestrator._session_store, JsonSessionStore)
        assert orchestrator._session_store.path == tmp_path / "sessions.json"
        assert isinstance(orchestrator._agent_client, ACPStreamClient)
        assert orchestrator._agent_client.command == ["my-agent"]

    def test_configures_logging_from_config(self, tmp_path: Path) -> None:
        """設定のログ項目でロギングが初期化されることを確認する."""
        config = Config(
            sessions_file=tmp_path / "sessions.json",
            log_level="DEBUG",
            log_dir=str(tmp_path / "logs"),
            log_backup_count=3,
        )

        with patch(
            "agent_session_bridge.infrastructure.logging.configure_logging"
        ) as mock_configure:
            create_orchestrator(config)

        mock_configure.assert_called_once_with(
            log_level="DEBUG",
            log_dir=str(tmp_path / "logs"),
            log_backup_count=3,
        )

    def test_falls_back_to_global_config(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """設定を省略した場合はグローバル設定が使われることを確認する."""
        global_config = Config(
            agent_command=["global-agent"],
            sessions_file=tmp_path / "global.json",
        )
        monkeypatch.setattr(config_module, "_config", global_config)

        with patch("agent_session_bridge.infrastructure.logging.configure_logging"):
            orchestrator = create_orchestrator()

        assert orchestrator._agent_client.command == ["global-agent"]
        assert orchestrator._session_store.path == tmp_path / "global.json"
