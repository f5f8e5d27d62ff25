"""ACP Client - Agent Client Protocol stream adapter."""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
from collections.abc import AsyncIterator
from typing import Any

from acp import (
    PROTOCOL_VERSION,
    RequestPermissionResponse,
    spawn_agent_process,
    text_block,
)
from acp.interfaces import Agent
from acp.schema import (
    AgentMessageChunk,
    AgentThoughtChunk,
    AllowedOutcome,
    DeniedOutcome,
    Implementation,
    PermissionOption,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
    ToolCallUpdate,
)

from agent_session_bridge.application.authorization import find_matching_grant
from agent_session_bridge.application.models import (
    PermissionRequest,
    PermissionRequestChunk,
    ResultMessage,
    StreamParams,
    SystemMessage,
    TextChunk,
    ThinkingChunk,
    ToolResultChunk,
    ToolUse,
    ToolUseChunk,
)
from agent_session_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

CLIENT_NAME = "agent-session-bridge"
CLIENT_VERSION = "0.1.0"

# ターン終了を示すキュー上の番兵
_END_OF_TURN = object()

_FINISHED_STATUSES = frozenset({"completed", "failed"})


def _resolve_tool_name(meta: object, kind: str | None, title: str | None) -> str:
    """
    ツール呼び出しのツール名を解決する.

    エージェントが _meta.claudeCode.toolName を付与していればそれを使い、
    なければ kind、title の順にフォールバックする。

    Returns:
        ToolGrant の Name 部分として使える文字列（最低でも "unknown"）
    """
    if isinstance(meta, dict):
        claude_meta = meta.get("claudeCode")
        if isinstance(claude_meta, dict):
            tool_name = claude_meta.get("toolName")
            if isinstance(tool_name, str) and tool_name:
                return tool_name

    base = kind or (title.split(":", 1)[0] if title else "")
    normalized = re.sub(r"\W+", "_", base.strip()).strip("_")
    if not normalized:
        return "unknown"
    if normalized[0].isdigit():
        normalized = f"_{normalized}"
    return normalized


def _raw_input_to_dict(raw_input: object) -> dict[str, Any]:
    """ToolCall の raw_input を辞書に変換する."""
    if raw_input is None:
        return {}
    if isinstance(raw_input, dict):
        return dict(raw_input)
    return {"input": raw_input}


def _format_tool_output(content: object, raw_output: object) -> str:
    """ToolCall の content / raw_output を文字列に変換する."""
    parts: list[str] = []
    if isinstance(content, list):
        for item in content:
            block = getattr(item, "content", None)
            text = getattr(block, "text", None) or getattr(item, "text", None)
            if isinstance(text, str) and text:
                parts.append(text)
    if not parts and raw_output is not None:
        if isinstance(raw_output, str):
            parts.append(raw_output)
        else:
            parts.append(json.dumps(raw_output, ensure_ascii=False, default=str))
    return "\n".join(parts)


def _select_option(options: list[PermissionOption], kinds: tuple[str, ...]) -> str | None:
    for kind in kinds:
        for option in options:
            if option.kind == kind:
                return option.option_id
    return None


class _TurnClient:
    """1ターン分の ACP Client プロトコル実装（更新をキューへ流す）."""

    def __init__(self, params: StreamParams, queue: asyncio.Queue[Any]) -> None:
        self.params = params
        self.queue = queue
        # load_session 中の履歴再生は中継しない
        self.accepting = False
        self.text_parts: list[str] = []
        self.tool_names: dict[str, str] = {}

    async def request_permission(
        self,
        options: list[PermissionOption],
        session_id: str,
        tool_call: ToolCallUpdate,
        **kwargs: Any,
    ) -> RequestPermissionResponse:
        """パーミッション要求を許可リストに基づいて応答する."""
        name = self.tool_names.get(tool_call.tool_call_id) or _resolve_tool_name(
            getattr(tool_call, "field_meta", None), tool_call.kind, tool_call.title
        )
        request = PermissionRequest.from_tool_use(
            ToolUse(
                id=tool_call.tool_call_id,
                name=name,
                input=_raw_input_to_dict(tool_call.raw_input),
            )
        )

        matched = None
        if not self.params.bypass_permissions:
            matched = find_matching_grant(self.params.allowed_tools, request)

        if self.params.bypass_permissions or matched is not None:
            option_id = _select_option(options, ("allow_once", "allow_always"))
            if option_id is not None:
                logger.debug(
                    "Permission allowed",
                    tool_name=request.tool_name,
                    matched_grant=matched,
                    bypass=bool(self.params.bypass_permissions),
                )
                return RequestPermissionResponse(
                    outcome=AllowedOutcome(outcome="selected", option_id=option_id)
                )

        logger.info(
            "Permission required",
            tool_name=request.tool_name,
            tool_command=request.tool_command,
        )
        if self.accepting:
            self.queue.put_nowait(PermissionRequestChunk(request=request))

        reject_id = _select_option(options, ("reject_once",))
        if reject_id is not None:
            return RequestPermissionResponse(
                outcome=AllowedOutcome(outcome="selected", option_id=reject_id)
            )
        return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))

    async def session_update(self, session_id: str, update: Any, **kwargs: Any) -> None:
        """session/update 通知をチャンクに変換してキューへ積む."""
        if not self.accepting:
            return

        if isinstance(update, AgentMessageChunk):
            if isinstance(update.content, TextContentBlock) and update.content.text:
                self.text_parts.append(update.content.text)
                self.queue.put_nowait(TextChunk(text=update.content.text))
        elif isinstance(update, AgentThoughtChunk):
            if isinstance(update.content, TextContentBlock) and update.content.text:
                self.queue.put_nowait(ThinkingChunk(text=update.content.text))
        elif isinstance(update, ToolCallStart):
            name = _resolve_tool_name(
                getattr(update, "field_meta", None), update.kind, update.title
            )
            self.tool_names[update.tool_call_id] = name
            self.queue.put_nowait(
                ToolUseChunk(
                    id=update.tool_call_id,
                    name=name,
                    input=_raw_input_to_dict(update.raw_input),
                )
            )
        elif isinstance(update, ToolCallProgress):
            if update.status in _FINISHED_STATUSES:
                self.queue.put_nowait(
                    ToolResultChunk(
                        tool_use_id=update.tool_call_id,
                        content=_format_tool_output(update.content, update.raw_output),
                        is_error=update.status == "failed",
                    )
                )
        else:
            logger.debug("Ignoring session update", update_type=type(update).__name__)

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """拡張メソッド要求（未対応）."""
        logger.warning("ext_method is not implemented", method=method)
        return {}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        """拡張通知（未対応）."""
        logger.debug("Ignoring ext_notification", method=method)

    def on_connect(self, conn: Agent) -> None:
        logger.debug("Connected to ACP agent")


class ACPStreamClient:
    """
    ACP Server と1ターン分のストリームをやり取りするクライアント.

    open_stream() の呼び出しごとにエージェントプロセスを起動し、
    新規セッション作成または resume_id のセッション読み込みを行ってから
    プロンプトを送信する。ストリーム終了時（途中で閉じられた場合も）にプロセスを終了する。
    """

    def __init__(self, command: list[str]) -> None:
        """
        Initialize ACPStreamClient.

        Args:
            command: ACP Server を起動するコマンド（例: ["claude-code-acp"]）

        Raises:
            ValueError: commandが空の場合
        """
        if not command:
            msg = "command must not be empty"
            raise ValueError(msg)
        self.command = command

    async def open_stream(self, params: StreamParams) -> AsyncIterator[Any]:
        """
        プロンプトを送信し、応答をチャンクと構造化メッセージとして順に返す.

        Args:
            params: ストリームパラメータ

        Yields:
            SystemMessage(init) → ChunkData... → ResultMessage
        """
        queue: asyncio.Queue[Any] = asyncio.Queue()
        client = _TurnClient(params, queue)
        command, *args = self.command

        logger.info(
            "Opening agent stream",
            command=self.command,
            cwd=params.cwd,
            resume_id=params.resume_id,
        )

        async with spawn_agent_process(client, command, *args, cwd=params.cwd) as (
            connection,
            _process,
        ):
            await connection.initialize(
                protocol_version=PROTOCOL_VERSION,
                client_info=Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
            )

            if params.resume_id:
                await connection.load_session(
                    cwd=params.cwd, mcp_servers=[], session_id=params.resume_id
                )
                session_id = params.resume_id
            else:
                new_session = await connection.new_session(cwd=params.cwd, mcp_servers=[])
                session_id = new_session.session_id

            yield SystemMessage(subtype="init", session_id=session_id, cwd=params.cwd)

            client.accepting = True
            prompt_task = asyncio.create_task(
                connection.prompt(prompt=[text_block(params.message)], session_id=session_id)
            )
            prompt_task.add_done_callback(lambda _: queue.put_nowait(_END_OF_TURN))
            try:
                while True:
                    item = await queue.get()
                    if item is _END_OF_TURN:
                        break
                    yield item
                response = await prompt_task
            finally:
                if not prompt_task.done():
                    prompt_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await prompt_task

            stop_reason = getattr(response, "stop_reason", None)
            logger.info(
                "Agent turn finished", session_id=session_id, stop_reason=stop_reason
            )
            yield ResultMessage(
                session_id=session_id,
                subtype="success",
                is_error=False,
                result="".join(client.text_parts),
                stop_reason=str(stop_reason) if stop_reason is not None else None,
            )
