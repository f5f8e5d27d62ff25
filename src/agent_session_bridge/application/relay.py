"""Order-preserving relay of agent stream output."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any, Protocol

from agent_session_bridge.application.models import (
    CHUNK_TYPES,
    MESSAGE_TYPES,
    PermissionRequest,
    PermissionRequestChunk,
)
from agent_session_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import structlog

# コールバック型定義
ChunkSink = Callable[[Any], None]  # (ChunkData) -> None


class ChunkSinkError(Exception):
    """シンクがチャンク処理中に例外を送出した場合の例外."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Chunk sink failed: {cause}")
        self.cause = cause


class StreamInspector(Protocol):
    """チャンクとメッセージを転送前に検査する."""

    def observe(self, item: Any) -> PermissionRequest | None: ...


class ChunkRelay:
    """
    エージェントストリームのチャンクをシンクへ転送し、構造化メッセージをバッファする.

    チャンクは到着順に同期的にシンクへ渡し、シンクが戻るまで次の単位へ進まない。
    シンクが例外を送出した場合はその時点で中断する。
    """

    def __init__(
        self,
        sink: ChunkSink,
        inspector: StreamInspector | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        """
        Initialize ChunkRelay.

        Args:
            sink: チャンクを受け取る呼び出し側の関数
            inspector: 転送前にチャンク・メッセージを検査するもの（許可状態機械）
            logger: 構造化ロガー
        """
        self._sink = sink
        self._inspector = inspector
        self._logger = logger if logger is not None else get_logger(__name__)
        self._messages: list[Any] = []
        self._chunk_count = 0

    @property
    def messages(self) -> list[Any]:
        """これまでにバッファした構造化メッセージ（到着順）."""
        return list(self._messages)

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    def _deliver(self, chunk: Any) -> None:
        try:
            self._sink(chunk)
        except Exception as e:
            raise ChunkSinkError(e) from e
        self._chunk_count += 1

    def _inspect(self, item: Any) -> PermissionRequest | None:
        if self._inspector is None:
            return None
        return self._inspector.observe(item)

    async def relay(self, stream: AsyncIterator[Any]) -> list[Any]:
        """
        ストリームを1回だけ最後まで中継する.

        Args:
            stream: ChunkData と StructuredMessage が混在する非同期ストリーム

        Returns:
            このストリームで受け取った構造化メッセージ（到着順）

        Raises:
            TypeError: ChunkData でも StructuredMessage でもない要素を受け取った場合
        """
        batch: list[Any] = []
        try:
            async for item in stream:
                if isinstance(item, CHUNK_TYPES):
                    request = self._inspect(item)
                    self._deliver(item)
                elif isinstance(item, MESSAGE_TYPES):
                    request = self._inspect(item)
                    batch.append(item)
                    self._messages.append(item)
                else:
                    msg = f"Unexpected stream item: {type(item).__name__}"
                    raise TypeError(msg)

                # キーワード検出の場合は許可要求チャンクを合成して通知する
                if request is not None and not isinstance(item, PermissionRequestChunk):
                    self._deliver(PermissionRequestChunk(request=request))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self._logger.debug(
            "Relayed agent stream",
            chunk_count=self._chunk_count,
            message_count=len(batch),
        )
        return batch
