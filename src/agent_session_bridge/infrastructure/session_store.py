"""Session persistence."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from agent_session_bridge.application.models import Session
from agent_session_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)


class SessionStoreError(Exception):
    """セッションの読み書きに失敗した場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize SessionStoreError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(f"Session store error: {message}")


def _merge(existing: Session | None, **fields: object) -> Session:
    """既存レコードの created_at を引き継ぎ、updated_at を更新したセッションを作る."""
    now = datetime.now()
    created_at = existing.created_at if existing is not None else now
    return Session.model_validate({**fields, "created_at": created_at, "updated_at": now})


class InMemorySessionStore:
    """メモリ上のセッションストア."""

    def __init__(self, sessions: list[Session] | None = None) -> None:
        self._sessions: dict[str, Session] = {s.id: s for s in sessions or []}

    async def find_by_id(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def upsert(
        self,
        *,
        id: str,  # noqa: A002
        project_id: str | None,
        name: str | None,
        cwd: str,
    ) -> Session:
        session = _merge(
            self._sessions.get(id), id=id, project_id=project_id, name=name, cwd=cwd
        )
        self._sessions[id] = session
        return session

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())


class JsonSessionStore:
    """
    JSONファイルに保存するセッションストア.

    ファイルはセッションIDをキーとするオブジェクトで、存在しない場合は空として扱う。
    読み書きは asyncio.Lock で直列化する。
    """

    def __init__(self, path: Path | str) -> None:
        """
        Initialize JsonSessionStore.

        Args:
            path: 保存先ファイルのパス
        """
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Session]:
        """
        ファイルからセッションを読み込む.

        Raises:
            SessionStoreError: ファイルの読み込み・パースに失敗した場合
        """
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.exception("Failed to read sessions file", path=str(self.path))
            raise SessionStoreError(f"failed to read {self.path}") from e

        if not isinstance(data, dict):
            msg = f"{self.path} must contain a JSON object"
            raise SessionStoreError(msg)

        try:
            return {key: Session.model_validate(value) for key, value in data.items()}
        except ValidationError as e:
            logger.exception("Invalid session record", path=str(self.path))
            raise SessionStoreError(f"invalid session record in {self.path}") from e

    def _save(self, sessions: dict[str, Session]) -> None:
        content = json.dumps(
            {key: s.model_dump(mode="json") for key, s in sessions.items()},
            indent=2,
            ensure_ascii=False,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.exception("Failed to write sessions file", path=str(self.path))
            raise SessionStoreError(f"failed to write {self.path}") from e

    async def find_by_id(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._load().get(session_id)

    async def upsert(
        self,
        *,
        id: str,  # noqa: A002
        project_id: str | None,
        name: str | None,
        cwd: str,
    ) -> Session:
        async with self._lock:
            sessions = self._load()
            session = _merge(
                sessions.get(id), id=id, project_id=project_id, name=name, cwd=cwd
            )
            sessions[id] = session
            self._save(sessions)

        logger.debug("Session saved", session_id=id, path=str(self.path))
        return session
