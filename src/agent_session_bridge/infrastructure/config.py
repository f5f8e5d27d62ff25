"""Configuration management."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_session_bridge.application.authorization import DEFAULT_PERMISSION_KEYWORDS


def _parse_str_list(v: str | list[str]) -> list[str]:
    """JSON配列文字列または単一文字列をリストに変換する."""
    if isinstance(v, str):
        try:
            parsed = json.loads(v)
        except json.JSONDecodeError:
            return [v]
        if isinstance(parsed, list):
            return [str(p) for p in parsed]
        return [v]
    return v


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ACP Server設定
    agent_command: list[str] = Field(
        default=["claude-code-acp"],
        description="ACP Server起動コマンド",
    )

    # セッション保存先
    sessions_file: Path = Field(
        default=Path("sessions.json"),
        description="セッションを保存するJSONファイルのパス",
    )

    # 許可要求を示すキーワード
    permission_keywords: list[str] = Field(
        default=list(DEFAULT_PERMISSION_KEYWORDS),
        description="エージェント出力中で許可要求とみなすフレーズ",
    )

    # ログ設定
    log_level: str = Field(default="INFO", description="latest.logのログレベル")
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_backup_count: int = Field(
        default=7, ge=0, description="ログローテーションの保持日数"
    )

    @field_validator("agent_command", mode="before")
    @classmethod
    def parse_agent_command(cls, v: str | list[str]) -> list[str]:
        """agent_commandをパースする（JSON文字列または配列）."""
        return _parse_str_list(v)

    @field_validator("agent_command")
    @classmethod
    def check_agent_command(cls, v: list[str]) -> list[str]:
        """agent_commandが空でないことを確認する."""
        if not v:
            msg = "agent_command must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("permission_keywords", mode="before")
    @classmethod
    def parse_permission_keywords(cls, v: str | list[str]) -> list[str]:
        """permission_keywordsをパースする（JSON文字列または配列）."""
        return _parse_str_list(v)

    @field_validator("sessions_file", mode="before")
    @classmethod
    def parse_sessions_file(cls, v: str | Path) -> Path:
        """sessions_fileをPathに変換する."""
        if isinstance(v, str):
            return Path(v)
        return v


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
