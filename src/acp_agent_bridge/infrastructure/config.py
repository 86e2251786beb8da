"""Configuration management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from acp_agent_bridge.application.models import PermissionMode

# エージェントごとの ACP 起動コマンド
DEFAULT_AGENT_COMMANDS: dict[str, list[str]] = {
    "claude": ["claude-code-acp"],
    "codex": ["codex-acp"],
    "gemini": ["gemini", "--experimental-acp"],
    "opencode": ["opencode", "acp"],
    "auggie": ["auggie", "--acp"],
    "kimi": ["kimi", "--acp"],
}


class UnknownAgentError(ValueError):
    """起動コマンドが設定されていないエージェントが指定された場合の例外."""

    def __init__(self, agent: str) -> None:
        """
        Initialize UnknownAgentError.

        Args:
            agent: エージェント識別子
        """
        super().__init__(f"No command configured for agent '{agent}'")
        self.agent = agent


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # エージェント設定
    agent: str = Field(
        default="claude",
        description="使用するエージェント（claude, codex, gemini, opencode, auggie, kimi）",
    )
    agent_command: Annotated[list[str] | None, NoDecode] = Field(
        default=None,
        description="ACP Server起動コマンド（指定時は agent_commands より優先）",
    )
    agent_commands: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_AGENT_COMMANDS.items()},
        description="エージェントごとのACP Server起動コマンド",
    )
    agent_env: dict[str, str] = Field(
        default_factory=dict,
        description="エージェントプロセスに追加する環境変数",
    )
    working_directory: Path = Field(
        default=Path(),
        description="エージェントの作業ディレクトリ",
    )
    initial_prompt: str | None = Field(
        default=None,
        description="セッション開始時に送信するプロンプト",
    )

    # パーミッション設定
    permission_mode: PermissionMode = Field(
        default=PermissionMode.DEFAULT,
        description="初期パーミッションモード",
    )
    permission_timeout: float | None = Field(
        default=None,
        description=(
            "パーミッション要求の応答待ち時間（秒）。"
            "None ならツール呼び出しのタイムアウトに従い、0 以下なら無期限"
        ),
    )
    allowed_tools: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="セッション開始時から許可するツール識別子（例: bash(git:*)）",
    )

    # 起動リトライ設定
    init_max_attempts: int = Field(default=3, ge=1)
    init_retry_base_delay: float = Field(default=1.0, ge=0)
    init_retry_max_delay: float = Field(default=5.0, ge=0)
    shutdown_timeout: float = Field(
        default=5.0,
        gt=0,
        description="終了時にプロセスの終了を待つ時間（秒）",
    )

    # ログ設定
    log_level: str = Field(default="INFO")
    console_log_level: str = Field(default="ERROR")
    log_dir: str = Field(default="logs")
    log_backup_count: int = Field(default=7, ge=0)

    @field_validator("agent_command", mode="before")
    @classmethod
    def parse_agent_command(cls, v: str | list[str] | None) -> list[str] | None:
        """agent_commandをパースする（JSON文字列または配列）."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
                return [v]
            except json.JSONDecodeError:
                return [v]
        return v

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def parse_allowed_tools(cls, v: str | list[str] | None) -> list[str]:
        """allowed_toolsをパースする（JSON配列またはカンマ区切り）."""
        if v is None:
            return []
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                # "bash(git:*)" のような値を含むため、括弧の外のカンマでのみ区切る
                return _split_top_level_commas(v)
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
            return [str(parsed)]
        return v

    def resolve_agent_command(self, agent: str | None = None) -> list[str]:
        """
        エージェントの起動コマンドを解決する.

        Args:
            agent: エージェント識別子（省略時は設定の agent）

        Returns:
            起動コマンド

        Raises:
            UnknownAgentError: コマンドが設定されていない場合
        """
        target = (agent or self.agent).lower()
        if self.agent_command and target == self.agent.lower():
            return list(self.agent_command)
        command = self.agent_commands.get(target)
        if not command:
            raise UnknownAgentError(target)
        return list(command)


def _split_top_level_commas(value: str) -> list[str]:
    items: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in value:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        if ch == "," and depth == 0:
            items.append("".join(current))
            current = []
            continue
        current.append(ch)
    items.append("".join(current))
    return [item.strip() for item in items if item.strip()]


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
