"""Main entry point for the ACP Agent Bridge application.

エージェントのメッセージを1行1件の JSON として stdout に書き出し、
stdin から1行1件の JSON コマンドを受け付ける。

    {"type": "prompt", "text": "..."}
    {"type": "permission", "id": "<toolCallId>", "decision": "approved_for_session"}
    {"type": "mode", "mode": "safe-yolo"}
    {"type": "allow_tools", "tools": ["bash(git:*)"]}
    {"type": "cancel"}
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING, Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from acp_agent_bridge.application.models import PermissionDecision, PermissionMode
from acp_agent_bridge.application.session import SessionService, SessionStateError
from acp_agent_bridge.infrastructure.config import get_config
from acp_agent_bridge.infrastructure.logging import configure_logging, get_logger

if TYPE_CHECKING:
    from acp_agent_bridge.application.messages import AgentMessage

logger = get_logger(__name__)


class PromptCommand(BaseModel):
    """プロンプト送信コマンド."""

    type: Literal["prompt"]
    text: str


class PermissionCommand(BaseModel):
    """パーミッション応答コマンド."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["permission"]
    id: str
    decision: PermissionDecision
    allowed_tools: list[str] | None = Field(default=None, alias="allowedTools")


class ModeCommand(BaseModel):
    """パーミッションモード変更コマンド."""

    type: Literal["mode"]
    mode: PermissionMode


class AllowToolsCommand(BaseModel):
    """許可リスト追加コマンド."""

    type: Literal["allow_tools"]
    tools: list[str]


class CancelCommand(BaseModel):
    """ターン中断コマンド."""

    type: Literal["cancel"]


ClientCommand = Annotated[
    PromptCommand | PermissionCommand | ModeCommand | AllowToolsCommand | CancelCommand,
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter[ClientCommand] = TypeAdapter(ClientCommand)


def parse_command(line: str) -> ClientCommand | None:
    """
    stdin の1行をコマンドとして解釈する.

    Returns:
        コマンド。解釈できない場合はNone
    """
    if not line.strip():
        return None
    try:
        return _command_adapter.validate_json(line)
    except ValidationError as e:
        logger.warning("Invalid command", preview=line[:200], error=str(e))
        return None


def write_message(session_id: str, message: AgentMessage) -> None:
    """AgentMessage を1行の JSON として stdout に書き出す."""
    sys.stdout.write(message.model_dump_json() + "\n")
    sys.stdout.flush()


async def dispatch_command(
    command: ClientCommand, session_service: SessionService, session_id: str
) -> None:
    """コマンドをセッションに適用する."""
    if isinstance(command, PromptCommand):
        session_service.start_prompt(session_id, command.text)
    elif isinstance(command, PermissionCommand):
        resolved = session_service.respond_to_permission_request(
            session_id, command.id, command.decision, command.allowed_tools
        )
        if not resolved:
            logger.info("Permission response ignored", tool_call_id=command.id)
    elif isinstance(command, ModeCommand):
        session_service.set_permission_mode(session_id, command.mode)
    elif isinstance(command, AllowToolsCommand):
        session_service.allow_tools(session_id, command.tools)
    else:
        await session_service.cancel_prompt(session_id)


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def read_commands(
    reader: asyncio.StreamReader, session_service: SessionService, session_id: str
) -> None:
    """
    EOF まで stdin のコマンドを処理する.

    EOF 後は送信中のプロンプトの終了を待ってから戻る.
    """
    while True:
        raw = await reader.readline()
        if not raw:
            break
        command = parse_command(raw.decode("utf-8", errors="replace"))
        if command is None:
            continue
        try:
            await dispatch_command(command, session_service, session_id)
        except (ValueError, SessionStateError):
            logger.warning("Command rejected", command_type=command.type, exc_info=True)

    await session_service.wait_for_prompt(session_id)


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
        console_level=config.console_log_level,
    )

    logger.info("Starting ACP Agent Bridge...", agent=config.agent)

    # シャットダウンイベント
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    # シグナルハンドラーを登録（SIGINT + SIGTERM）
    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    session_service: SessionService | None = None
    command_task: asyncio.Task[None] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        session_service = SessionService(config, on_message=write_message)
        session = await session_service.create_session(
            config.agent,
            config.working_directory,
            initial_prompt=config.initial_prompt,
        )

        reader = await _open_stdin()
        command_task = asyncio.create_task(
            read_commands(reader, session_service, session.id)
        )
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        # stdin の EOF or シャットダウンイベントを待つ
        done, _ = await asyncio.wait(
            [command_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # command_taskが例外で終了した場合は例外を伝播
        if command_task in done:
            command_task.result()

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        if session_service is not None:
            try:
                await session_service.close_all_sessions()
            except Exception:
                logger.critical("Error during session cleanup", exc_info=True)

        # 残タスクのキャンセル
        for task in (command_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # シグナルハンドラーの解除
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
