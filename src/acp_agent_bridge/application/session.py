"""Session management service."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from acp_agent_bridge.application.agent_state import AgentState, AgentStateStore
from acp_agent_bridge.application.agents import (
    get_permission_policy,
    get_transport_handler,
)
from acp_agent_bridge.application.messages import StatusMessage
from acp_agent_bridge.application.models import (
    PermissionDecision,
    PermissionMode,
    ToolCall,
)
from acp_agent_bridge.application.permission import PermissionEngine
from acp_agent_bridge.infrastructure.acp_bridge import AcpProcessBridge
from acp_agent_bridge.infrastructure.logging import get_logger, log_context

if TYPE_CHECKING:
    from acp_agent_bridge.application.messages import AgentMessage
    from acp_agent_bridge.infrastructure.config import Config

# コールバック型定義
MessageCallback = Callable[[str, "AgentMessage"], None]  # (session_id, message) -> None
StateChangeCallback = Callable[[str, AgentState], None]  # (session_id, state) -> None

logger = get_logger(__name__)


class SessionState(str, Enum):
    """セッション状態."""

    CREATED = "created"
    ACTIVE = "active"
    PROMPTING = "prompting"
    CLOSED = "closed"


class Session(BaseModel):
    """セッション情報."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent: str
    working_directory: str
    state: SessionState = SessionState.CREATED
    acp_session_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    last_activity_at: datetime = Field(default_factory=datetime.now)
    exit_code: int | None = None
    last_stop_reason: str | None = None

    def is_active(self) -> bool:
        """
        セッションがアクティブかどうかを判定する.

        Returns:
            アクティブな場合True
        """
        return self.state in {SessionState.ACTIVE, SessionState.PROMPTING}


class SessionNotFoundError(Exception):
    """指定されたセッションが見つからない場合の例外."""

    def __init__(self, session_id: str) -> None:
        """
        Initialize SessionNotFoundError.

        Args:
            session_id: 見つからなかったセッションID
        """
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionStateError(Exception):
    """セッション状態が不正な場合の例外."""

    def __init__(
        self, session_id: str, current_state: SessionState, message: str
    ) -> None:
        """
        Initialize SessionStateError.

        Args:
            session_id: セッションID
            current_state: 現在の状態
            message: エラーメッセージ
        """
        full_message = f"Invalid state for session {session_id} (current: {current_state}): {message}"
        super().__init__(full_message)
        self.session_id = session_id
        self.current_state = current_state


class ACPConnectionError(Exception):
    """ACP Server接続に失敗した場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize ACPConnectionError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(f"ACP connection failed: {message}")


class SessionService:
    """
    セッション管理サービス.

    セッションごとにエージェントプロセス（AcpProcessBridge）と
    PermissionEngine を1つずつ持ち、セッション間で状態を共有しない。
    """

    def __init__(
        self,
        config: Config,
        on_message: MessageCallback | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """
        Initialize SessionService.

        Args:
            config: アプリケーション設定
            on_message: エージェントからのメッセージ受信時のコールバック
            on_state_change: エージェント状態（パーミッション要求）変化時のコールバック
        """
        self._config = config
        self._on_message_callback = on_message
        self._on_state_change_callback = on_state_change
        # セッション管理（session_id -> Session）
        self._sessions: dict[str, Session] = {}
        # ブリッジのマップ（session_id -> AcpProcessBridge）
        self._bridges: dict[str, AcpProcessBridge] = {}
        # 初期プロンプトなどバックグラウンドで送信中のプロンプト
        self._prompt_tasks: dict[str, asyncio.Task[str | None]] = {}

    async def create_session(
        self,
        agent: str,
        working_directory: str | Path,
        initial_prompt: str | None = None,
        permission_mode: PermissionMode | str | None = None,
        allowed_tools: Iterable[str] = (),
    ) -> Session:
        """
        エージェントを起動し、新しいセッションを作成する.

        Args:
            agent: エージェント識別子
            working_directory: 作業ディレクトリ
            initial_prompt: セッション作成後にバックグラウンドで送信するプロンプト
            permission_mode: 初期パーミッションモード（省略時は設定値）
            allowed_tools: 初期の許可リスト（設定値に追加される）

        Returns:
            作成されたセッション

        Raises:
            UnknownAgentError: エージェントの起動コマンドが設定されていない場合
            ACPConnectionError: エージェントとの接続に失敗した場合
        """
        session, bridge = self._build_session(
            agent, working_directory, permission_mode, allowed_tools, None
        )

        try:
            await bridge.start()
            session.acp_session_id = await bridge.new_session()
        except Exception as e:
            logger.exception("Failed to create session", agent=agent)
            await self._discard(session, bridge)
            raise ACPConnectionError(str(e)) from e

        self._activate(session)
        if initial_prompt:
            self.start_prompt(session.id, initial_prompt)
        return session

    async def load_session(
        self,
        agent: str,
        working_directory: str | Path,
        acp_session_id: str,
        permission_mode: PermissionMode | str | None = None,
        allowed_tools: Iterable[str] = (),
        agent_state: AgentState | None = None,
    ) -> Session:
        """
        エージェントを起動し、既存の ACP セッションを再開する.

        agent_state を渡すと、以前「セッション中は許可」とした識別子を引き継ぐ.

        Args:
            agent: エージェント識別子
            working_directory: 作業ディレクトリ
            acp_session_id: 再開する ACP セッションID
            permission_mode: 初期パーミッションモード（省略時は設定値）
            allowed_tools: 初期の許可リスト（設定値に追加される）
            agent_state: 以前のエージェント状態

        Returns:
            再開されたセッション

        Raises:
            UnknownAgentError: エージェントの起動コマンドが設定されていない場合
            ACPConnectionError: エージェントとの接続に失敗した場合
        """
        session, bridge = self._build_session(
            agent, working_directory, permission_mode, allowed_tools, agent_state
        )

        try:
            await bridge.start()
            session.acp_session_id = await bridge.load_session(acp_session_id)
        except Exception as e:
            logger.exception(
                "Failed to load session", agent=agent, acp_session_id=acp_session_id
            )
            await self._discard(session, bridge)
            raise ACPConnectionError(str(e)) from e

        self._activate(session)
        return session

    async def send_prompt(self, session_id: str, content: str) -> str | None:
        """
        プロンプトを送信し、ターンの終了を待つ.

        ターン中のメッセージとパーミッション要求は on_message コールバックに届く。
        パーミッション要求には respond_to_permission_request で応答する.

        Args:
            session_id: セッションID
            content: ユーザー入力内容

        Returns:
            停止理由（stop_reason）

        Raises:
            SessionNotFoundError: セッションが存在しない場合
            SessionStateError: セッションが対話可能状態でない場合
        """
        session = self._get_session_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        if session.state == SessionState.CLOSED:
            raise SessionStateError(
                session_id, session.state, "Cannot send prompt to closed session"
            )

        if session.state == SessionState.CREATED:
            raise SessionStateError(
                session_id,
                session.state,
                "Cannot send prompt to session that is not yet active",
            )

        if session.state == SessionState.PROMPTING:
            raise SessionStateError(
                session_id, session.state, "A prompt is already in progress"
            )

        bridge = self._get_bridge(session_id)

        logger.info(
            "Sending prompt to session",
            session_id=session_id,
            content_preview=content[:50],
        )

        session.state = SessionState.PROMPTING
        session.last_activity_at = datetime.now()

        try:
            with log_context(session_id=session_id, agent=session.agent):
                result = await bridge.prompt(content)
        finally:
            # プロセス終了で CLOSED になっていれば戻さない
            if session.state == SessionState.PROMPTING:
                session.state = SessionState.ACTIVE
            session.last_activity_at = datetime.now()

        session.last_stop_reason = result.stop_reason
        return session.last_stop_reason

    def start_prompt(self, session_id: str, content: str) -> asyncio.Task[str | None]:
        """
        プロンプトをバックグラウンドで送信する.

        送信の失敗はログに記録し、呼び出し元には伝播しない.

        Args:
            session_id: セッションID
            content: ユーザー入力内容

        Returns:
            停止理由を返すタスク

        Raises:
            SessionNotFoundError: セッションが存在しない場合
            SessionStateError: 送信中のプロンプトがある場合
        """
        session = self._get_session_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        # 走行中のタスクを置き換えると wait_for_prompt が先に戻ってしまう
        running = self._prompt_tasks.get(session_id)
        if running is not None and not running.done():
            raise SessionStateError(
                session_id, session.state, "A prompt is already in progress"
            )

        async def run_prompt() -> str | None:
            try:
                return await self.send_prompt(session_id, content)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background prompt failed", session_id=session_id)
                return None

        task = asyncio.create_task(run_prompt())
        self._prompt_tasks[session_id] = task

        def forget(t: asyncio.Task[str | None]) -> None:
            if self._prompt_tasks.get(session_id) is t:
                del self._prompt_tasks[session_id]

        task.add_done_callback(forget)
        return task

    async def wait_for_prompt(self, session_id: str) -> None:
        """バックグラウンドで送信中のプロンプトがあれば、その終了を待つ."""
        task = self._prompt_tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def cancel_prompt(self, session_id: str) -> None:
        """
        実行中のターンを中断する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        bridge = self._get_bridge(session_id)
        await bridge.cancel()

    def respond_to_permission_request(
        self,
        session_id: str,
        tool_call_id: str,
        decision: PermissionDecision | str,
        allowed_tools: Iterable[str] | None = None,
    ) -> bool:
        """
        応答待ちのパーミッション要求に応答する.

        Args:
            session_id: セッションID
            tool_call_id: ツール呼び出しID
            decision: 決定（approved / approved_for_session / denied / abort）
            allowed_tools: 以降このセッションで許可する識別子

        Returns:
            要求を確定した場合True。未知または確定済みの場合False

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        bridge = self._get_bridge(session_id)
        return bridge.permission_engine.respond_to_permission_request(
            tool_call_id, decision, allowed_tools
        )

    def set_permission_mode(
        self, session_id: str, mode: PermissionMode | str
    ) -> None:
        """
        セッションのパーミッションモードを変更する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
            ValueError: 不明なモードの場合
        """
        bridge = self._get_bridge(session_id)
        bridge.permission_engine.set_permission_mode(mode)

    def allow_tools(self, session_id: str, identifiers: Iterable[str]) -> None:
        """
        セッションの許可リストに識別子を追加する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        bridge = self._get_bridge(session_id)
        bridge.permission_engine.allow_tools(identifiers)

    def get_pending_permission_requests(self, session_id: str) -> list[ToolCall]:
        """
        応答待ちのパーミッション要求を取得する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        return self._get_bridge(session_id).permission_engine.pending_requests

    def get_agent_state(self, session_id: str) -> AgentState:
        """
        エージェント状態（要求と完了履歴）のスナップショットを取得する.

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        return self._get_bridge(session_id).permission_engine.state_store.snapshot()

    def get_session(self, session_id: str) -> Session | None:
        """
        セッションを取得する.

        Returns:
            該当するセッション。なければNone
        """
        return self._get_session_by_id(session_id)

    def get_active_sessions(self) -> list[Session]:
        """アクティブなセッションの一覧を取得する."""
        return [session for session in self._sessions.values() if session.is_active()]

    async def close_session(self, session_id: str) -> None:
        """
        セッションを正常終了する.

        Args:
            session_id: セッションID

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        session = self._get_session_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        logger.info("Closing session", session_id=session_id)

        bridge = self._bridges.pop(session_id, None)
        if bridge is not None:
            try:
                await bridge.dispose("Session closed")
            except Exception:
                logger.exception("Error disposing agent bridge", session_id=session_id)
            session.exit_code = bridge.exit_code

        task = self._prompt_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        session.state = SessionState.CLOSED
        session.last_activity_at = datetime.now()
        logger.info("Session closed", session_id=session_id)

    async def close_all_sessions(self) -> None:
        """
        閉じていないセッションをすべて並列に終了する.

        シャットダウン時に呼び出される。個々の終了処理の失敗はログに残し、
        他のセッションの終了は続ける.
        """
        open_sessions = [
            s for s in self._sessions.values() if s.state != SessionState.CLOSED
        ]
        if not open_sessions:
            logger.info("No open sessions to close")
            return

        logger.info(
            "Closing open sessions",
            count=len(open_sessions),
            prompting=sum(s.state == SessionState.PROMPTING for s in open_sessions),
        )
        results = await asyncio.gather(
            *(self.close_session(s.id) for s in open_sessions),
            return_exceptions=True,
        )
        failed = 0
        for session, result in zip(open_sessions, results, strict=True):
            if isinstance(result, Exception):
                failed += 1
                logger.error(
                    "Error closing session",
                    session_id=session.id,
                    agent=session.agent,
                    error=str(result),
                )

        logger.info("Sessions closed", count=len(open_sessions), failed=failed)

    def _build_session(
        self,
        agent: str,
        working_directory: str | Path,
        permission_mode: PermissionMode | str | None,
        allowed_tools: Iterable[str],
        agent_state: AgentState | None,
    ) -> tuple[Session, AcpProcessBridge]:
        agent_id = agent.lower()
        command = self._config.resolve_agent_command(agent_id)
        cwd = Path(working_directory).resolve()

        logger.info(
            "Creating session",
            agent=agent_id,
            command=command,
            working_directory=str(cwd),
        )

        session = Session(agent=agent_id, working_directory=str(cwd))
        transport = get_transport_handler(agent_id)

        state_store = AgentStateStore(
            initial=agent_state,
            on_change=lambda state: self._notify_state_change(session.id, state),
        )
        bridge_ref: list[AcpProcessBridge] = []

        async def abort_turn() -> None:
            # abort はツール呼び出しだけでなくターン全体を中断する
            if bridge_ref:
                await bridge_ref[0].cancel()

        engine = PermissionEngine(
            get_permission_policy(agent_id),
            transport=transport,
            state_store=state_store,
            permission_mode=PermissionMode(permission_mode or self._config.permission_mode),
            allowed_tools=[*self._config.allowed_tools, *allowed_tools],
            on_abort_requested=abort_turn,
        )
        bridge = AcpProcessBridge(
            agent_id,
            command,
            working_directory=cwd,
            env=self._config.agent_env,
            transport=transport,
            permission_engine=engine,
            on_message=lambda message: self._on_agent_message(session.id, message),
            permission_timeout=self._config.permission_timeout,
            init_max_attempts=self._config.init_max_attempts,
            init_retry_base_delay=self._config.init_retry_base_delay,
            init_retry_max_delay=self._config.init_retry_max_delay,
            shutdown_timeout=self._config.shutdown_timeout,
        )
        bridge_ref.append(bridge)

        self._sessions[session.id] = session
        self._bridges[session.id] = bridge
        return session, bridge

    def _activate(self, session: Session) -> None:
        session.state = SessionState.ACTIVE
        session.last_activity_at = datetime.now()
        logger.info(
            "Session created",
            session_id=session.id,
            agent=session.agent,
            acp_session_id=session.acp_session_id,
        )

    async def _discard(self, session: Session, bridge: AcpProcessBridge) -> None:
        # 失敗した場合はクリーンアップ
        try:
            await bridge.dispose("Session creation failed")
        except Exception:
            logger.exception("Error disposing agent bridge", session_id=session.id)
        self._bridges.pop(session.id, None)
        self._sessions.pop(session.id, None)

    def _get_session_by_id(self, session_id: str) -> Session | None:
        """
        セッションIDからセッションを検索する.

        Args:
            session_id: セッションID

        Returns:
            該当するセッション。なければNone
        """
        return self._sessions.get(session_id)

    def _get_bridge(self, session_id: str) -> AcpProcessBridge:
        bridge = self._bridges.get(session_id)
        if bridge is None:
            raise SessionNotFoundError(session_id)
        return bridge

    def _on_agent_message(self, session_id: str, message: AgentMessage) -> None:
        session = self._sessions.get(session_id)
        bridge = self._bridges.get(session_id)
        if (
            session is not None
            and bridge is not None
            and isinstance(message, StatusMessage)
            and message.status == "stopped"
            and session.is_active()
        ):
            # close_session を経ずにエージェントプロセスが終了した
            logger.warning(
                "Agent process stopped", session_id=session_id, detail=message.detail
            )
            session.state = SessionState.CLOSED
            session.exit_code = bridge.exit_code

        if self._on_message_callback is None:
            return
        try:
            self._on_message_callback(session_id, message)
        except Exception:
            logger.exception("Error in message callback", session_id=session_id)

    def _notify_state_change(self, session_id: str, state: AgentState) -> None:
        if self._on_state_change_callback is None:
            return
        try:
            self._on_state_change_callback(session_id, state)
        except Exception:
            logger.exception("Error in state change callback", session_id=session_id)
