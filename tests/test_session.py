"""Tests for session management service."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path  # noqa: TC003
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from acp.schema import PromptResponse

if TYPE_CHECKING:
    from collections.abc import Generator

from acp_agent_bridge.application.agent_state import (
    AgentState,
    CompletedRequestEntry,
)
from acp_agent_bridge.application.messages import ModelOutputMessage, StatusMessage
from acp_agent_bridge.application.models import PermissionDecision, PermissionMode
from acp_agent_bridge.application.session import (
    ACPConnectionError,
    Session,
    SessionNotFoundError,
    SessionService,
    SessionState,
    SessionStateError,
)
from acp_agent_bridge.infrastructure.config import Config, UnknownAgentError


@pytest.fixture
def config() -> Config:
    """テスト用のConfigインスタンスを作成する."""
    return Config(
        agent="claude",
        allowed_tools=["bash(git:*)"],
        permission_timeout=30,
    )


@pytest.fixture
def bridges() -> Generator[list[MagicMock], None, None]:
    """AcpProcessBridgeをモックに差し替え、作成されたインスタンスを記録する."""
    created: list[MagicMock] = []

    def create(agent: str, command: list[str], **kwargs: Any) -> MagicMock:
        instance = MagicMock()
        instance.agent = agent
        instance.command = command
        instance.init_kwargs = kwargs
        instance.permission_engine = kwargs["permission_engine"]
        instance.on_message = kwargs["on_message"]
        instance.exit_code = None
        instance.start = AsyncMock(return_value={})
        instance.new_session = AsyncMock(return_value="acp-session-1")
        instance.load_session = AsyncMock(side_effect=lambda session_id: session_id)
        instance.prompt = AsyncMock(return_value=PromptResponse(stop_reason="end_turn"))
        instance.cancel = AsyncMock()
        instance.dispose = AsyncMock()
        created.append(instance)
        return instance

    with patch(
        "acp_agent_bridge.application.session.AcpProcessBridge", side_effect=create
    ):
        yield created


class TestSession:
    """Sessionモデルのテスト."""

    def test_create_session(self, tmp_path: Path) -> None:
        """Sessionインスタンスの作成テスト."""
        session = Session(agent="claude", working_directory=str(tmp_path))
        assert session.agent == "claude"
        assert session.state == SessionState.CREATED
        assert session.acp_session_id is None
        assert session.exit_code is None
        assert isinstance(session.created_at, datetime)
        assert isinstance(session.last_activity_at, datetime)

    @pytest.mark.parametrize(
        ("state", "expected"),
        [
            (SessionState.CREATED, False),
            (SessionState.ACTIVE, True),
            (SessionState.PROMPTING, True),
            (SessionState.CLOSED, False),
        ],
    )
    def test_is_active(self, tmp_path: Path, state: SessionState, expected: bool) -> None:
        """状態ごとのis_activeテスト."""
        session = Session(agent="claude", working_directory=str(tmp_path), state=state)
        assert session.is_active() is expected


class TestCreateSession:
    """セッション作成のテスト."""

    @pytest.mark.asyncio
    async def test_create_session_success(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """セッション作成が成功するテスト."""
        service = SessionService(config)
        session = await service.create_session("Claude", tmp_path)

        assert session.agent == "claude"
        assert session.state == SessionState.ACTIVE
        assert session.acp_session_id == "acp-session-1"
        assert session.working_directory == str(tmp_path.resolve())

        bridge = bridges[0]
        assert bridge.agent == "claude"
        assert bridge.command == ["claude-code-acp"]
        assert bridge.init_kwargs["permission_timeout"] == 30
        bridge.start.assert_awaited_once()
        bridge.new_session.assert_awaited_once()

        engine = bridge.permission_engine
        assert engine.permission_mode is PermissionMode.DEFAULT
        assert engine.allowed_tool_identifiers == frozenset({"bash(git:*)"})
        assert service.get_active_sessions() == [session]

    @pytest.mark.asyncio
    async def test_create_session_overrides(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """モードと許可リストを指定して作成するテスト."""
        service = SessionService(config)
        await service.create_session(
            "claude", tmp_path, permission_mode="read-only", allowed_tools=["edit"]
        )
        engine = bridges[0].permission_engine
        assert engine.permission_mode is PermissionMode.READ_ONLY
        assert engine.allowed_tool_identifiers == frozenset({"bash(git:*)", "edit"})

    @pytest.mark.asyncio
    async def test_create_session_unknown_agent(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """起動コマンドのないエージェントはUnknownAgentErrorになるテスト."""
        service = SessionService(config)
        with pytest.raises(UnknownAgentError):
            await service.create_session("mystery", tmp_path)
        assert bridges == []

    @pytest.mark.asyncio
    async def test_create_session_failure(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """起動に失敗した場合ACPConnectionErrorになりクリーンアップされるテスト."""
        service = SessionService(config)

        with patch(
            "acp_agent_bridge.application.session.AcpProcessBridge"
        ) as mock_class:
            instance = MagicMock()
            instance.start = AsyncMock(side_effect=RuntimeError("spawn failed"))
            instance.dispose = AsyncMock()
            mock_class.return_value = instance

            with pytest.raises(ACPConnectionError, match="spawn failed"):
                await service.create_session("claude", tmp_path)

            instance.dispose.assert_awaited_once_with("Session creation failed")
        assert service.get_active_sessions() == []

    @pytest.mark.asyncio
    async def test_initial_prompt(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """初期プロンプトがバックグラウンドで送信されるテスト."""
        service = SessionService(config)
        session = await service.create_session(
            "claude", tmp_path, initial_prompt="Hello"
        )
        await service.wait_for_prompt(session.id)

        bridges[0].prompt.assert_awaited_once_with("Hello")
        assert session.last_stop_reason == "end_turn"
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_load_session(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """既存セッションの再開と許可リストの引き継ぎのテスト."""
        previous = AgentState(
            completed_requests={
                "toolu_1": CompletedRequestEntry(
                    tool="bash",
                    status="approved",
                    decision=PermissionDecision.APPROVED_FOR_SESSION,
                    allowed_tools=["bash(npm test)"],
                )
            }
        )
        service = SessionService(config)
        session = await service.load_session(
            "claude", tmp_path, "acp-previous", agent_state=previous
        )

        assert session.acp_session_id == "acp-previous"
        bridges[0].load_session.assert_awaited_once_with("acp-previous")
        assert "bash(npm test)" in bridges[0].permission_engine.allowed_tool_identifiers


class TestSendPrompt:
    """プロンプト送信のテスト."""

    @pytest.mark.asyncio
    async def test_send_prompt_success(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """プロンプト送信が成功するテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)

        stop_reason = await service.send_prompt(session.id, "Hello")

        assert stop_reason == "end_turn"
        bridges[0].prompt.assert_awaited_once_with("Hello")
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_send_prompt_session_not_found(self, config: Config) -> None:
        """存在しないセッションへのプロンプト送信のテスト."""
        service = SessionService(config)
        with pytest.raises(SessionNotFoundError):
            await service.send_prompt("nope", "Hello")

    @pytest.mark.asyncio
    async def test_send_prompt_closed_session(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """クローズ済みセッションへのプロンプト送信のテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        await service.close_session(session.id)

        with pytest.raises(SessionStateError, match="closed session"):
            await service.send_prompt(session.id, "Hello")

    @pytest.mark.asyncio
    async def test_send_prompt_while_prompting(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """プロンプト処理中の二重送信のテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)

        gate = asyncio.Event()

        async def slow_prompt(content: str) -> PromptResponse:
            await gate.wait()
            return PromptResponse(stop_reason="end_turn")

        bridges[0].prompt = AsyncMock(side_effect=slow_prompt)
        task = service.start_prompt(session.id, "first")
        await asyncio.sleep(0)
        assert session.state == SessionState.PROMPTING

        with pytest.raises(SessionStateError, match="already in progress"):
            await service.send_prompt(session.id, "second")

        gate.set()
        assert await task == "end_turn"
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_second_background_prompt_keeps_first_tracked(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """送信中に次のプロンプトを始めても最初のプロンプトを待てるテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)

        gate = asyncio.Event()

        async def slow_prompt(content: str) -> PromptResponse:
            await gate.wait()
            return PromptResponse(stop_reason="end_turn")

        bridges[0].prompt = AsyncMock(side_effect=slow_prompt)
        first = service.start_prompt(session.id, "first")
        await asyncio.sleep(0)

        with pytest.raises(SessionStateError, match="already in progress"):
            service.start_prompt(session.id, "second")

        waiter = asyncio.create_task(service.wait_for_prompt(session.id))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        gate.set()
        await asyncio.wait_for(waiter, timeout=1)
        assert first.done()
        bridges[0].prompt.assert_awaited_once_with("first")

    @pytest.mark.asyncio
    async def test_send_prompt_error_restores_state(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """送信エラー後に状態がACTIVEに戻るテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        bridges[0].prompt = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await service.send_prompt(session.id, "Hello")
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_background_prompt_failure_is_logged(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """バックグラウンド送信の失敗が伝播しないテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        bridges[0].prompt = AsyncMock(side_effect=RuntimeError("boom"))

        task = service.start_prompt(session.id, "Hello")
        assert await task is None

    @pytest.mark.asyncio
    async def test_cancel_prompt(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """ターンの中断のテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        await service.cancel_prompt(session.id)
        bridges[0].cancel.assert_awaited_once()


class TestPermissions:
    """パーミッション操作のテスト."""

    @pytest.mark.asyncio
    async def test_respond_to_permission_request(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """パーミッション要求への応答のテスト."""
        states: list[tuple[str, AgentState]] = []
        service = SessionService(
            config, on_state_change=lambda sid, state: states.append((sid, state))
        )
        session = await service.create_session("claude", tmp_path)
        engine = bridges[0].permission_engine

        future = engine.handle_tool_call("toolu_1", "edit", {"path": "a.py"})
        pending = service.get_pending_permission_requests(session.id)
        assert [request.tool_call_id for request in pending] == ["toolu_1"]
        assert "toolu_1" in service.get_agent_state(session.id).requests

        assert service.respond_to_permission_request(session.id, "toolu_1", "approved")
        assert not service.respond_to_permission_request(session.id, "toolu_1", "denied")
        assert (await future).decision is PermissionDecision.APPROVED

        assert states
        assert all(sid == session.id for sid, _ in states)
        assert states[-1][1].completed_requests["toolu_1"].status == "approved"

    @pytest.mark.asyncio
    async def test_abort_cancels_turn(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """abort でターン全体が中断されるテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        engine = bridges[0].permission_engine

        engine.handle_tool_call("toolu_1", "edit", {})
        service.respond_to_permission_request(session.id, "toolu_1", "abort")
        for _ in range(3):
            await asyncio.sleep(0)
        bridges[0].cancel.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_set_permission_mode_and_allow_tools(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """モード変更と許可リスト追加のテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        engine = bridges[0].permission_engine

        service.set_permission_mode(session.id, "yolo")
        service.allow_tools(session.id, ["edit"])
        assert engine.permission_mode is PermissionMode.YOLO
        assert "edit" in engine.allowed_tool_identifiers

        with pytest.raises(ValueError):
            service.set_permission_mode(session.id, "reckless")

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """セッション間で許可リストを共有しないテスト."""
        service = SessionService(config)
        first = await service.create_session("claude", tmp_path)
        await service.create_session("codex", tmp_path)

        service.allow_tools(first.id, ["edit"])
        assert "edit" not in bridges[1].permission_engine.allowed_tool_identifiers
        assert bridges[1].command == ["codex-acp"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, config: Config) -> None:
        """存在しないセッションの操作のテスト."""
        service = SessionService(config)
        with pytest.raises(SessionNotFoundError):
            service.respond_to_permission_request("nope", "toolu_1", "approved")
        with pytest.raises(SessionNotFoundError):
            await service.cancel_prompt("nope")
        assert service.get_session("nope") is None


class TestMessagesAndClose:
    """メッセージ転送と終了のテスト."""

    @pytest.mark.asyncio
    async def test_messages_are_forwarded(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """エージェントのメッセージがセッションIDとともに転送されるテスト."""
        received: list[tuple[str, Any]] = []
        service = SessionService(
            config, on_message=lambda sid, message: received.append((sid, message))
        )
        session = await service.create_session("claude", tmp_path)

        message = ModelOutputMessage(text_delta="hi")
        bridges[0].on_message(message)
        assert received == [(session.id, message)]

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """コールバックの例外が伝播しないテスト."""
        service = SessionService(config, on_message=MagicMock(side_effect=RuntimeError))
        await service.create_session("claude", tmp_path)
        bridges[0].on_message(ModelOutputMessage(text_delta="hi"))

    @pytest.mark.asyncio
    async def test_agent_exit_closes_session(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """エージェントの終了でセッションがクローズされるテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)

        bridges[0].exit_code = 1
        bridges[0].on_message(StatusMessage(status="stopped", detail="Exit code: 1"))

        assert session.state == SessionState.CLOSED
        assert session.exit_code == 1
        assert service.get_active_sessions() == []

    @pytest.mark.asyncio
    async def test_close_session(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """セッションクローズのテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)

        await service.close_session(session.id)

        bridges[0].dispose.assert_awaited_once_with("Session closed")
        assert session.state == SessionState.CLOSED
        assert service.get_session(session.id) is session
        with pytest.raises(SessionNotFoundError):
            service.get_agent_state(session.id)

    @pytest.mark.asyncio
    async def test_close_session_dispose_error(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """dispose が失敗してもクローズされるテスト."""
        service = SessionService(config)
        session = await service.create_session("claude", tmp_path)
        bridges[0].dispose = AsyncMock(side_effect=RuntimeError("boom"))

        await service.close_session(session.id)
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_session_not_found(self, config: Config) -> None:
        """存在しないセッションのクローズのテスト."""
        service = SessionService(config)
        with pytest.raises(SessionNotFoundError):
            await service.close_session("nope")

    @pytest.mark.asyncio
    async def test_close_all_sessions(
        self, config: Config, tmp_path: Path, bridges: list[MagicMock]
    ) -> None:
        """全セッションクローズのテスト."""
        service = SessionService(config)
        first = await service.create_session("claude", tmp_path)
        second = await service.create_session("gemini", tmp_path)
        await service.close_session(first.id)

        await service.close_all_sessions()

        assert second.state == SessionState.CLOSED
        bridges[0].dispose.assert_awaited_once()
        bridges[1].dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_all_sessions_empty(self, config: Config) -> None:
        """セッションがない場合の全セッションクローズのテスト."""
        service = SessionService(config)
        await service.close_all_sessions()
