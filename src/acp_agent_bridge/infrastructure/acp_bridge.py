"""ACP bridge - agent subprocess lifecycle and protocol handling."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar, cast
from uuid import uuid4

from acp import (
    PROTOCOL_VERSION,
    RequestError,
    RequestPermissionResponse,
    connect_to_agent,
    text_block,
)
from acp.schema import (
    AllowedOutcome,
    ClientCapabilities,
    DeniedOutcome,
    Implementation,
    PermissionOption,
    ToolCallUpdate,
)

from acp_agent_bridge.application.agents import (
    get_permission_policy,
    get_transport_handler,
)
from acp_agent_bridge.application.messages import (
    AgentMessage,
    EventMessage,
    PermissionRequestMessage,
    PermissionResponseMessage,
    StatusMessage,
)
from acp_agent_bridge.application.models import PermissionDecision
from acp_agent_bridge.application.permission import (
    PermissionEngine,
    SessionTerminatedError,
)
from acp_agent_bridge.application.tool_identifier import suggest_session_identifiers
from acp_agent_bridge.infrastructure.logging import get_logger
from acp_agent_bridge.infrastructure.session_updates import SessionUpdateHandler

if TYPE_CHECKING:
    import asyncio.subprocess as aio_subprocess

    from acp.client.connection import ClientSideConnection
    from acp.interfaces import Agent, Client
    from acp.schema import (
        AgentCapabilities,
        AgentMessageChunk,
        AgentPlanUpdate,
        AgentThoughtChunk,
        AvailableCommandsUpdate,
        CurrentModeUpdate,
        InitializeResponse,
        PromptResponse,
        ToolCallProgress,
        ToolCallStart,
        UserMessageChunk,
    )

    from acp_agent_bridge.application.models import PermissionResult
    from acp_agent_bridge.application.transport import TransportHandler

logger = get_logger(__name__)

T = TypeVar("T")

CLIENT_NAME = "acp-agent-bridge"
CLIENT_VERSION = "0.1.0"

# 1行に大きな JSON（ファイル内容など）が載るため、StreamReader の上限を広げる
STREAM_LIMIT = 16 * 1024 * 1024

# 終了時に session/cancel を送って待つ時間（秒）
CANCEL_GRACE_PERIOD = 2.0

MessageCallback = Callable[[AgentMessage], None]
PermissionOutcome = AllowedOutcome | DeniedOutcome


class AgentStartupError(Exception):
    """エージェントの起動やハンドシェイクに失敗した場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize AgentStartupError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(f"Failed to start agent: {message}")


def pick_permission_outcome(
    options: Sequence[PermissionOption], decision: PermissionDecision
) -> PermissionOutcome:
    """
    パーミッションの決定をエージェントが提示した選択肢に対応付ける.

    Args:
        options: session/request_permission の options
        decision: 決定

    Returns:
        ACP の outcome
    """

    def find(*kinds: str) -> str | None:
        for kind in kinds:
            for option in options:
                if option.kind == kind:
                    return option.option_id
        return None

    option_id: str | None = None
    if decision is PermissionDecision.APPROVED_FOR_SESSION:
        option_id = find("allow_always", "allow_once")
    elif decision is PermissionDecision.APPROVED:
        option_id = find("allow_once", "allow_always")
    elif decision is PermissionDecision.DENIED:
        option_id = find("reject_once")

    if option_id is None:
        return DeniedOutcome(outcome="cancelled")
    return AllowedOutcome(outcome="selected", option_id=option_id)


def _serialize(model: Any) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")  # type: ignore[no-any-return]


class AcpProcessBridge:
    """
    ACP エージェントのサブプロセスを管理するクラス.

    stdout はトランスポートのフィルタを通した行だけを SDK の接続に渡し、
    stderr はトランスポートで分類する。エージェントからのパーミッション要求は
    PermissionEngine に委ね、応答待ちの間も stdout の処理は止めない。
    """

    def __init__(
        self,
        agent: str,
        command: Sequence[str],
        *,
        working_directory: str | Path = ".",
        env: Mapping[str, str] | None = None,
        transport: TransportHandler | None = None,
        permission_engine: PermissionEngine | None = None,
        on_message: MessageCallback | None = None,
        permission_timeout: float | None = None,
        init_max_attempts: int = 3,
        init_retry_base_delay: float = 1.0,
        init_retry_max_delay: float = 5.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        """
        Initialize AcpProcessBridge.

        Args:
            agent: エージェント識別子
            command: エージェントの起動コマンド
            working_directory: エージェントの作業ディレクトリ
            env: 追加の環境変数
            transport: トランスポート（省略時は agent から解決）
            permission_engine: パーミッションエンジン（省略時は agent のポリシーで作成）
            on_message: AgentMessage を受け取るコールバック
            permission_timeout: パーミッション応答の待ち時間（秒）。
                None ならトランスポートのツール呼び出しタイムアウト、0 以下なら無期限
            init_max_attempts: ハンドシェイクの最大試行回数
            init_retry_base_delay: リトライ間隔の初期値（秒）
            init_retry_max_delay: リトライ間隔の上限（秒）
            shutdown_timeout: terminate 後にプロセス終了を待つ時間（秒）

        Raises:
            ValueError: commandが空の場合
        """
        if not command:
            msg = "command must not be empty"
            raise ValueError(msg)

        self.agent = agent
        self.command = list(command)
        self.working_directory = Path(working_directory)
        self.env = dict(env or {})
        self.transport = transport or get_transport_handler(agent)
        self.permission_engine = permission_engine or PermissionEngine(
            get_permission_policy(agent), transport=self.transport
        )
        self.on_message = on_message
        self.permission_timeout = permission_timeout
        self.init_max_attempts = max(init_max_attempts, 1)
        self.init_retry_base_delay = init_retry_base_delay
        self.init_retry_max_delay = init_retry_max_delay
        self.shutdown_timeout = shutdown_timeout

        self.session_id: str | None = None
        self.agent_capabilities: AgentCapabilities | None = None
        self.exit_code: int | None = None
        self.filtered_line_count = 0

        self._process: aio_subprocess.Process | None = None
        self._connection: ClientSideConnection | None = None
        self._updates = SessionUpdateHandler(
            self.transport,
            self._emit,
            on_tool_call_timeout=self._on_tool_call_timeout,
            on_tool_call_finished=self._on_tool_call_finished,
        )
        self._tasks: list[asyncio.Task[Any]] = []
        self._exit_task: asyncio.Task[None] | None = None
        # toolCallId ごとに選択した optionId（同じ要求の再送に同じ答えを返す）
        self._selected_options: dict[str, str] = {}
        self._close_reason: str | None = None
        self._disposed = False
        self._stopped_emitted = False

    @property
    def is_running(self) -> bool:
        """エージェントプロセスが動作中か."""
        return self._process is not None and self._process.returncode is None

    @property
    def active_tool_calls(self) -> frozenset[str]:
        """実行中のツール呼び出しID."""
        return frozenset(self._updates.active_tool_calls)

    async def start(self) -> InitializeResponse:
        """
        エージェントプロセスを起動し、initialize を行う.

        Returns:
            initialize の結果

        Raises:
            AgentStartupError: 起動またはハンドシェイクに失敗した場合
        """
        if self._process is not None:
            msg = "Agent process is already started"
            raise RuntimeError(msg)

        self._emit(StatusMessage(status="starting"))
        logger.info(
            "Starting agent process",
            agent=self.agent,
            command=self.command,
            cwd=str(self.working_directory),
        )

        program, *args = self.command
        try:
            self._process = await asyncio.create_subprocess_exec(
                program,
                *args,
                cwd=str(self.working_directory),
                env={**os.environ, **self.env},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self._emit(StatusMessage(status="error", detail=str(e)))
            raise AgentStartupError(f"{program}: {e}") from e

        process = self._process
        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None

        # SDK にはフィルタ済みの行だけを流す
        filtered_stdout = asyncio.StreamReader(limit=STREAM_LIMIT)
        stdout_task = asyncio.create_task(
            self._pump_stdout(process.stdout, filtered_stdout)
        )
        stderr_task = asyncio.create_task(self._pump_stderr(process.stderr))
        self._tasks = [stdout_task, stderr_task]
        self._connection = connect_to_agent(
            self._create_client_impl(), process.stdin, filtered_stdout
        )
        self._exit_task = asyncio.create_task(self._watch_exit(process, stdout_task))

        connection = self._connection
        try:
            response = await self._with_retry(
                "initialize",
                lambda: connection.initialize(
                    protocol_version=PROTOCOL_VERSION,
                    client_capabilities=ClientCapabilities(),
                    client_info=Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
                ),
            )
        except AgentStartupError as e:
            self._emit(StatusMessage(status="error", detail=str(e)))
            raise

        self.agent_capabilities = response.agent_capabilities
        logger.info(
            "Agent initialized",
            agent=self.agent,
            protocol_version=response.protocol_version,
            agent_info=_serialize(response.agent_info) if response.agent_info else None,
        )
        return response

    async def new_session(self, cwd: str | Path | None = None) -> str:
        """
        session/new で新しいセッションを作成する.

        Args:
            cwd: セッションの作業ディレクトリ（省略時はプロセスの作業ディレクトリ）

        Returns:
            セッション ID

        Raises:
            AgentStartupError: セッションを作成できなかった場合
        """
        connection = self._require_connection()
        session_cwd = self._session_cwd(cwd)
        response = await self._with_retry(
            "session/new",
            lambda: connection.new_session(cwd=session_cwd, mcp_servers=[]),
        )
        if not response.session_id:
            msg = f"session/new returned no sessionId: {response!r}"
            raise AgentStartupError(msg)

        self._begin_session(response.session_id)
        return response.session_id

    async def load_session(self, session_id: str, cwd: str | Path | None = None) -> str:
        """
        session/load で既存のセッションを再開する.

        Args:
            session_id: 再開するセッション ID
            cwd: セッションの作業ディレクトリ

        Returns:
            セッション ID

        Raises:
            AgentStartupError: セッションを再開できなかった場合
        """
        connection = self._require_connection()
        if self.agent_capabilities is None or not self.agent_capabilities.load_session:
            logger.warning(
                "Agent does not advertise loadSession, trying anyway",
                agent=self.agent,
            )
        session_cwd = self._session_cwd(cwd)
        await self._with_retry(
            "session/load",
            lambda: connection.load_session(
                cwd=session_cwd, session_id=session_id, mcp_servers=[]
            ),
        )
        self._begin_session(session_id)
        return session_id

    async def prompt(self, text: str) -> PromptResponse:
        """
        session/prompt でユーザー入力を送信し、ターンの終了を待つ.

        Args:
            text: ユーザーのメッセージ

        Returns:
            session/prompt の結果（stop_reason を含む）

        Raises:
            RuntimeError: セッションが作成されていない場合
            RequestError: エージェントがエラーを返した場合
            SessionTerminatedError: 応答前にプロセスが終了した場合
        """
        connection = self._require_connection()
        if self.session_id is None:
            msg = "No ACP session. Call new_session() or load_session() first."
            raise RuntimeError(msg)

        logger.info(
            "Sending prompt",
            agent=self.agent,
            session_id=self.session_id,
            preview=text[:50],
        )
        self._updates.start_prompt()
        self._emit(StatusMessage(status="running"))

        try:
            response = await connection.prompt(
                session_id=self.session_id, prompt=[text_block(text)]
            )
        except ConnectionError as e:
            raise SessionTerminatedError(self._termination_reason()) from e

        logger.info(
            "Prompt completed",
            agent=self.agent,
            session_id=self.session_id,
            stop_reason=response.stop_reason,
        )
        self._updates.emit_idle_status()
        return response

    async def cancel(self) -> None:
        """session/cancel を送信し、実行中のターンを中断させる."""
        if self._connection is None or self.session_id is None:
            return
        if not self.is_running:
            return
        logger.info("Cancelling turn", agent=self.agent, session_id=self.session_id)
        try:
            await self._connection.cancel(session_id=self.session_id)
        except ConnectionError:
            logger.debug("session/cancel after connection closed", agent=self.agent)

    async def dispose(self, reason: str = "Session closed") -> None:
        """
        セッションを終了し、プロセスを停止する（冪等）.

        Args:
            reason: 終了理由（応答待ちの要求に渡される）
        """
        if self._disposed:
            return
        self._disposed = True
        if self._close_reason is None:
            self._close_reason = reason
        logger.info("Disposing agent bridge", agent=self.agent, reason=reason)

        if self.is_running and self.session_id is not None:
            try:
                await asyncio.wait_for(self.cancel(), timeout=CANCEL_GRACE_PERIOD)
            except (TimeoutError, OSError, RuntimeError):
                logger.debug("session/cancel on dispose failed", exc_info=True)

        self.permission_engine.reject_all(reason)
        if self._connection is not None:
            # 応答待ちのプロンプトはエージェントの返答より先に失敗させる
            await self._connection.close()

        await self._cleanup_process(force=False)

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._exit_task is not None:
            await asyncio.gather(self._exit_task, return_exceptions=True)
            self._exit_task = None

        self._updates.dispose()
        self._emit_stopped(None)
        logger.info("Agent bridge disposed", agent=self.agent)

    def _create_client_impl(self) -> Client:
        """Clientプロトコルの実装を作成する."""

        class ClientImpl:
            """
            ACP Client プロトコルの実装.

            fs / terminal の能力は宣言しないので、それらのメソッドは持たない
            （SDK が method not found を返す）.
            """

            def __init__(self, parent: AcpProcessBridge) -> None:
                self.parent = parent

            async def request_permission(
                self,
                options: list[PermissionOption],
                session_id: str,
                tool_call: ToolCallUpdate,
                **kwargs: Any,
            ) -> RequestPermissionResponse:
                """パーミッション要求を PermissionEngine に委ねる."""
                return await self.parent._handle_permission_request(options, tool_call)

            async def session_update(
                self,
                session_id: str,
                update: UserMessageChunk
                | AgentMessageChunk
                | AgentThoughtChunk
                | ToolCallStart
                | ToolCallProgress
                | AgentPlanUpdate
                | AvailableCommandsUpdate
                | CurrentModeUpdate,
                **kwargs: Any,
            ) -> None:
                """session/update 通知を受け取る."""
                # 通知の順序を保つため、ここでは await しない
                self.parent._handle_session_update(session_id, update)

            def on_connect(self, conn: Agent) -> None:
                """接続確立時のコールバック."""
                logger.debug("Connected to ACP agent", agent=self.parent.agent)

        return cast("Client", ClientImpl(self))

    def _begin_session(self, session_id: str) -> None:
        self.session_id = session_id
        self._selected_options.clear()
        logger.info("Session ready", agent=self.agent, session_id=session_id)
        self._emit(EventMessage(name="session_found", payload={"sessionId": session_id}))
        self._updates.emit_idle_status()

    def _session_cwd(self, cwd: str | Path | None) -> str:
        return str(Path(cwd or self.working_directory).resolve())

    def _init_timeout(self) -> float:
        return self.transport.get_init_timeout() / 1000

    def _permission_timeout_for(
        self, tool_call_id: str, tool_kind: str | None
    ) -> float | None:
        if self.permission_timeout is None:
            return self.transport.get_tool_call_timeout(tool_call_id, tool_kind) / 1000
        if self.permission_timeout <= 0:
            return None
        return self.permission_timeout

    def _termination_reason(self) -> str:
        if self._close_reason is not None:
            return self._close_reason
        process = self._process
        if process is not None and process.returncode is not None:
            return f"Agent process exited with code {process.returncode}"
        return "Agent connection closed"

    def _require_connection(self) -> ClientSideConnection:
        if self._connection is None:
            msg = "Agent process is not started. Call start() first."
            raise RuntimeError(msg)
        return self._connection

    async def _with_retry(
        self, operation: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        delay = self.init_retry_base_delay
        for attempt in range(1, self.init_max_attempts + 1):
            try:
                return await asyncio.wait_for(call(), timeout=self._init_timeout())
            except ConnectionError as e:
                # プロセスが終了していればリトライしても無駄
                msg = f"{operation}: {self._termination_reason()}"
                raise AgentStartupError(msg) from e
            except (RequestError, TimeoutError) as e:
                if attempt >= self.init_max_attempts:
                    msg = f"{operation} failed after {attempt} attempts: {e!r}"
                    raise AgentStartupError(msg) from e
                wait = min(delay, self.init_retry_max_delay)
                logger.warning(
                    "Handshake step failed, retrying",
                    agent=self.agent,
                    operation=operation,
                    attempt=attempt,
                    retry_in=wait,
                    error=repr(e),
                )
                await asyncio.sleep(wait)
                delay *= 2
        msg = f"{operation} was not attempted"
        raise AgentStartupError(msg)

    async def _pump_stdout(
        self, source: asyncio.StreamReader, sink: asyncio.StreamReader
    ) -> None:
        try:
            while True:
                try:
                    raw = await source.readline()
                except ValueError:
                    # 上限を超えた行は読み捨てられる
                    logger.warning("Dropped oversized stdout line", agent=self.agent)
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                filtered = self.transport.filter_stdout_line(line)
                if filtered is None:
                    if line.strip():
                        self.filtered_line_count += 1
                        logger.debug(
                            "Filtered non-JSON stdout line",
                            agent=self.agent,
                            preview=line[:200],
                        )
                    continue
                sink.feed_data(filtered.encode("utf-8") + b"\n")
        finally:
            sink.feed_eof()

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            result = self.transport.handle_stderr(text, self._updates.stderr_context())
            if result.message is not None:
                self._emit(result.message)
            elif not result.suppress:
                logger.debug("Agent stderr", agent=self.agent, text=text[:500])

    async def _watch_exit(
        self, process: aio_subprocess.Process, stdout_task: asyncio.Task[None]
    ) -> None:
        code = await process.wait()
        # 終了直前に書かれた応答を取りこぼさないよう stdout を読み切る
        done, _ = await asyncio.wait([stdout_task], timeout=1.0)
        if not done:
            # 子プロセスが stdout を掴んだままなら打ち切って EOF を流す
            stdout_task.cancel()
        self.exit_code = code
        if self._close_reason is None:
            self._close_reason = f"Agent process exited with code {code}"

        rejected = self.permission_engine.reject_all(self._close_reason)
        self._updates.dispose()

        log = logger.info if code == 0 or self._disposed else logger.error
        log(
            "Agent process exited",
            agent=self.agent,
            exit_code=code,
            rejected_permission_requests=rejected,
        )
        if not self._disposed:
            self._emit_stopped(code)

    def _handle_session_update(self, session_id: str, update: Any) -> None:
        if self.session_id and session_id != self.session_id:
            logger.debug(
                "Update for another session",
                agent=self.agent,
                session_id=session_id,
            )
            return
        self._updates.handle(update)

    def _on_tool_call_timeout(self, tool_call_id: str) -> None:
        if self.permission_engine.expire(tool_call_id, "Tool call timed out"):
            logger.warning(
                "Denied permission request of timed out tool call",
                agent=self.agent,
                tool_call_id=tool_call_id,
            )

    def _on_tool_call_finished(self, tool_call_id: str) -> None:
        self._selected_options.pop(tool_call_id, None)
        self.permission_engine.forget(tool_call_id)

    async def _handle_permission_request(
        self, options: Sequence[PermissionOption], tool_call: ToolCallUpdate
    ) -> RequestPermissionResponse:
        tool_call_id = tool_call.tool_call_id or f"perm-{uuid4().hex}"

        cached = self._selected_options.get(tool_call_id)
        if cached is not None and any(o.option_id == cached for o in options):
            logger.debug(
                "Reusing permission answer", agent=self.agent, tool_call_id=tool_call_id
            )
            return RequestPermissionResponse(
                outcome=AllowedOutcome(outcome="selected", option_id=cached)
            )

        tool_input = tool_call.raw_input
        if tool_input is None:
            tool_input = self._updates.tool_input_for(tool_call_id)
        if tool_input is None:
            tool_input = {}

        reported_name = (
            self._updates.tool_name_for(tool_call_id) or tool_call.kind or "Unknown tool"
        )
        tool_name = self.transport.determine_tool_name(
            reported_name,
            tool_call_id,
            tool_input if isinstance(tool_input, dict) else {},
            self._updates.tool_name_context(),
        )

        already_pending = self.permission_engine.is_pending(tool_call_id)
        future = self.permission_engine.handle_tool_call(
            tool_call_id, tool_name, tool_input
        )
        # 同じ toolCallId の再送は最初の要求の結果を待つだけにする
        created = not already_pending and not future.done()
        timer: asyncio.TimerHandle | None = None
        if created:
            self._emit(
                PermissionRequestMessage(
                    id=tool_call_id,
                    reason=tool_name,
                    payload={
                        "toolName": tool_name,
                        "input": tool_input,
                        "title": tool_call.title,
                        "options": [_serialize(option) for option in options],
                        "suggestedAllowedTools": suggest_session_identifiers(
                            tool_name, tool_input
                        ),
                    },
                )
            )
            timeout = self._permission_timeout_for(tool_call_id, tool_call.kind)
            if timeout is not None:
                timer = asyncio.get_running_loop().call_later(
                    timeout, self.permission_engine.expire, tool_call_id
                )

        try:
            result: PermissionResult = await future
        except SessionTerminatedError as e:
            logger.info(
                "Permission request cancelled by session end",
                agent=self.agent,
                tool_call_id=tool_call_id,
                reason=e.reason,
            )
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))
        finally:
            if timer is not None:
                timer.cancel()

        if created:
            self._emit(
                PermissionResponseMessage(id=tool_call_id, approved=result.is_approved)
            )

        outcome = pick_permission_outcome(options, result.decision)
        if isinstance(outcome, AllowedOutcome):
            self._selected_options[tool_call_id] = outcome.option_id
        logger.debug(
            "Permission answered",
            agent=self.agent,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            decision=result.decision.value,
            outcome=outcome.outcome,
        )
        return RequestPermissionResponse(outcome=outcome)

    async def _cleanup_process(self, force: bool = False) -> None:
        """プロセスをクリーンアップする（冪等）."""
        process = self._process
        if process is None:
            return

        try:
            if process.returncode is None:
                if force:
                    process.kill()
                else:
                    process.terminate()

                try:
                    timeout = 0.5 if force else self.shutdown_timeout
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except TimeoutError:
                    if not force:
                        logger.warning("Process did not terminate, killing it")
                        process.kill()
                        await process.wait()
        except ProcessLookupError:
            logger.debug("Process already exited")
        finally:
            self.exit_code = process.returncode

    def _emit_stopped(self, code: int | None) -> None:
        if self._stopped_emitted:
            return
        self._stopped_emitted = True
        detail = f"Exit code: {code}" if code else None
        self._emit(StatusMessage(status="stopped", detail=detail))

    def _emit(self, message: AgentMessage) -> None:
        if self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception:
            logger.exception("Error in message callback", message_type=message.type)
