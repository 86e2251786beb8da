"""Permission state machine for agent tool calls.

ツール呼び出しごとに、自動承認・自動拒否・人間への問い合わせを決定する。
問い合わせ中の要求は toolCallId をキーとした Future として保持し、
外部クライアントの応答、タイムアウト、セッション終了のいずれかで
ちょうど一度だけ確定させる。
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from acp_agent_bridge.application.agent_state import (
    AgentState,
    AgentStateStore,
    CompletedRequestEntry,
    CompletedStatus,
    PendingRequestEntry,
)
from acp_agent_bridge.application.models import (
    PermissionDecision,
    PermissionMode,
    PermissionResult,
    ToolCall,
)
from acp_agent_bridge.application.tool_identifier import (
    is_tool_allowed_for_session,
    make_tool_identifier,
)
from acp_agent_bridge.application.transport import GENERIC_TOOL_NAMES
from acp_agent_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from acp_agent_bridge.application.transport import TransportHandler

logger = get_logger(__name__)

# 書き込み系とみなすツール名の語彙（部分一致）
# 過剰に書き込み系と判定する側に倒す（"execute_readonly_report" も書き込み系）
WRITE_LIKE_KEYWORDS: tuple[str, ...] = (
    "edit",
    "write",
    "patch",
    "delete",
    "remove",
    "create",
    "mkdir",
    "rename",
    "move",
    "copy",
    "exec",
    "bash",
    "shell",
    "run",
    "terminal",
)

AbortCallback = Callable[[], Awaitable[None] | None]


def is_write_like_tool(tool_name: str) -> bool:
    """
    ツール名が書き込み系かどうかを判定する.

    名前の分からないツール（"other" / "Unknown tool" / 空文字）は書き込み系として扱う.
    """
    if not tool_name.strip() or tool_name in GENERIC_TOOL_NAMES:
        return True
    lower = tool_name.lower()
    return any(keyword in lower for keyword in WRITE_LIKE_KEYWORDS)


@dataclass(frozen=True)
class PermissionPolicy:
    """
    エージェントごとの常時自動承認ポリシー.

    Attributes:
        agent_name: エージェント識別子
        always_auto_approve_names: ツール名に含まれていれば常に承認する語
        always_auto_approve_ids: toolCallId に含まれていれば常に承認する語
    """

    agent_name: str
    always_auto_approve_names: tuple[str, ...] = ()
    always_auto_approve_ids: tuple[str, ...] = ()

    def is_always_auto_approved(self, tool_name: str, tool_call_id: str) -> bool:
        """常時自動承認の対象かどうかを判定する（大文字小文字は区別しない）."""
        lower_name = tool_name.lower()
        if any(name.lower() in lower_name for name in self.always_auto_approve_names):
            return True
        lower_id = tool_call_id.lower()
        return any(
            fragment.lower() in lower_id for fragment in self.always_auto_approve_ids
        )


class SessionTerminatedError(Exception):
    """セッション終了により応答待ちの要求が破棄された場合の例外."""

    def __init__(self, reason: str = "Session terminated") -> None:
        """
        Initialize SessionTerminatedError.

        Args:
            reason: 終了理由
        """
        super().__init__(reason)
        self.reason = reason


class PendingState(str, Enum):
    """応答待ち要求の状態."""

    PENDING = "pending"
    SETTLED = "settled"
    REJECTED = "rejected"


@dataclass
class PendingPermissionRequest:
    """人間の応答を待っているパーミッション要求."""

    tool_call_id: str
    tool_name: str
    input: Any
    future: asyncio.Future[PermissionResult]
    created_at: datetime = field(default_factory=datetime.now)
    state: PendingState = PendingState.PENDING

    def settle(self, result: PermissionResult) -> bool:
        """結果を確定する。既に確定済みの場合は何もしない."""
        if self.state is not PendingState.PENDING:
            return False
        self.state = PendingState.SETTLED
        if not self.future.done():
            self.future.set_result(result)
        return True

    def reject(self, error: BaseException) -> bool:
        """例外で確定する。既に確定済みの場合は何もしない."""
        if self.state is not PendingState.PENDING:
            return False
        self.state = PendingState.REJECTED
        if not self.future.done():
            self.future.set_exception(error)
        return True


class PermissionEngine:
    """ツール呼び出しのパーミッション判定を行うステートマシン."""

    def __init__(
        self,
        policy: PermissionPolicy,
        *,
        transport: TransportHandler | None = None,
        state_store: AgentStateStore | None = None,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        allowed_tools: Iterable[str] = (),
        on_abort_requested: AbortCallback | None = None,
    ) -> None:
        """
        Initialize PermissionEngine.

        Args:
            policy: エージェントごとの常時自動承認ポリシー
            transport: ツール名を ID から推定するためのトランスポート
            state_store: 要求を公開するエージェント状態
            permission_mode: 初期パーミッションモード
            allowed_tools: 初期の許可リスト
            on_abort_requested: abort 決定時に呼ばれるコールバック
        """
        self._policy = policy
        self._transport = transport
        self._state_store = state_store or AgentStateStore()
        self._permission_mode = permission_mode
        self._on_abort_requested = on_abort_requested
        self._pending: dict[str, PendingPermissionRequest] = {}
        self._results: dict[str, PermissionResult] = {}
        self._allowed_tool_identifiers: set[str] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._is_resetting = False

        self._seed_allowed_tools_from_state()
        self.allow_tools(allowed_tools)

    @property
    def permission_mode(self) -> PermissionMode:
        """現在のパーミッションモード."""
        return self._permission_mode

    @property
    def allowed_tool_identifiers(self) -> frozenset[str]:
        """セッションの許可リスト."""
        return frozenset(self._allowed_tool_identifiers)

    @property
    def state_store(self) -> AgentStateStore:
        """エージェント状態."""
        return self._state_store

    @property
    def pending_requests(self) -> list[ToolCall]:
        """応答待ちの要求一覧."""
        return [
            ToolCall(
                tool_call_id=pending.tool_call_id,
                tool_name=pending.tool_name,
                input=pending.input,
            )
            for pending in self._pending.values()
        ]

    def is_pending(self, tool_call_id: str) -> bool:
        """ツール呼び出しが応答待ちか."""
        return tool_call_id in self._pending

    def set_permission_mode(self, mode: PermissionMode | str) -> None:
        """
        パーミッションモードを変更する.

        応答待ちの要求には影響せず、以降の判定にのみ適用される.
        """
        self._permission_mode = PermissionMode(mode)
        logger.debug(
            "Permission mode set",
            agent=self._policy.agent_name,
            permission_mode=self._permission_mode.value,
        )

    def allow_tools(self, identifiers: Iterable[str]) -> None:
        """許可リストに識別子を追加する."""
        for identifier in identifiers:
            if isinstance(identifier, str) and identifier.strip():
                self._allowed_tool_identifiers.add(identifier.strip())

    def is_allowed_for_session(self, tool_name: str, tool_input: Any) -> bool:
        """ツール呼び出しがセッションの許可リストでカバーされているか判定する."""
        return is_tool_allowed_for_session(
            self._allowed_tool_identifiers, tool_name, tool_input
        )

    def should_auto_approve(
        self, tool_name: str, tool_call_id: str, tool_input: Any
    ) -> bool:
        """
        常時自動承認とパーミッションモードから自動承認するか判定する.

        Args:
            tool_name: ツール名
            tool_call_id: ツール呼び出しID
            tool_input: ツール入力

        Returns:
            自動承認する場合True
        """
        if self._is_always_auto_approved(tool_name, tool_call_id):
            return True

        mode = self._permission_mode
        if mode is PermissionMode.YOLO:
            return True
        if mode in {PermissionMode.SAFE_YOLO, PermissionMode.READ_ONLY}:
            return not is_write_like_tool(tool_name)
        # default / acceptEdits / bypassPermissions / plan は常に人間に確認する
        return False

    def handle_tool_call(
        self, tool_call_id: str, tool_name: str, tool_input: Any
    ) -> asyncio.Future[PermissionResult]:
        """
        ツール呼び出しのパーミッションを判定する.

        自動判定できた場合は確定済みの Future を返す。それ以外は応答待ちとして登録し、
        respond_to_permission_request / expire / reset のいずれかで確定する Future を返す。
        呼び出し側は Future を待つ間も stdout の処理を止めてはならない.

        Args:
            tool_call_id: ツール呼び出しID
            tool_name: ツール名
            tool_input: ツール入力

        Returns:
            パーミッション判定結果の Future
        """
        loop = asyncio.get_running_loop()

        existing = self._pending.get(tool_call_id)
        if existing is not None:
            logger.debug(
                "Duplicate permission request for pending tool call",
                tool_call_id=tool_call_id,
            )
            return existing.future

        previous = self._results.get(tool_call_id)
        if previous is not None:
            return self._done_future(loop, previous)

        decision = self._auto_decision(tool_call_id, tool_name, tool_input)
        if decision is not None:
            result = PermissionResult(decision=decision)
            self._results[tool_call_id] = result
            self.record_auto_decision(tool_call_id, tool_name, tool_input, decision)
            return self._done_future(loop, result)

        future: asyncio.Future[PermissionResult] = loop.create_future()
        pending = PendingPermissionRequest(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input=tool_input,
            future=future,
        )
        self._pending[tool_call_id] = pending
        self._add_pending_request_to_state(pending)

        logger.info(
            "Permission request pending",
            agent=self._policy.agent_name,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            permission_mode=self._permission_mode.value,
        )
        return future

    def respond_to_permission_request(
        self,
        tool_call_id: str,
        decision: PermissionDecision | str,
        allowed_tools: Iterable[str] | None = None,
    ) -> bool:
        """
        外部クライアントからの応答で要求を確定する.

        未知の ID や確定済みの ID に対しては何もせず False を返す
        （タイムアウトと遅れた応答の競合は想定内のため例外にしない）.

        Args:
            tool_call_id: ツール呼び出しID
            decision: 決定
            allowed_tools: 以降このセッションで許可する識別子

        Returns:
            要求を確定した場合True
        """
        pending = self._pending.get(tool_call_id)
        if pending is None or pending.state is not PendingState.PENDING:
            logger.debug(
                "Permission request not found or already resolved",
                tool_call_id=tool_call_id,
            )
            return False

        result = PermissionResult(decision=PermissionDecision(decision))
        del self._pending[tool_call_id]

        derived_allowed_tools: list[str] | None = None
        if result.is_approved:
            if allowed_tools is not None:
                derived_allowed_tools = [
                    item.strip()
                    for item in allowed_tools
                    if isinstance(item, str) and item.strip()
                ]
            elif result.decision is PermissionDecision.APPROVED_FOR_SESSION:
                derived_allowed_tools = [
                    make_tool_identifier(pending.tool_name, pending.input)
                ]
            if derived_allowed_tools:
                self.allow_tools(derived_allowed_tools)

        pending.settle(result)
        self._results[tool_call_id] = result

        if result.decision is PermissionDecision.ABORT:
            self._fire_abort_requested()

        self._complete_request_in_state(
            tool_call_id,
            status="approved" if result.is_approved else "denied",
            decision=result.decision,
            allowed_tools=derived_allowed_tools,
        )

        logger.info(
            "Permission request resolved",
            agent=self._policy.agent_name,
            tool_name=pending.tool_name,
            tool_call_id=tool_call_id,
            decision=result.decision.value,
        )
        return True

    def expire(
        self, tool_call_id: str, reason: str = "Permission request timed out"
    ) -> bool:
        """
        応答待ちの要求を拒否で確定する（タイムアウト時）.

        Returns:
            要求を確定した場合True
        """
        pending = self._pending.pop(tool_call_id, None)
        if pending is None:
            return False

        result = PermissionResult(decision=PermissionDecision.DENIED)
        pending.settle(result)
        self._results[tool_call_id] = result
        self._complete_request_in_state(
            tool_call_id,
            status="denied",
            decision=PermissionDecision.DENIED,
            reason=reason,
        )
        logger.warning(
            "Permission request expired",
            agent=self._policy.agent_name,
            tool_call_id=tool_call_id,
            reason=reason,
        )
        return True

    def forget(self, tool_call_id: str) -> None:
        """
        終了したツール呼び出しの判定結果を破棄する.

        応答待ちの要求には影響しない.
        """
        self._results.pop(tool_call_id, None)

    def reject_all(self, reason: str = "Session terminated") -> int:
        """
        応答待ちの要求をすべて SessionTerminatedError で確定する.

        Args:
            reason: 終了理由

        Returns:
            破棄した要求の数
        """
        snapshot = list(self._pending.values())
        self._pending.clear()

        for pending in snapshot:
            pending.reject(SessionTerminatedError(reason))

        if snapshot:
            now = datetime.now()

            def cancel_requests(state: AgentState) -> AgentState:
                for tool_call_id, request in state.requests.items():
                    state.completed_requests[tool_call_id] = CompletedRequestEntry(
                        tool=request.tool,
                        arguments=request.arguments,
                        created_at=request.created_at,
                        completed_at=now,
                        status="canceled",
                        reason=reason,
                    )
                state.requests = {}
                return state

            self._state_store.update(cancel_requests)
            logger.info(
                "Rejected pending permission requests",
                agent=self._policy.agent_name,
                count=len(snapshot),
                reason=reason,
            )
        return len(snapshot)

    def reset(self, reason: str = "Session reset") -> None:
        """
        新しいセッションのために状態をリセットする（冪等）.

        応答待ちの要求をすべて破棄し、許可リストを空にする.
        """
        if self._is_resetting:
            logger.debug("Reset already in progress, skipping")
            return
        self._is_resetting = True
        try:
            self.reject_all(reason)
            self._allowed_tool_identifiers.clear()
            logger.debug("Permission engine reset", agent=self._policy.agent_name)
        finally:
            self._is_resetting = False

    def record_auto_decision(
        self,
        tool_call_id: str,
        tool_name: str,
        tool_input: Any,
        decision: PermissionDecision,
    ) -> None:
        """自動判定の結果を監査用に記録する."""
        allowed_tools = (
            [make_tool_identifier(tool_name, tool_input)]
            if decision is PermissionDecision.APPROVED_FOR_SESSION
            else None
        )
        status: CompletedStatus = (
            "denied"
            if decision in {PermissionDecision.DENIED, PermissionDecision.ABORT}
            else "approved"
        )

        def add_completed(state: AgentState) -> AgentState:
            state.completed_requests[tool_call_id] = CompletedRequestEntry(
                tool=tool_name,
                arguments=tool_input,
                status=status,
                decision=decision,
                allowed_tools=allowed_tools,
            )
            return state

        self._state_store.update(add_completed)
        logger.debug(
            "Auto decision",
            agent=self._policy.agent_name,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            decision=decision.value,
            permission_mode=self._permission_mode.value,
        )

    def _auto_decision(
        self, tool_call_id: str, tool_name: str, tool_input: Any
    ) -> PermissionDecision | None:
        if self.is_allowed_for_session(tool_name, tool_input):
            return PermissionDecision.APPROVED_FOR_SESSION
        if self.should_auto_approve(tool_name, tool_call_id, tool_input):
            if self._permission_mode is PermissionMode.YOLO:
                return PermissionDecision.APPROVED_FOR_SESSION
            return PermissionDecision.APPROVED
        return None

    def _is_always_auto_approved(self, tool_name: str, tool_call_id: str) -> bool:
        if self._policy.is_always_auto_approved(tool_name, tool_call_id):
            return True
        # 汎用名で報告された場合は ID から推定した名前でも確認する
        if tool_name in GENERIC_TOOL_NAMES and self._transport is not None:
            inferred = self._transport.extract_tool_name_from_id(tool_call_id)
            if inferred and self._policy.is_always_auto_approved(inferred, ""):
                return True
        return False

    def _seed_allowed_tools_from_state(self) -> None:
        # 再接続時、以前「セッション中は許可」とした識別子を引き継ぐ
        snapshot = self._state_store.snapshot()
        for entry in snapshot.completed_requests.values():
            if entry.status != "approved" or not entry.allowed_tools:
                continue
            self.allow_tools(entry.allowed_tools)

    def _add_pending_request_to_state(self, pending: PendingPermissionRequest) -> None:
        def add_request(state: AgentState) -> AgentState:
            state.requests[pending.tool_call_id] = PendingRequestEntry(
                tool=pending.tool_name,
                arguments=pending.input,
                created_at=pending.created_at,
            )
            return state

        self._state_store.update(add_request)

    def _complete_request_in_state(
        self,
        tool_call_id: str,
        *,
        status: CompletedStatus,
        decision: PermissionDecision,
        reason: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> None:
        def move_to_completed(state: AgentState) -> AgentState:
            request = state.requests.pop(tool_call_id, None)
            if request is None:
                return state
            state.completed_requests[tool_call_id] = CompletedRequestEntry(
                tool=request.tool,
                arguments=request.arguments,
                created_at=request.created_at,
                status=status,
                decision=decision,
                reason=reason,
                allowed_tools=allowed_tools or None,
            )
            return state

        self._state_store.update(move_to_completed)

    def _fire_abort_requested(self) -> None:
        callback = self._on_abort_requested
        if callback is None:
            return
        try:
            outcome = callback()
        except Exception:
            logger.exception("on_abort_requested failed")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._background_tasks.add(task)
            task.add_done_callback(self._on_abort_task_done)

    def _on_abort_task_done(self, task: asyncio.Future[Any]) -> None:
        self._background_tasks.discard(task)  # type: ignore[arg-type]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "on_abort_requested task failed",
                error=str(task.exception()),
            )

    @staticmethod
    def _done_future(
        loop: asyncio.AbstractEventLoop, result: PermissionResult
    ) -> asyncio.Future[PermissionResult]:
        future: asyncio.Future[PermissionResult] = loop.create_future()
        future.set_result(result)
        return future
