"""Normalization of ACP session/update notifications into AgentMessages."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    AvailableCommandsUpdate,
    ContentChunk,
    CurrentModeUpdate,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
    UserMessageChunk,
)

from acp_agent_bridge.application.messages import (
    AgentMessage,
    EventMessage,
    ModelOutputMessage,
    StatusMessage,
    ToolCallMessage,
    ToolResultMessage,
)
from acp_agent_bridge.application.models import StderrContext, ToolNameContext
from acp_agent_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from acp_agent_bridge.application.transport import TransportHandler

logger = get_logger(__name__)

MessageCallback = Callable[[AgentMessage], None]
ToolCallCallback = Callable[[str], object]
ToolCallModel = ToolCallStart | ToolCallProgress

# "**Planning**\n" で始まるチャンクは思考過程として扱う
_THINKING_CHUNK = re.compile(r"^\*\*[^*]+\*\*\n")


def extract_text(content: Any) -> str | None:
    """JSON 化したコンテンツ（または配列）からテキストを取り出す."""
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        text = content.get("text")
        if isinstance(text, str):
            return text
        # tool_call の content は {"type": "content", "content": {...}} の形をとる
        return extract_text(content.get("content"))
    if isinstance(content, list):
        parts = [text for item in content if (text := extract_text(item))]
        return "".join(parts) if parts else None
    return None


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")  # type: ignore[no-any-return]


def _chunk_text(update: ContentChunk) -> str | None:
    if isinstance(update.content, TextContentBlock):
        return update.content.text
    return None


def _tool_output(update: ToolCallModel) -> Any:
    if update.raw_output is not None:
        return update.raw_output
    if update.content:
        return [_dump(item) for item in update.content]
    return None


def _extract_error_detail(output: Any) -> str | None:
    if isinstance(output, Mapping):
        for key in ("error", "message"):
            value = output.get(key)
            if isinstance(value, str) and value.strip():
                return value
    text = extract_text(output)
    return text.strip() if text and text.strip() else None


class SessionUpdateHandler:
    """
    session/update 通知を AgentMessage に変換し、ツール呼び出しを追跡する.

    ツール呼び出しごとにトランスポートのタイムアウトを設定し、
    期限を過ぎたものは追跡対象から外す（プロセスは止めない）。
    メッセージが途切れ、実行中のツール呼び出しがなければ idle を通知する。
    """

    def __init__(
        self,
        transport: TransportHandler,
        emit: MessageCallback,
        *,
        on_tool_call_timeout: ToolCallCallback | None = None,
        on_tool_call_finished: ToolCallCallback | None = None,
    ) -> None:
        """
        Initialize SessionUpdateHandler.

        Args:
            transport: エージェントのトランスポート
            emit: 変換したメッセージを受け取るコールバック
            on_tool_call_timeout: ツール呼び出しがタイムアウトした時に ID を受け取るコールバック
            on_tool_call_finished: ツール呼び出しが完了・失敗した時に ID を受け取るコールバック
        """
        self._transport = transport
        self._emit = emit
        self._on_tool_call_timeout_callback = on_tool_call_timeout
        self._on_tool_call_finished_callback = on_tool_call_finished
        self.active_tool_calls: set[str] = set()
        self.tool_call_count_since_prompt = 0
        self._tool_names: dict[str, str] = {}
        self._tool_inputs: dict[str, Any] = {}
        self._start_times: dict[str, float] = {}
        self._timeouts: dict[str, asyncio.TimerHandle] = {}
        self._idle_handle: asyncio.TimerHandle | None = None

    def stderr_context(self) -> StderrContext:
        """stderr 分類用のコンテキストを作る."""
        return StderrContext(
            active_tool_calls=frozenset(self.active_tool_calls),
            has_active_investigation=any(
                self._transport.is_investigation_tool(tool_call_id)
                for tool_call_id in self.active_tool_calls
            ),
        )

    def tool_name_context(self) -> ToolNameContext:
        """ツール名解決用のコンテキストを作る."""
        return ToolNameContext(
            tool_call_count_since_prompt=self.tool_call_count_since_prompt
        )

    def tool_name_for(self, tool_call_id: str) -> str | None:
        """追跡中のツール呼び出しの名前を返す."""
        return self._tool_names.get(tool_call_id)

    def tool_input_for(self, tool_call_id: str) -> Any:
        """追跡中のツール呼び出しの入力を返す."""
        return self._tool_inputs.get(tool_call_id)

    def start_prompt(self) -> None:
        """新しいプロンプトの開始を記録する."""
        self.tool_call_count_since_prompt = 0

    def handle(self, update: Any) -> bool:
        """
        session/update の update を処理する.

        Args:
            update: SDK が検証済みの update モデル

        Returns:
            処理した場合True
        """
        if isinstance(update, AgentMessageChunk):
            return self._handle_agent_message_chunk(update)
        if isinstance(update, AgentThoughtChunk):
            return self._handle_agent_thought_chunk(update)
        if isinstance(update, UserMessageChunk):
            text = _chunk_text(update)
            if not text:
                return False
            self._emit_safely(
                EventMessage(name="user_message_chunk", payload={"text": text})
            )
            return True
        if isinstance(update, ToolCallStart):
            return self._handle_tool_call(update)
        if isinstance(update, ToolCallProgress):
            return self._handle_tool_call_update(update)
        if isinstance(update, AgentPlanUpdate):
            self._emit_safely(
                EventMessage(
                    name="plan",
                    payload={"entries": [_dump(entry) for entry in update.entries]},
                )
            )
            return True
        if isinstance(update, AvailableCommandsUpdate):
            self._emit_safely(
                EventMessage(
                    name="available_commands_update",
                    payload={
                        "availableCommands": [
                            _dump(command) for command in update.available_commands
                        ]
                    },
                )
            )
            return True
        if isinstance(update, CurrentModeUpdate):
            self._emit_safely(
                EventMessage(
                    name="current_mode_update",
                    payload={"currentModeId": update.current_mode_id},
                )
            )
            return True

        logger.debug(
            "Unhandled session update",
            session_update=getattr(update, "session_update", type(update).__name__),
        )
        return False

    def emit_idle_status(self) -> None:
        """idle 状態を通知する."""
        self._clear_idle_timer()
        self._emit_safely(StatusMessage(status="idle"))

    def dispose(self) -> None:
        """タイマーをすべて止め、追跡状態を破棄する."""
        self._clear_idle_timer()
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        self.active_tool_calls.clear()
        self._tool_names.clear()
        self._tool_inputs.clear()
        self._start_times.clear()

    def _handle_agent_message_chunk(self, update: AgentMessageChunk) -> bool:
        text = _chunk_text(update)
        if not text:
            return False
        # 改行だけのチャンクはキープアライブとして捨てる
        if not text.strip():
            return True

        if _THINKING_CHUNK.match(text):
            self._emit_safely(EventMessage(name="thinking", payload={"text": text}))
            return True

        self._emit_safely(ModelOutputMessage(text_delta=text))
        self._schedule_idle()
        return True

    def _handle_agent_thought_chunk(self, update: AgentThoughtChunk) -> bool:
        text = _chunk_text(update)
        if not text:
            return False
        if not text.strip():
            return True
        if self.active_tool_calls:
            logger.debug(
                "Thinking chunk during active tool calls",
                active_tool_calls=sorted(self.active_tool_calls),
            )
        self._emit_safely(EventMessage(name="thinking", payload={"text": text}))
        return True

    def _handle_tool_call(self, update: ToolCallStart) -> bool:
        # status がない tool_call は実行中とみなす
        if update.status not in (None, "pending", "in_progress"):
            logger.debug(
                "Tool call not in progress, skipping",
                tool_call_id=update.tool_call_id,
                status=update.status,
            )
            return False
        if update.tool_call_id in self.active_tool_calls:
            return True

        self.tool_call_count_since_prompt += 1
        self._start_tool_call(update.tool_call_id, update.kind, update, update.status)
        return True

    def _handle_tool_call_update(self, update: ToolCallProgress) -> bool:
        tool_call_id = update.tool_call_id
        status = update.status
        tool_kind = update.kind or self._transport.extract_tool_name_from_id(
            tool_call_id
        )

        # 開始通知なしに終了状態が届いた場合は、先に tool-call を合成する
        if status in ("completed", "failed") and tool_call_id not in self._tool_names:
            self._start_tool_call(tool_call_id, tool_kind, update, "pending")

        if status in ("pending", "in_progress"):
            if tool_call_id not in self.active_tool_calls:
                self.tool_call_count_since_prompt += 1
                self._start_tool_call(tool_call_id, tool_kind, update, status)
            elif status == "in_progress" and tool_call_id not in self._timeouts:
                # パーミッション待ちだった呼び出しは実行開始時にタイムアウトを設定する
                self._arm_tool_call_timeout(tool_call_id, tool_kind)
        elif status == "completed":
            self._complete_tool_call(tool_call_id, tool_kind, update)
        elif status == "failed":
            self._fail_tool_call(tool_call_id, tool_kind, update)
        return True

    def _start_tool_call(
        self,
        tool_call_id: str,
        kind: str | None,
        update: ToolCallModel,
        status: str | None,
    ) -> None:
        raw_input = update.raw_input
        input_map = dict(raw_input) if isinstance(raw_input, Mapping) else {}

        # title は人間向けで呼び出しごとに変わるので、名前の決定には使わない
        base_name = self._transport.extract_tool_name_from_id(tool_call_id) or kind or "unknown"
        tool_name = self._transport.determine_tool_name(
            base_name, tool_call_id, input_map, self.tool_name_context()
        )

        self._tool_names[tool_call_id] = tool_name
        self._tool_inputs[tool_call_id] = raw_input if raw_input is not None else input_map
        self.active_tool_calls.add(tool_call_id)
        self._start_times[tool_call_id] = time.monotonic()

        is_investigation = self._transport.is_investigation_tool(tool_call_id, kind)
        logger.debug(
            "Tool call started",
            tool_call_id=tool_call_id,
            tool_kind=kind,
            tool_name=tool_name,
            investigation=is_investigation,
        )

        # パーミッション待ち（pending）の間は実行タイムアウトを設定しない
        if status != "pending":
            self._arm_tool_call_timeout(tool_call_id, kind)

        self._clear_idle_timer()
        self._emit_safely(StatusMessage(status="running"))

        args: dict[str, Any] = dict(input_map)
        if update.locations:
            args["locations"] = [_dump(location) for location in update.locations]
        acp_meta: dict[str, Any] = {"kind": kind or "unknown"}
        if update.title and update.title.strip():
            acp_meta["title"] = update.title
        args["_acp"] = acp_meta

        self._emit_safely(
            ToolCallMessage(tool_name=tool_name, args=args, call_id=tool_call_id)
        )

    def _arm_tool_call_timeout(self, tool_call_id: str, kind: str | None) -> None:
        if tool_call_id in self._timeouts:
            return
        timeout_ms = self._transport.get_tool_call_timeout(tool_call_id, kind)
        loop = asyncio.get_running_loop()
        self._timeouts[tool_call_id] = loop.call_later(
            timeout_ms / 1000, self._on_tool_call_timeout, tool_call_id, timeout_ms
        )

    def _on_tool_call_timeout(self, tool_call_id: str, timeout_ms: int) -> None:
        logger.warning(
            "Tool call timed out, removing from active set",
            tool_call_id=tool_call_id,
            tool_name=self._tool_names.get(tool_call_id),
            timeout_ms=timeout_ms,
            duration_seconds=self._duration(tool_call_id),
        )
        self._timeouts.pop(tool_call_id, None)
        self._forget(tool_call_id)
        self._notify(self._on_tool_call_timeout_callback, tool_call_id)
        if not self.active_tool_calls:
            self.emit_idle_status()

    def _complete_tool_call(
        self, tool_call_id: str, kind: str | None, update: ToolCallProgress
    ) -> None:
        tool_name = self._tool_names.get(tool_call_id) or kind or "unknown"
        duration = self._duration(tool_call_id)
        self._cancel_timeout(tool_call_id)
        self._forget(tool_call_id)

        logger.debug(
            "Tool call completed",
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            duration_seconds=duration,
            active_tool_calls=len(self.active_tool_calls),
        )
        self._emit_safely(
            ToolResultMessage(
                tool_name=tool_name,
                result=_tool_output(update),
                call_id=tool_call_id,
                status="completed",
            )
        )
        self._notify(self._on_tool_call_finished_callback, tool_call_id)
        if not self.active_tool_calls:
            self.emit_idle_status()

    def _fail_tool_call(
        self, tool_call_id: str, kind: str | None, update: ToolCallProgress
    ) -> None:
        tool_name = self._tool_names.get(tool_call_id) or kind or "unknown"
        duration = self._duration(tool_call_id)
        self._cancel_timeout(tool_call_id)
        self._forget(tool_call_id)

        error_detail = _extract_error_detail(_tool_output(update))
        logger.debug(
            "Tool call failed",
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            duration_seconds=duration,
            error=error_detail[:500] if error_detail else None,
        )
        self._emit_safely(
            ToolResultMessage(
                tool_name=tool_name,
                result={"error": error_detail or "Tool call failed", "status": "failed"},
                call_id=tool_call_id,
                status="failed",
            )
        )
        self._notify(self._on_tool_call_finished_callback, tool_call_id)
        if not self.active_tool_calls:
            self.emit_idle_status()

    def _schedule_idle(self) -> None:
        self._clear_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(
            self._transport.get_idle_timeout() / 1000, self._on_idle
        )

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self.active_tool_calls:
            logger.debug(
                "Delaying idle status",
                active_tool_calls=len(self.active_tool_calls),
            )
            return
        self.emit_idle_status()

    def _clear_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _cancel_timeout(self, tool_call_id: str) -> None:
        handle = self._timeouts.pop(tool_call_id, None)
        if handle is not None:
            handle.cancel()

    def _forget(self, tool_call_id: str) -> None:
        self.active_tool_calls.discard(tool_call_id)
        self._start_times.pop(tool_call_id, None)
        self._tool_names.pop(tool_call_id, None)
        self._tool_inputs.pop(tool_call_id, None)

    def _duration(self, tool_call_id: str) -> float | None:
        started = self._start_times.get(tool_call_id)
        if started is None:
            return None
        return round(time.monotonic() - started, 3)

    def _notify(self, callback: ToolCallCallback | None, tool_call_id: str) -> None:
        if callback is None:
            return
        try:
            callback(tool_call_id)
        except Exception:
            logger.exception("Error in tool call callback", tool_call_id=tool_call_id)

    def _emit_safely(self, message: AgentMessage) -> None:
        try:
            self._emit(message)
        except Exception:
            logger.exception("Error in message callback", message_type=message.type)
