"""Per-agent transport and permission policy tables.

テーブルはコードと一緒にバージョン管理する定数であり、実行時に変更しない.
"""

from __future__ import annotations

from types import MappingProxyType

from acp_agent_bridge.application.models import ToolPattern, TransportTimeouts
from acp_agent_bridge.application.permission import PermissionPolicy
from acp_agent_bridge.application.transport import StderrRule, TransportHandler

DEFAULT_AGENT = "default"

# すべてのエージェントに共通するツール
_CHANGE_TITLE = ToolPattern(
    name="change_title",
    patterns=(
        "change_title",
        "change-title",
        "happy__change_title",
        "mcp__happy__change_title",
    ),
    input_fields=("title",),
)
_CHANGE_TITLE_EMPTY_DEFAULT = ToolPattern(
    name=_CHANGE_TITLE.name,
    patterns=_CHANGE_TITLE.patterns,
    input_fields=_CHANGE_TITLE.input_fields,
    empty_input_default=True,
)
_SAVE_MEMORY = ToolPattern(
    name="save_memory",
    patterns=("save_memory", "save-memory"),
    input_fields=("memory", "content"),
)
_THINK = ToolPattern(
    name="think",
    patterns=("think",),
    input_fields=("thought", "thinking"),
)

_COMMON_TOOL_PATTERNS: tuple[ToolPattern, ...] = (_CHANGE_TITLE, _SAVE_MEMORY, _THINK)

_RATE_LIMIT_LOG_ONLY = StderrRule(
    any_of=("status 429", 'code":429', "rateLimitExceeded", "RATE_LIMIT"),
)

_DEFAULT_TRANSPORT = TransportHandler(
    agent_name=DEFAULT_AGENT,
    tool_patterns=_COMMON_TOOL_PATTERNS,
    stderr_rules=(_RATE_LIMIT_LOG_ONLY,),
    investigation_markers=("investigat", "index", "search"),
)

_CLAUDE_TRANSPORT = TransportHandler(
    agent_name="claude",
    tool_patterns=(
        *_COMMON_TOOL_PATTERNS,
        ToolPattern(name="Read", patterns=("read",), input_fields=("file_path",)),
        ToolPattern(
            name="Edit",
            patterns=("edit",),
            input_fields=("old_string", "new_string"),
        ),
        ToolPattern(name="Bash", patterns=("bash",), input_fields=("command",)),
    ),
    stderr_rules=(
        _RATE_LIMIT_LOG_ONLY,
        StderrRule(
            any_of=("invalid api key", "please run /login", "not logged in"),
            detail="Authentication error. Run `claude /login` to sign in.",
            case_sensitive=False,
        ),
    ),
    investigation_markers=("investigat", "index", "search", "task"),
)

_CODEX_TRANSPORT = TransportHandler(
    agent_name="codex",
    tool_patterns=(
        *_COMMON_TOOL_PATTERNS,
        ToolPattern(
            name="CodexReasoning",
            patterns=("reasoning",),
            input_fields=("reasoning",),
        ),
        ToolPattern(name="exec", patterns=("exec", "shell"), input_fields=("command",)),
        ToolPattern(name="patch", patterns=("patch",), input_fields=("changes",)),
    ),
    stderr_rules=(
        _RATE_LIMIT_LOG_ONLY,
        StderrRule(
            any_of=("401 unauthorized", "not logged in", "openai_api_key"),
            detail="Authentication error. Run `codex login` to sign in.",
            case_sensitive=False,
        ),
    ),
    investigation_markers=("investigat", "index", "search"),
)

GEMINI_AVAILABLE_MODELS: tuple[str, ...] = (
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
)

_GEMINI_TRANSPORT = TransportHandler(
    agent_name="gemini",
    timeouts=TransportTimeouts(init=120_000, investigation=600_000),
    tool_patterns=(
        _CHANGE_TITLE_EMPTY_DEFAULT,
        _SAVE_MEMORY,
        _THINK,
        ToolPattern(
            name="read",
            patterns=("read", "read_file"),
            input_fields=("filePath", "file_path", "path", "locations"),
        ),
        ToolPattern(
            name="write",
            patterns=("write", "write_file"),
            input_fields=("filePath", "file_path", "path", "content"),
        ),
        ToolPattern(
            name="edit",
            patterns=("edit", "replace"),
            input_fields=(
                "oldText",
                "newText",
                "old_string",
                "new_string",
                "oldString",
                "newString",
            ),
        ),
        ToolPattern(
            name="execute",
            patterns=("run_shell_command", "shell", "exec", "bash"),
            input_fields=("command", "cmd"),
        ),
        ToolPattern(name="glob", patterns=("glob",), input_fields=("pattern", "glob")),
        ToolPattern(
            name="TodoWrite",
            patterns=("write_todos", "todo_write", "todowrite"),
            input_fields=("todos", "items"),
        ),
    ),
    stderr_rules=(
        StderrRule(
            any_of=(
                "status 429",
                'code":429',
                "rateLimitExceeded",
                "RESOURCE_EXHAUSTED",
            ),
        ),
        StderrRule(
            any_of=("status 404", 'code":404'),
            detail=(
                "Model not found. Available models: "
                + ", ".join(GEMINI_AVAILABLE_MODELS)
            ),
        ),
    ),
    investigation_markers=("codebase_investigator", "investigator"),
    # Gemini の toolCallId には実際のツール名が含まれる
    id_overrides_reported_name=True,
)

_OPENCODE_TRANSPORT = TransportHandler(
    agent_name="opencode",
    tool_patterns=(
        *_COMMON_TOOL_PATTERNS,
        ToolPattern(
            name="read",
            patterns=("read", "read_file"),
            input_fields=("filePath", "path"),
        ),
        ToolPattern(
            name="write",
            patterns=("write", "write_file"),
            input_fields=("content", "filePath"),
        ),
        ToolPattern(
            name="edit",
            patterns=("edit",),
            input_fields=("oldString", "newString"),
        ),
        ToolPattern(
            name="bash",
            patterns=("bash", "shell", "exec"),
            input_fields=("command",),
        ),
        ToolPattern(name="glob", patterns=("glob",), input_fields=("pattern",)),
        ToolPattern(name="grep", patterns=("grep",), input_fields=("pattern", "include")),
        ToolPattern(
            name="task",
            patterns=("task",),
            input_fields=("prompt", "subagent_type"),
        ),
    ),
    stderr_rules=(
        StderrRule(any_of=("429", "rate limit", "rate_limit"), case_sensitive=False),
        StderrRule(
            any_of=("authentication", "unauthorized", "api key"),
            detail=(
                "Authentication error. Run `opencode auth login` to configure API keys."
            ),
            case_sensitive=False,
        ),
        StderrRule(
            any_of=("model not found",),
            detail="Model not found. Check available models with `opencode models`.",
            case_sensitive=False,
        ),
    ),
    investigation_markers=("task", "explore"),
)

_AUGGIE_TRANSPORT = TransportHandler(
    agent_name="auggie",
    tool_patterns=(
        *_COMMON_TOOL_PATTERNS,
        ToolPattern(name="view", patterns=("view",), input_fields=("path",)),
        ToolPattern(
            name="launch-process",
            patterns=("launch-process", "launch_process"),
            input_fields=("command",),
        ),
        ToolPattern(
            name="codebase-retrieval",
            patterns=("codebase-retrieval", "codebase_retrieval"),
            input_fields=("information_request",),
        ),
    ),
    stderr_rules=(
        _RATE_LIMIT_LOG_ONLY,
        StderrRule(
            any_of=("not logged in", "unauthorized", "auggie --login"),
            detail="Authentication error. Run `auggie --login` to sign in.",
            case_sensitive=False,
        ),
    ),
    investigation_markers=("investigat", "index", "search", "retrieval"),
)

_KIMI_TRANSPORT = TransportHandler(
    agent_name="kimi",
    tool_patterns=(
        _CHANGE_TITLE_EMPTY_DEFAULT,
        _SAVE_MEMORY,
        _THINK,
        ToolPattern(
            name="read_file",
            patterns=("read_file", "read-file", "file_read"),
            input_fields=("file_path", "path", "offset", "limit"),
        ),
        ToolPattern(
            name="write_file",
            patterns=("write_file", "write-file", "file_write"),
            input_fields=("file_path", "path", "content"),
        ),
        ToolPattern(
            name="search_files",
            patterns=("search_files", "search-files", "grep", "ripgrep"),
            input_fields=("path", "regex", "pattern"),
        ),
        ToolPattern(
            name="execute_command",
            patterns=("execute_command", "execute-command", "bash", "shell", "exec"),
            input_fields=("command", "cmd", "shell"),
        ),
    ),
    stderr_rules=(
        StderrRule(
            any_of=("not logged in", "authentication required", "401", "Unauthorized"),
            detail='Not authenticated. Please run "kimi login" first.',
        ),
        StderrRule(
            any_of=(
                "status 429",
                'code":429',
                "rateLimitExceeded",
                "RATE_LIMIT",
                "too many requests",
            ),
        ),
        StderrRule(
            any_of=("not found", "404"),
            all_of=("model",),
            detail="Model not found or not available.",
        ),
    ),
    investigation_markers=("search", "grep", "find"),
)

TRANSPORT_HANDLERS: MappingProxyType[str, TransportHandler] = MappingProxyType({
    handler.agent_name: handler
    for handler in (
        _DEFAULT_TRANSPORT,
        _CLAUDE_TRANSPORT,
        _CODEX_TRANSPORT,
        _GEMINI_TRANSPORT,
        _OPENCODE_TRANSPORT,
        _AUGGIE_TRANSPORT,
        _KIMI_TRANSPORT,
    )
})

_COMMON_AUTO_APPROVE_NAMES: tuple[str, ...] = (
    "change_title",
    "happy__change_title",
    "think",
    "save_memory",
)
_COMMON_AUTO_APPROVE_IDS: tuple[str, ...] = ("change_title", "save_memory")

PERMISSION_POLICIES: MappingProxyType[str, PermissionPolicy] = MappingProxyType({
    DEFAULT_AGENT: PermissionPolicy(
        agent_name=DEFAULT_AGENT,
        always_auto_approve_names=_COMMON_AUTO_APPROVE_NAMES,
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
    "claude": PermissionPolicy(
        agent_name="claude",
        always_auto_approve_names=_COMMON_AUTO_APPROVE_NAMES,
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
    "codex": PermissionPolicy(
        agent_name="codex",
        always_auto_approve_names=(*_COMMON_AUTO_APPROVE_NAMES, "CodexReasoning"),
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
    "gemini": PermissionPolicy(
        agent_name="gemini",
        always_auto_approve_names=(*_COMMON_AUTO_APPROVE_NAMES, "GeminiReasoning"),
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
    "opencode": PermissionPolicy(
        agent_name="opencode",
        always_auto_approve_names=_COMMON_AUTO_APPROVE_NAMES,
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
    "auggie": PermissionPolicy(
        agent_name="auggie",
        always_auto_approve_names=_COMMON_AUTO_APPROVE_NAMES,
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
    "kimi": PermissionPolicy(
        agent_name="kimi",
        always_auto_approve_names=(
            *_COMMON_AUTO_APPROVE_NAMES,
            "KimiReasoning",
            "CodexReasoning",
        ),
        always_auto_approve_ids=_COMMON_AUTO_APPROVE_IDS,
    ),
})


def get_transport_handler(agent_id: str) -> TransportHandler:
    """エージェントIDに対応するトランスポートを返す（未知のIDは汎用）."""
    return TRANSPORT_HANDLERS.get(agent_id.lower(), _DEFAULT_TRANSPORT)


def get_permission_policy(agent_id: str) -> PermissionPolicy:
    """エージェントIDに対応するパーミッションポリシーを返す（未知のIDは汎用）."""
    return PERMISSION_POLICIES.get(agent_id.lower(), PERMISSION_POLICIES[DEFAULT_AGENT])
