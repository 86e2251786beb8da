"""Canonical tool identifiers for session-level allow-lists."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from pathlib import PurePosixPath
from typing import Any

from acp_agent_bridge.application.shell_matcher import (
    AllowPattern,
    ExactPattern,
    PrefixPattern,
    is_shell_command_allowed,
    strip_simple_env_prelude,
)

# シェル系ツールの同義語（小文字で比較する）
SHELL_TOOL_NAMES: frozenset[str] = frozenset({
    "bash",
    "execute",
    "shell",
    "exec",
    "execute_command",
    "run_shell_command",
    "launch-process",
    "launch_process",
    "run",
})

# サブコマンド単位の許可を提案する CLI
SUBCOMMAND_CLIS: frozenset[str] = frozenset({
    "git",
    "npm",
    "yarn",
    "pnpm",
    "cargo",
    "docker",
    "kubectl",
    "gh",
    "brew",
})

_SHELL_BINARIES = frozenset({"bash", "sh", "zsh"})
_SHELL_COMMAND_FLAGS = frozenset({"-c", "-lc", "-ic", "-lic"})
_PAREN_IDENTIFIER = re.compile(r"^([^()]+)\((.*)\)$", re.DOTALL)
_PREFIX_SUFFIX = ":*"


def is_shell_tool(tool_name: str) -> bool:
    """シェル系ツールかどうかを判定する."""
    return tool_name.lower() in SHELL_TOOL_NAMES


def _command_from_argv(argv: list[Any]) -> str | None:
    parts = [part for part in argv if isinstance(part, str)]
    if not parts or len(parts) != len(argv):
        return None
    # ["bash", "-lc", "git status"] は内側のコマンドを取り出す
    if (
        len(parts) >= 3
        and PurePosixPath(parts[0]).name in _SHELL_BINARIES
        and parts[1] in _SHELL_COMMAND_FLAGS
    ):
        return parts[2].strip() or None
    joined = " ".join(parts).strip()
    return joined or None


def extract_shell_command(tool_input: Any) -> str | None:
    """
    ツール入力からシェルコマンドを取り出す.

    ``command`` / ``cmd`` の文字列または配列、ネストした
    ``toolCall.rawInput`` / ``rawInput`` を順に確認する.

    Args:
        tool_input: ツール入力

    Returns:
        コマンド文字列。見つからない場合はNone
    """
    if not isinstance(tool_input, Mapping):
        return None

    for key in ("command", "cmd"):
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, list):
            command = _command_from_argv(value)
            if command:
                return command

    tool_call = tool_input.get("toolCall")
    if isinstance(tool_call, Mapping):
        command = extract_shell_command(tool_call.get("rawInput"))
        if command:
            return command

    return extract_shell_command(tool_input.get("rawInput"))


def make_tool_identifier(tool_name: str, tool_input: Any) -> str:
    """
    (ツール名, 入力) から許可リスト用の識別子を作る.

    シェル系ツールでコマンドが取り出せる場合は ``"{tool}({command})"``、
    それ以外はツール名をそのまま返す.
    """
    if is_shell_tool(tool_name):
        command = extract_shell_command(tool_input)
        if command:
            return f"{tool_name}({command})"
    return tool_name


def parse_paren_identifier(identifier: str) -> tuple[str, str] | None:
    """``name(argument)`` 形式の識別子を (name, argument) に分解する."""
    match = _PAREN_IDENTIFIER.match(identifier.strip())
    if match is None:
        return None
    return match.group(1).strip(), match.group(2)


def parse_allow_patterns(identifiers: Iterable[str]) -> list[AllowPattern]:
    """
    保存済み識別子からシェル系ツールの許可パターンを集める.

    ``bash(git status)`` は完全一致、``bash(git:*)`` は前方一致になる。
    シェル系ツールの同義語はすべて同じ扱い.
    """
    patterns: list[AllowPattern] = []
    for identifier in identifiers:
        if not isinstance(identifier, str):
            continue
        parsed = parse_paren_identifier(identifier)
        if parsed is None:
            continue
        name, argument = parsed
        if not is_shell_tool(name):
            continue
        if argument.endswith(_PREFIX_SUFFIX):
            prefix = argument[: -len(_PREFIX_SUFFIX)].strip()
            if prefix:
                patterns.append(PrefixPattern(prefix))
        elif argument.strip():
            patterns.append(ExactPattern(argument.strip()))
    return patterns


def is_tool_allowed_for_session(
    allowed_identifiers: Iterable[str], tool_name: str, tool_input: Any
) -> bool:
    """
    ツール呼び出しがセッションの許可リストでカバーされているか判定する.

    Args:
        allowed_identifiers: 許可済み識別子
        tool_name: ツール名
        tool_input: ツール入力

    Returns:
        許可されている場合True
    """
    allowed = set(allowed_identifiers)
    if not allowed:
        return False

    if make_tool_identifier(tool_name, tool_input) in allowed:
        return True

    if not is_shell_tool(tool_name):
        # 旧形式: ツール名だけの許可
        return tool_name in allowed

    command = extract_shell_command(tool_input)
    if not command:
        return False
    return is_shell_command_allowed(command, parse_allow_patterns(allowed))


def suggest_session_identifiers(tool_name: str, tool_input: Any) -> list[str]:
    """
    「このセッションでは常に許可」の候補となる識別子を返す.

    完全一致、サブコマンド単位（``git status:*``）、コマンド名単位（``git:*``）の順.
    """
    identifier = make_tool_identifier(tool_name, tool_input)
    suggestions = [identifier]
    if not is_shell_tool(tool_name):
        return suggestions

    command = extract_shell_command(tool_input)
    if not command:
        return suggestions

    tokens = strip_simple_env_prelude(command).split()
    if not tokens:
        return suggestions
    if (
        len(tokens) >= 2
        and tokens[0] in SUBCOMMAND_CLIS
        and not tokens[1].startswith("-")
    ):
        suggestions.append(f"{tool_name}({tokens[0]} {tokens[1]}{_PREFIX_SUFFIX})")
    suggestions.append(f"{tool_name}({tokens[0]}{_PREFIX_SUFFIX})")
    return suggestions
