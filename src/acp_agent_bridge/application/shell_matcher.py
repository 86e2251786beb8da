"""Conservative shell command matcher used for permission decisions.

シェルの文法を完全に解釈するものではない。判断できない構文
（コマンド置換、閉じていない引用符など）はすべて「許可リストに一致しない」
として扱い、人間の判断に委ねる。
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ExactPattern:
    """コマンド全体（またはセグメント）と完全一致するパターン."""

    value: str


@dataclass(frozen=True)
class PrefixPattern:
    """トークン境界で前方一致するパターン（"git:*" の "git" 部分）."""

    value: str


AllowPattern = ExactPattern | PrefixPattern


@dataclass(frozen=True)
class ShellSplitResult:
    """トップレベル分割の結果."""

    ok: bool
    segments: tuple[str, ...] = field(default_factory=tuple)


_FAILED = ShellSplitResult(ok=False)

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def split_shell_command_top_level(command: str) -> ShellSplitResult:
    """
    シェルコマンドをトップレベルの制御演算子で分割する.

    引用符の外にある ``;``、改行、``&&``、``||``、``&``、``|`` で区切る。
    バッククォート、``$(``、プロセス置換 ``<(`` / ``>(`` は解析できないため
    即座に失敗とする。二重引用符の中でもコマンド置換は評価されるので失敗とする。
    閉じていない引用符や末尾のバックスラッシュも失敗とする。

    Args:
        command: シェルコマンド文字列

    Returns:
        分割結果。ok が False の場合 segments は空
    """
    segments: list[str] = []
    current: list[str] = []
    in_single = False
    in_double = False
    escaped = False
    i = 0
    length = len(command)

    def flush() -> None:
        segment = "".join(current).strip()
        if segment:
            segments.append(segment)
        current.clear()

    while i < length:
        ch = command[i]
        nxt = command[i + 1] if i + 1 < length else ""

        if escaped:
            current.append(ch)
            escaped = False
            i += 1
            continue

        if in_single:
            # シングルクォート内はすべてリテラル
            if ch == "'":
                in_single = False
            current.append(ch)
            i += 1
            continue

        if ch == "\\":
            escaped = True
            current.append(ch)
            i += 1
            continue

        if ch == "`" or (ch == "$" and nxt == "("):
            return _FAILED

        if in_double:
            if ch == '"':
                in_double = False
            current.append(ch)
            i += 1
            continue

        if ch == "'":
            in_single = True
        elif ch == '"':
            in_double = True
        elif ch in "<>" and nxt == "(":
            return _FAILED
        elif ch in ";\n":
            flush()
            i += 1
            continue
        elif ch == "&":
            if nxt == "&":
                flush()
                i += 2
                continue
            prev = current[-1] if current else ""
            # リダイレクト（2>&1, &>file）は区切りではない
            if prev in ("<", ">") or nxt == ">":
                current.append(ch)
                i += 1
                continue
            flush()
            i += 1
            continue
        elif ch == "|":
            flush()
            # "||" と "|&" はまとめて1つの演算子として扱う
            i += 2 if nxt in ("|", "&") else 1
            continue

        current.append(ch)
        i += 1

    if escaped or in_single or in_double:
        return _FAILED

    flush()
    return ShellSplitResult(ok=True, segments=tuple(segments))


def strip_simple_env_prelude(segment: str) -> str:
    """
    先頭の ``NAME=value`` トークン列を取り除く.

    値の引用符は解釈しない（空白を含む値には対応しない）。
    結果は空白で正規化される.
    """
    parts = segment.split()
    index = 0
    while index < len(parts) and _ENV_ASSIGNMENT.match(parts[index]):
        index += 1
    return " ".join(parts[index:])


def _matches_prefix(segment: str, prefix: str) -> bool:
    normalized = " ".join(prefix.split())
    if not normalized:
        return False

    # 空白を含まないパターンはコマンド名（先頭トークン）のみ比較する
    if " " not in normalized:
        tokens = segment.split()
        return bool(tokens) and tokens[0] == normalized

    if not segment.startswith(normalized):
        return False
    rest = segment[len(normalized) :]
    return rest == "" or rest[0].isspace()


def _segment_matches(segment: str, patterns: Iterable[AllowPattern]) -> bool:
    effective = strip_simple_env_prelude(segment)
    for pattern in patterns:
        if isinstance(pattern, ExactPattern):
            if pattern.value.strip() in (segment, effective):
                return True
        elif _matches_prefix(effective, pattern.value):
            return True
    return False


def is_shell_command_allowed(command: str, patterns: Iterable[AllowPattern]) -> bool:
    """
    シェルコマンドが許可パターンでカバーされているか判定する.

    まずコマンド全体の完全一致を確認し（意図的に許可された複合コマンド用）、
    次にトップレベルのセグメントすべてがいずれかのパターンに一致することを要求する。
    "git:*" が "git status && rm -rf /" を許可してしまわないための規則。

    Args:
        command: シェルコマンド文字列
        patterns: 許可パターン

    Returns:
        すべてのセグメントが許可されている場合True
    """
    pattern_list = list(patterns)
    trimmed = command.strip()
    if not trimmed or not pattern_list:
        return False

    for pattern in pattern_list:
        if isinstance(pattern, ExactPattern) and pattern.value.strip() == trimmed:
            return True

    result = split_shell_command_top_level(trimmed)
    if not result.ok or not result.segments:
        return False

    return all(_segment_matches(segment, pattern_list) for segment in result.segments)
