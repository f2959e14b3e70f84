#!/usr/bin/env python3
"""
hdrguard - Header guard hygiene for C/C++

High-level goals:
- Replay the preprocessing of one translation unit as ordered callbacks
  (file entered, #ifndef, #define, #endif, end of unit)
- Correlate those callbacks into per-unit state and, once the unit is
  complete, join every real guard macro back to its file, #ifndef and #endif
- Emit diagnostics with fix-its for missing guards, guards that do not follow
  the naming policy, guards that are not topmost and #endif lines without a
  matching comment
- Emit structured JSON for CI / IDEs, or apply the fix-its in place
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Set, Tuple, Union
import argparse
import ast
import bisect
import fnmatch
import json
import operator
import os
import re
import shlex
import sys

import yaml  # type: ignore
from clang import cindex as clang_cindex  # type: ignore


__version__ = "0.1.0"


def _warn(message: str) -> None:
    sys.stderr.write(f"[hdrguard] {message}\n")


# ============================================================
# =============== SOURCE LOCATION & BUFFERS ==================
# ============================================================

@dataclass(frozen=True, order=True)
class Loc:
    """
    Opaque position inside the concatenated buffers of one unit.
    Only the SourceManager that produced it can map it back to a file.
    """
    offset: int

    def with_offset(self, delta: int) -> Loc:
        return Loc(self.offset + delta)


INVALID_LOC = Loc(0)


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int


@dataclass
class SourceBuffer:
    """
    One entry of a file into the unit. A header included twice gets two
    buffers, the same way a preprocessor lexes it twice.
    """
    buffer_id: int
    path: str
    text: str
    base: int

    _masked: Optional[str] = field(default=None, repr=False)
    _line_starts: Optional[List[int]] = field(default=None, repr=False)

    @property
    def start(self) -> Loc:
        return Loc(self.base)

    @property
    def end(self) -> Loc:
        return Loc(self.base + len(self.text))

    def loc(self, offset: int) -> Loc:
        return Loc(self.base + offset)

    def contains(self, loc: Loc) -> bool:
        return self.base <= loc.offset <= self.base + len(self.text)

    @property
    def masked_text(self) -> str:
        if self._masked is None:
            self._masked = mask_comments(self.text)
        return self._masked

    @property
    def line_starts(self) -> List[int]:
        if self._line_starts is None:
            starts = [0]
            for match in re.finditer("\n", self.text):
                starts.append(match.end())
            self._line_starts = starts
        return self._line_starts


class SourceManager:
    """
    Owns every buffer entered while preprocessing a unit and translates
    Loc handles into buffers, offsets, raw text and presumed positions.
    """

    def __init__(self) -> None:
        self.buffers: List[SourceBuffer] = []
        self._bases: List[int] = []
        self._next_base = 1

    def add_buffer(self, path: str, text: str) -> SourceBuffer:
        buffer = SourceBuffer(
            buffer_id=len(self.buffers),
            path=path,
            text=text,
            base=self._next_base,
        )
        # One spare slot so the end-of-file location stays inside the buffer.
        self._next_base += len(text) + 1
        self.buffers.append(buffer)
        self._bases.append(buffer.base)
        return buffer

    def buffer_for(self, loc: Loc) -> Optional[SourceBuffer]:
        index = bisect.bisect_right(self._bases, loc.offset) - 1
        if index < 0:
            return None
        buffer = self.buffers[index]
        return buffer if buffer.contains(loc) else None

    def path_for(self, loc: Loc) -> Optional[str]:
        buffer = self.buffer_for(loc)
        return buffer.path if buffer is not None else None

    def file_offset(self, loc: Loc) -> int:
        buffer = self.buffer_for(loc)
        if buffer is None:
            raise ValueError(f"location {loc.offset} is not inside any buffer")
        return loc.offset - buffer.base

    def is_written_in_same_file(self, a: Loc, b: Loc) -> bool:
        buffer = self.buffer_for(a)
        return buffer is not None and buffer.contains(b)

    def text_between(self, start: Loc, end: Loc) -> str:
        buffer = self.buffer_for(start)
        if buffer is None or not buffer.contains(end):
            return ""
        return buffer.text[start.offset - buffer.base:end.offset - buffer.base]

    def line_text_from(self, loc: Loc) -> str:
        """Raw text from loc up to, not including, the next CR or LF."""
        buffer = self.buffer_for(loc)
        if buffer is None:
            return ""
        offset = loc.offset - buffer.base
        match = re.compile(r"[\r\n]").search(buffer.text, offset)
        return buffer.text[offset:match.start() if match else len(buffer.text)]

    def presumed_location(self, loc: Loc) -> SourceLocation:
        buffer = self.buffer_for(loc)
        if buffer is None:
            return SourceLocation(file="<invalid>", line=0, column=0)
        offset = loc.offset - buffer.base
        line_index = bisect.bisect_right(buffer.line_starts, offset) - 1
        return SourceLocation(
            file=buffer.path,
            line=line_index + 1,
            column=offset - buffer.line_starts[line_index] + 1,
        )


# ============================================================
# ================ IDENTIFIERS & MACROS ======================
# ============================================================

class IdentifierInfo:
    """Interned identifier. Equality is identity within one IdentifierTable."""

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"IdentifierInfo({self.name!r})"


class IdentifierTable:
    def __init__(self) -> None:
        self._table: Dict[str, IdentifierInfo] = {}

    def get(self, name: str) -> IdentifierInfo:
        info = self._table.get(name)
        if info is None:
            info = IdentifierInfo(name)
            self._table[name] = info
        return info

    def __len__(self) -> int:
        return len(self._table)


@dataclass(frozen=True)
class Token:
    identifier: IdentifierInfo
    location: Loc

    @property
    def spelling(self) -> str:
        return self.identifier.name


@dataclass(frozen=True)
class MacroInfo:
    identifier: IdentifierInfo
    definition_loc: Loc  # location of the name token in the #define
    kind: Literal["object_like", "function_like"] = "object_like"
    params: Tuple[str, ...] = ()
    body: str = ""


# ============================================================
# ================ PATHS & NAMING POLICY =====================
# ============================================================

DEFAULT_HEADER_SUFFIXES = (".h", ".hh", ".hpp", ".hxx")


def canonicalize_path(path: str) -> str:
    """
    Normalize a path for use as a map key and as naming input.

    '.' components are dropped and '..' removes the component kept before it;
    a '..' with nothing left to remove is discarded. No filesystem access.
    """
    path = path.replace("\\", "/")
    parts: List[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    joined = "/".join(parts)
    return "/" + joined if path.startswith("/") else joined


def file_identity(path: str) -> str:
    """Absolute canonical form of path; one key per file however it was spelled."""
    return canonicalize_path(os.path.abspath(path))


def is_acceptable_guard_name(current: str, canonical: str) -> bool:
    # A single trailing underscore is a common alternate convention.
    return current == canonical or current == canonical + "_"


@dataclass
class GuardPolicy:
    """
    House style for header guards. Every hook below is a plain method, so a
    project with a different convention can subclass and override it.

    - header_suffixes: which files count as headers
    - root: guard names are derived from paths relative to this directory
      (the working directory when unset)
    - prefix: prepended to every derived guard (e.g. "MYPROJ_")
    - trailing_underscore: derive "FOO_H_" instead of "FOO_H"
    - strip_include_dir: drop everything up to the last "include/" component
    - suggest_endif_comment: require "// GUARD" after the closing #endif
    - fix_exclude: fnmatch globs (on the root-relative path) never fixed
    """
    header_suffixes: List[str] = field(default_factory=lambda: list(DEFAULT_HEADER_SUFFIXES))
    root: Optional[str] = None
    prefix: str = ""
    trailing_underscore: bool = False
    strip_include_dir: bool = True
    suggest_endif_comment: bool = True
    fix_exclude: List[str] = field(default_factory=list)

    def is_header(self, path: str) -> bool:
        return any(path.endswith(suffix) for suffix in self.header_suffixes)

    def derive_guard_name(self, path: str, current_name: Optional[str] = None) -> str:
        guard = self._relative_to_root(canonicalize_path(path))
        if self.strip_include_dir:
            pos = guard.rfind("include/")
            if pos != -1 and (pos == 0 or guard[pos - 1] == "/"):
                guard = guard[pos + len("include/"):]
        guard = re.sub(r"[^0-9A-Za-z_]", "_", guard).lstrip("_")
        guard = (self.prefix + guard).upper()
        if not guard or guard[0].isdigit():
            guard = "H_" + guard
        if self.trailing_underscore:
            guard += "_"
        return guard

    def should_fix_guard(self, path: str) -> bool:
        relative = self._relative_to_root(canonicalize_path(path))
        return not any(fnmatch.fnmatch(relative, pattern) for pattern in self.fix_exclude)

    def should_suggest_endif_comment(self, path: str) -> bool:
        return self.suggest_endif_comment and self.is_header(path)

    def should_suggest_adding_guard(self, path: str) -> bool:
        return self.is_header(path)

    def _relative_to_root(self, path: str) -> str:
        # No root means the working directory.
        root = file_identity(self.root if self.root is not None else os.getcwd()).rstrip("/") + "/"
        absolute = file_identity(path)
        if absolute.startswith(root):
            return absolute[len(root):]
        return path


# ============================================================
# ===================== DIAGNOSTICS ==========================
# ============================================================

DiagnosticKind = Literal[
    "non_conforming_name",
    "missing_endif_comment",
    "missing_guard",
    "non_topmost_guard",
]


@dataclass(frozen=True)
class Replacement:
    start: Loc
    end: Loc
    text: str


@dataclass(frozen=True)
class Insertion:
    at: Loc
    text: str


FixIt = Union[Replacement, Insertion]


@dataclass(frozen=True)
class Diagnostic:
    location: Loc
    kind: DiagnosticKind
    message: str
    fixits: Tuple[FixIt, ...] = ()


# ============================================================
# =============== COMMENT MASKING & ORACLE ===================
# ============================================================

_CONTINUATION_RE = re.compile(r"\\\r?\n")
_DIRECTIVE_RE = re.compile(r"[ \t\f\v]*#[ \t\f\v]*([A-Za-z_]\w*)?")
_OPERAND_RE = re.compile(r"\s*([A-Za-z_]\w*)")
_NOT_DEFINED_RE = re.compile(r"\s*!\s*defined\s*(\()?\s*([A-Za-z_]\w*)\s*(?(1)\))\s*$")


def _continues_line(text: str, newline: int) -> bool:
    if newline >= 1 and text[newline - 1] == "\\":
        return True
    return newline >= 2 and text[newline - 1] == "\r" and text[newline - 2] == "\\"


def mask_comments(text: str) -> str:
    """
    Return text with every comment blanked to spaces. Line breaks are kept,
    so offsets and line numbers in the result match the input exactly.
    String and character literals are skipped so '//' inside them survives.
    """
    chars = list(text)
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            while i < n:
                if text[i] == "\n":
                    if not _continues_line(text, i):
                        break
                elif text[i] != "\r":
                    chars[i] = " "
                i += 1
        elif ch == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            for j in range(i, end):
                if text[j] not in "\r\n":
                    chars[j] = " "
            i = end
        elif ch in "\"'":
            j = i + 1
            while j < n and text[j] != ch and text[j] != "\n":
                j += 2 if text[j] == "\\" else 1
            i = j + 1
        else:
            i += 1
    return "".join(chars)


def _logical_lines(masked: str) -> Iterator[Tuple[int, str]]:
    """Yield (offset, text) per logical line; continuations become spaces."""
    joined = _CONTINUATION_RE.sub(lambda m: " " * len(m.group(0)), masked)
    offset = 0
    for line in joined.split("\n"):
        yield offset, line
        offset += len(line) + 1


@dataclass
class _Directive:
    name: str          # "" for the null directive
    name_offset: int   # buffer offset of the directive keyword
    rest: str
    rest_offset: int


def _parse_directive(start: int, line: str) -> Optional[_Directive]:
    match = _DIRECTIVE_RE.match(line)
    if match is None:
        return None
    name = match.group(1) or ""
    name_offset = start + (match.start(1) if match.group(1) else match.end())
    return _Directive(
        name=name,
        name_offset=name_offset,
        rest=line[match.end():].rstrip("\r"),
        rest_offset=start + match.end(),
    )


def _operand(directive: _Directive) -> Optional[Tuple[str, int]]:
    match = _OPERAND_RE.match(directive.rest)
    if match is None:
        return None
    return match.group(1), directive.rest_offset + match.start(1)


def _guard_test(directive: _Directive) -> Optional[Tuple[str, int]]:
    """Macro tested by '#ifndef X' or '#if !defined(X)', if that is the form."""
    if directive.name == "ifndef":
        return _operand(directive)
    if directive.name == "if":
        match = _NOT_DEFINED_RE.match(directive.rest)
        if match:
            return match.group(2), directive.rest_offset + match.start(2)
    return None


@dataclass(frozen=True)
class GuardSpan:
    macro: str
    ifndef_offset: int
    define_offset: int
    endif_offset: int


def find_guard_span(masked: str) -> Optional[GuardSpan]:
    """
    Find a whole-file include guard in comment-masked text.

    The file must open (after blank and comment-only lines) with
    '#ifndef X' or '#if !defined(X)', immediately followed by '#define X'.
    The guarded region may not have a top-level #else/#elif, and only blank
    or comment-only lines may follow its #endif.
    """
    stage = "ifndef"
    macro = ""
    ifndef_offset = define_offset = endif_offset = -1
    depth = 0
    for start, line in _logical_lines(masked):
        if not line.strip():
            continue
        directive = _parse_directive(start, line)
        if stage == "ifndef":
            test = _guard_test(directive) if directive else None
            if test is None:
                return None
            macro, ifndef_offset = test
            stage = "define"
        elif stage == "define":
            operand = _operand(directive) if directive and directive.name == "define" else None
            if operand is None or operand[0] != macro:
                return None
            define_offset = operand[1]
            stage = "body"
            depth = 1
        elif stage == "body":
            if directive is None:
                continue
            if directive.name in ("if", "ifdef", "ifndef"):
                depth += 1
            elif directive.name in ("else", "elif", "elifdef", "elifndef") and depth == 1:
                return None
            elif directive.name == "endif":
                depth -= 1
                if depth == 0:
                    endif_offset = directive.name_offset
                    stage = "done"
        else:
            return None
    if stage != "done":
        return None
    return GuardSpan(
        macro=macro,
        ifndef_offset=ifndef_offset,
        define_offset=define_offset,
        endif_offset=endif_offset,
    )


class HeaderGuardOracle:
    """
    Decides whether a macro definition is the controlling macro of a
    whole-file include guard. Anything it cannot confirm is "not a guard".
    """

    def __init__(self, source_manager: SourceManager) -> None:
        self.source_manager = source_manager
        self._spans: Dict[int, Optional[GuardSpan]] = {}

    def guard_span(self, buffer: SourceBuffer) -> Optional[GuardSpan]:
        if buffer.buffer_id not in self._spans:
            self._spans[buffer.buffer_id] = find_guard_span(buffer.masked_text)
        return self._spans[buffer.buffer_id]

    def is_guard_candidate(self, macro: MacroInfo) -> bool:
        buffer = self.source_manager.buffer_for(macro.definition_loc)
        if buffer is None:
            return False
        span = self.guard_span(buffer)
        if span is None or span.macro != macro.identifier.name:
            return False
        return buffer.loc(span.define_offset) == macro.definition_loc


# ============================================================
# ============== HEADER GUARD CORRELATION ====================
# ============================================================

Origin = Literal["user", "system"]


@dataclass
class FileRecord:
    path: str
    start_loc: Loc


@dataclass
class IfndefCandidate:
    directive_loc: Loc
    name_loc: Loc


@dataclass
class UnitState:
    """
    What the header guard check remembers about the unit being preprocessed.

    files:   file identity -> first entry of each user file
    ifndefs: identifier -> last live #ifndef testing it
    macros:  every #define in source order
    endifs:  opening conditional directive -> its #endif
    """
    files: Dict[str, FileRecord] = field(default_factory=dict)
    ifndefs: Dict[IdentifierInfo, IfndefCandidate] = field(default_factory=dict)
    macros: List[Tuple[Token, MacroInfo]] = field(default_factory=list)
    endifs: Dict[Loc, Loc] = field(default_factory=dict)

    def clear(self) -> None:
        self.files.clear()
        self.ifndefs.clear()
        self.macros.clear()
        self.endifs.clear()

    def is_empty(self) -> bool:
        return not (self.files or self.ifndefs or self.macros or self.endifs)


class PPCallbacks:
    """
    Events raised by Preprocessor in source order. The defaults ignore them.
    """

    def on_enter_file(self, path: str, origin: Origin, start_loc: Loc) -> None:
        pass

    def on_ifndef(self, directive_loc: Loc, name_token: Token, already_defined: bool) -> None:
        pass

    def on_macro_defined(self, name_token: Token, macro: MacroInfo) -> None:
        pass

    def on_endif(self, endif_loc: Loc, if_loc: Loc) -> None:
        pass

    def on_end_of_unit(self) -> None:
        pass


class HeaderGuardCallbacks(PPCallbacks):
    """
    Records files, #ifndefs, #defines and #endifs while a unit is
    preprocessed. Whether a macro really is a header guard is only known once
    the whole unit has been seen, so every judgment waits for on_end_of_unit.
    """

    def __init__(
        self,
        source_manager: SourceManager,
        policy: Optional[GuardPolicy] = None,
        oracle: Optional[HeaderGuardOracle] = None,
        sink: Optional[Callable[[Diagnostic], None]] = None,
    ) -> None:
        self.source_manager = source_manager
        self.policy = policy if policy is not None else GuardPolicy()
        self.oracle = oracle if oracle is not None else HeaderGuardOracle(source_manager)
        self.diagnostics: List[Diagnostic] = []
        self.report = sink if sink is not None else self.diagnostics.append
        self.state = UnitState()

    def on_enter_file(self, path: str, origin: Origin, start_loc: Loc) -> None:
        # Record every user file we enter; guardless ones are diagnosed later.
        if origin != "user":
            return
        file_name = file_identity(path)
        if file_name not in self.state.files:
            self.state.files[file_name] = FileRecord(path=canonicalize_path(path), start_loc=start_loc)

    def on_ifndef(self, directive_loc: Loc, name_token: Token, already_defined: bool) -> None:
        if already_defined:
            return
        self.state.ifndefs[name_token.identifier] = IfndefCandidate(
            directive_loc=directive_loc,
            name_loc=name_token.location,
        )

    def on_macro_defined(self, name_token: Token, macro: MacroInfo) -> None:
        self.state.macros.append((name_token, macro))

    def on_endif(self, endif_loc: Loc, if_loc: Loc) -> None:
        self.state.endifs[if_loc] = endif_loc

    def on_end_of_unit(self) -> None:
        state = self.state
        for name_token, macro in state.macros:
            if not self.oracle.is_guard_candidate(macro):
                continue

            path = self.source_manager.path_for(macro.definition_loc)
            if path is None:
                continue
            file_name = file_identity(path)
            state.files.pop(file_name, None)

            if not self.policy.should_fix_guard(file_name):
                continue

            candidate = state.ifndefs.get(name_token.identifier)
            if candidate is None:
                continue
            endif_loc = state.endifs.get(candidate.directive_loc)
            if endif_loc is None:
                continue

            guard = self._check_guard_definition(candidate.name_loc, name_token, file_name)
            if self.policy.should_suggest_endif_comment(file_name):
                self._check_endif_comment(endif_loc, guard)

        self._check_guardless_headers()
        state.clear()

    def _check_guard_definition(self, ifndef_name_loc: Loc, define_token: Token, file_name: str) -> str:
        """
        Rename a guard that does not follow the policy in both the #ifndef
        and the #define. Returns the guard name the #endif should mention.
        """
        current = define_token.spelling
        expected = self.policy.derive_guard_name(file_name, current)
        if is_acceptable_guard_name(current, expected):
            return current
        self.report(Diagnostic(
            location=ifndef_name_loc,
            kind="non_conforming_name",
            message="header guard does not follow preferred style",
            fixits=(
                Replacement(ifndef_name_loc, ifndef_name_loc.with_offset(len(current)), expected),
                Replacement(
                    define_token.location,
                    define_token.location.with_offset(len(current)),
                    expected,
                ),
            ),
        ))
        return expected

    def _check_endif_comment(self, endif_loc: Loc, guard: str) -> None:
        line = self.source_manager.line_text_from(endif_loc)
        if line.endswith("// " + guard) or line.endswith("/* " + guard + " */"):
            return
        self.report(Diagnostic(
            location=endif_loc,
            kind="missing_endif_comment",
            message="#endif for a header guard should reference the guard macro in a comment",
            fixits=(Replacement(endif_loc, endif_loc.with_offset(len(line)), "endif  // " + guard),),
        ))

    def _check_guardless_headers(self) -> None:
        # TODO: insert the guard after a leading license comment instead of at offset 0.
        for file_name, record in self.state.files.items():
            if not self.policy.should_suggest_adding_guard(file_name):
                continue
            buffer = self.source_manager.buffer_for(record.start_loc)
            if buffer is None:
                continue

            guard = self.policy.derive_guard_name(file_name)
            misplaced = self._find_misplaced_guard(record, guard)
            if misplaced is not None:
                self.report(Diagnostic(
                    location=misplaced.location,
                    kind="non_topmost_guard",
                    message="Header guard after code/includes. Consider moving it up.",
                ))
                continue

            closing = "\n#endif\n"
            if self.policy.should_suggest_endif_comment(file_name):
                closing = f"\n#endif  // {guard}\n"
            self.report(Diagnostic(
                location=record.start_loc,
                kind="missing_guard",
                message="header is missing header guard",
                fixits=(
                    Insertion(record.start_loc, f"#ifndef {guard}\n#define {guard}\n\n"),
                    Insertion(buffer.end, closing),
                ),
            ))

    def _find_misplaced_guard(self, record: FileRecord, guard: str) -> Optional[Token]:
        for name_token, _macro in self.state.macros:
            if not is_acceptable_guard_name(name_token.spelling, guard):
                continue
            if self.source_manager.is_written_in_same_file(record.start_loc, name_token.location):
                return name_token
        return None


# ============================================================
# ================= CONDITION EVALUATION =====================
# ============================================================

class ExpressionEvalError(Exception):
    """Raised when a #if / #elif condition cannot be evaluated."""


_PP_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<number>(?:0[xX][0-9A-Fa-f]+|\d+)[uUlL]*)
  | (?P<char>'(?:\\.|[^\\'])+')
  | (?P<ident>[A-Za-z_]\w*)
  | (?P<op>&&|\|\||<<|>>|<=|>=|==|!=|[-+*/%<>!~&|^()?:,])
    """,
    re.VERBOSE,
)


def _c_div(left: int, right: int) -> int:
    if right == 0:
        raise ExpressionEvalError("division by zero")
    quotient = abs(left) // abs(right)
    return quotient if (left >= 0) == (right >= 0) else -quotient


def _c_mod(left: int, right: int) -> int:
    return left - _c_div(left, right) * right


def _parse_int_literal(text: str) -> int:
    digits = text.rstrip("uUlL")
    if digits[:2] in ("0x", "0X"):
        return int(digits, 16)
    if len(digits) > 1 and digits.startswith("0"):
        return int(digits, 8)
    return int(digits)


class ConditionEvaluator:
    """
    Evaluates preprocessor conditions by rewriting them into a Python
    expression and walking its AST.
    Supports integer and character literals, defined(), arithmetic, bitwise,
    comparison and logical operators. Object-like macros expand to the value
    of their body; identifiers that are not macros evaluate to 0.
    """

    MAX_EXPANSION_DEPTH = 32

    _BIN_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: _c_div,
        ast.Mod: _c_mod,
        ast.BitAnd: operator.and_,
        ast.BitOr: operator.or_,
        ast.BitXor: operator.xor,
        ast.LShift: operator.lshift,
        ast.RShift: operator.rshift,
    }
    _UNARY_OPS = {
        ast.Not: lambda value: int(not value),
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
        ast.Invert: operator.invert,
    }
    _COMPARE_OPS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
    }
    _TRANSLATED_OPS = {"&&": " and ", "||": " or ", "!": " not "}

    def __init__(self) -> None:
        self._cache: Dict[str, ast.AST] = {}

    def evaluate(self, expr: str, macros: Dict[str, MacroInfo]) -> bool:
        return bool(self._value(expr, macros, 0))

    def _value(self, expr: str, macros: Dict[str, MacroInfo], depth: int) -> int:
        if depth > self.MAX_EXPANSION_DEPTH:
            raise ExpressionEvalError("macro expansion is too deep")
        python_expr = self._translate(expr, macros, depth)
        if not python_expr.strip():
            raise ExpressionEvalError("expected value in expression")
        tree = self._cache.get(python_expr)
        if tree is None:
            try:
                tree = ast.parse(python_expr.strip(), mode="eval")
            except SyntaxError as exc:
                raise ExpressionEvalError(f"invalid expression '{expr.strip()}': {exc.msg}") from exc
            self._cache[python_expr] = tree
        return self._eval_node(tree.body)

    def _translate(self, expr: str, macros: Dict[str, MacroInfo], depth: int) -> str:
        tokens: List[Tuple[str, str]] = []
        pos = 0
        while pos < len(expr):
            match = _PP_TOKEN_RE.match(expr, pos)
            if match is None:
                raise ExpressionEvalError(f"unexpected character {expr[pos]!r}")
            pos = match.end()
            if match.lastgroup != "space":
                tokens.append((match.lastgroup or "", match.group(0)))

        out: List[str] = []
        index = 0
        while index < len(tokens):
            kind, text = tokens[index]
            index += 1
            if kind == "number":
                out.append(str(_parse_int_literal(text)))
            elif kind == "char":
                try:
                    out.append(str(ord(ast.literal_eval(text)[0])))
                except (ValueError, SyntaxError, IndexError) as exc:
                    raise ExpressionEvalError(f"invalid character literal {text}") from exc
            elif kind == "ident" and text == "defined":
                name, index = self._defined_operand(tokens, index)
                out.append("1" if name in macros else "0")
            elif kind == "ident":
                out.append(self._identifier_value(text, tokens, index, macros, depth))
            elif text in ("?", ":", ","):
                raise ExpressionEvalError(f"unsupported operator '{text}'")
            else:
                out.append(self._TRANSLATED_OPS.get(text, text))
        return " ".join(out)

    def _defined_operand(self, tokens: List[Tuple[str, str]], index: int) -> Tuple[str, int]:
        parenthesized = index < len(tokens) and tokens[index][1] == "("
        if parenthesized:
            index += 1
        if index >= len(tokens) or tokens[index][0] != "ident":
            raise ExpressionEvalError("macro name missing after 'defined'")
        name = tokens[index][1]
        index += 1
        if parenthesized:
            if index >= len(tokens) or tokens[index][1] != ")":
                raise ExpressionEvalError("missing ')' after 'defined'")
            index += 1
        return name, index

    def _identifier_value(
        self,
        name: str,
        tokens: List[Tuple[str, str]],
        index: int,
        macros: Dict[str, MacroInfo],
        depth: int,
    ) -> str:
        macro = macros.get(name)
        if macro is None:
            if index < len(tokens) and tokens[index][1] == "(":
                raise ExpressionEvalError(f"function-like macro '{name}' is not defined")
            if name == "true":
                return "1"
            return "0"
        if macro.kind == "function_like":
            raise ExpressionEvalError(f"function-like macro '{name}' is not supported in conditions")
        return f"({self._value(macro.body, macros, depth + 1)})"

    def _eval_node(self, node: ast.AST) -> int:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return int(all(self._eval_node(value) for value in node.values))
            return int(any(self._eval_node(value) for value in node.values))

        if isinstance(node, ast.UnaryOp):
            op = self._UNARY_OPS.get(type(node.op))
            if not op:
                raise ExpressionEvalError("unsupported unary operator")
            return op(self._eval_node(node.operand))

        if isinstance(node, ast.BinOp):
            op = self._BIN_OPS.get(type(node.op))
            if not op:
                raise ExpressionEvalError("unsupported binary operator")
            return op(self._eval_node(node.left), self._eval_node(node.right))

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left)
            for operator_node, comparator in zip(node.ops, node.comparators):
                op = self._COMPARE_OPS.get(type(operator_node))
                if not op:
                    raise ExpressionEvalError("unsupported comparison operator")
                right = self._eval_node(comparator)
                if not op(left, right):
                    return 0
                left = right
            return 1

        if isinstance(node, ast.Constant) and isinstance(node.value, int):
            return int(node.value)

        raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")


# ============================================================
# ================== INCLUDE RESOLUTION ======================
# ============================================================

IncludeResolver = Callable[[str, int, str, bool], Optional[Tuple[str, Origin]]]


def _is_under(path: str, directory: str) -> bool:
    prefix = file_identity(directory).rstrip("/") + "/"
    return file_identity(path).startswith(prefix)


class SearchPathResolver:
    """
    Resolve an #include spelling the way a compiler driver does with -I and
    -isystem: quoted includes look next to the including file first, then
    the user search paths, then the system ones.
    """

    def __init__(
        self,
        include_dirs: Iterable[str] = (),
        system_include_dirs: Iterable[str] = (),
        exists: Callable[[str], bool] = os.path.isfile,
    ) -> None:
        self.include_dirs = list(include_dirs)
        self.system_include_dirs = list(system_include_dirs)
        self._exists = exists

    def __call__(
        self,
        including_path: str,
        line: int,
        spelled: str,
        angled: bool,
    ) -> Optional[Tuple[str, Origin]]:
        candidates: List[Tuple[str, Origin]] = []
        if not angled:
            candidates.append((os.path.join(os.path.dirname(including_path), spelled), "user"))
        candidates.extend((os.path.join(d, spelled), "user") for d in self.include_dirs)
        candidates.extend((os.path.join(d, spelled), "system") for d in self.system_include_dirs)
        for candidate, origin in candidates:
            if self._exists(candidate):
                return candidate, origin
        return None

    def classify(self, path: str, angled: bool) -> Origin:
        if any(_is_under(path, d) for d in self.system_include_dirs):
            return "system"
        if angled and not any(_is_under(path, d) for d in self.include_dirs):
            return "system"
        return "user"


class ClangIncludeResolver:
    """
    Answer #include lookups from libclang's own parse of the unit, so header
    search matches the compiler exactly. Directives libclang did not report
    go to the fallback resolver.
    """

    def __init__(self, main_path: str, args: List[str], fallback: SearchPathResolver) -> None:
        self.fallback = fallback
        self._resolved: Dict[Tuple[str, int], str] = {}
        index = clang_cindex.Index.create()
        clang_tu = index.parse(main_path, args=args, options=_clang_parse_options())
        for inclusion in clang_tu.get_includes():
            if inclusion.include is None or inclusion.source is None:
                continue
            key = (file_identity(inclusion.source.name), inclusion.location.line)
            self._resolved[key] = inclusion.include.name

    def __call__(
        self,
        including_path: str,
        line: int,
        spelled: str,
        angled: bool,
    ) -> Optional[Tuple[str, Origin]]:
        key = (file_identity(including_path), line)
        resolved = self._resolved.get(key)
        if resolved is None:
            return self.fallback(including_path, line, spelled, angled)
        return resolved, self.fallback.classify(resolved, angled)


def _clang_parse_options() -> int:
    options = clang_cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD
    options |= clang_cindex.TranslationUnit.PARSE_SKIP_FUNCTION_BODIES
    return options


def _clang_args(config: HdrguardConfig) -> List[str]:
    """
    libclang arguments for a unit. Users can append additional flags via the
    HDRGUARD_CLANG_ARGS environment variable.
    """
    args = list(config.clang_args)
    args.extend(f"-I{d}" for d in config.include_dirs)
    args.extend(arg for d in config.system_include_dirs for arg in ("-isystem", d))
    args.extend(f"-D{name}={value}" for name, value in config.defines.items())
    extra = os.environ.get("HDRGUARD_CLANG_ARGS")
    if extra:
        args.extend(shlex.split(extra))
    return args


_CLANG_FAILURE_WARNED = False


def build_include_resolver(path: str, config: HdrguardConfig) -> IncludeResolver:
    """
    Use libclang's include resolution when enabled and usable, otherwise
    plain search paths.
    """
    global _CLANG_FAILURE_WARNED
    search = SearchPathResolver(config.include_dirs, config.system_include_dirs)
    if not config.use_clang:
        return search
    try:
        return ClangIncludeResolver(path, _clang_args(config), search)
    except Exception as exc:  # pragma: no cover - libclang load/parse failure
        if not _CLANG_FAILURE_WARNED:
            _warn(f"libclang is not usable ({exc}); resolving includes from search paths.")
            _CLANG_FAILURE_WARNED = True
        return search


# ============================================================
# =================== PREPROCESSOR ===========================
# ============================================================

_MACRO_HEAD_RE = re.compile(r"\s*([A-Za-z_]\w*)(\()?")
_INCLUDE_RE = re.compile(r"""\s*(?:"([^"]*)"|<([^>]*)>)""")


def read_source_file(path: str) -> str:
    # newline="" keeps CRLF; fix-it offsets index the text exactly as on disk.
    with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
        return handle.read()


@dataclass
class _Conditional:
    open_loc: Loc
    parent_active: bool
    active: bool
    taken: bool
    seen_else: bool = False


class Preprocessor:
    """
    Replays the directives of one translation unit and reports them to a
    PPCallbacks in source order. Only what header guard analysis needs is
    modelled: conditionals, #define/#undef, #include and #pragma once.
    Files of system origin are entered but not replayed.
    """

    MAX_INCLUDE_DEPTH = 200

    def __init__(
        self,
        source_manager: SourceManager,
        identifiers: IdentifierTable,
        callbacks: PPCallbacks,
        resolver: IncludeResolver,
        predefined: Optional[Dict[str, str]] = None,
        reader: Callable[[str], str] = read_source_file,
    ) -> None:
        self.source_manager = source_manager
        self.identifiers = identifiers
        self.callbacks = callbacks
        self.resolver = resolver
        self.reader = reader
        self.macros: Dict[str, MacroInfo] = {}
        for name, value in (predefined or {}).items():
            self.macros[name] = MacroInfo(self.identifiers.get(name), INVALID_LOC, body=value)
        self._pragma_once: Set[str] = set()
        self._evaluator = ConditionEvaluator()

    def run(self, main_path: str) -> None:
        """Preprocess main_path. Raises OSError if it cannot be read."""
        text = self.reader(main_path)
        self._enter_file(main_path, text, "user", 0)
        self.callbacks.on_end_of_unit()

    def _enter_file(self, path: str, text: str, origin: Origin, depth: int) -> None:
        buffer = self.source_manager.add_buffer(path, text)
        self.callbacks.on_enter_file(path, origin, buffer.start)
        if origin == "user":
            self._lex_buffer(buffer, depth)

    def _where(self, buffer: SourceBuffer, offset: int) -> str:
        position = self.source_manager.presumed_location(buffer.loc(offset))
        return f"{position.file}:{position.line}"

    def _lex_buffer(self, buffer: SourceBuffer, depth: int) -> None:
        stack: List[_Conditional] = []
        for start, line in _logical_lines(buffer.masked_text):
            directive = _parse_directive(start, line)
            if directive is None:
                continue
            active = not stack or stack[-1].active
            name = directive.name
            if name in ("if", "ifdef", "ifndef"):
                self._handle_if(buffer, directive, stack, active)
            elif name in ("elif", "elifdef", "elifndef", "else"):
                self._handle_else(buffer, directive, stack)
            elif name == "endif":
                self._handle_endif(buffer, directive, stack)
            elif not active:
                continue
            elif name == "define":
                self._handle_define(buffer, directive)
            elif name == "undef":
                operand = _operand(directive)
                if operand is not None:
                    self.macros.pop(operand[0], None)
            elif name in ("include", "include_next", "import"):
                self._handle_include(buffer, directive, depth)
            elif name == "pragma" and directive.rest.split() == ["once"]:
                self._pragma_once.add(file_identity(buffer.path))
        if stack:
            _warn(f"{self._where(buffer, self.source_manager.file_offset(stack[-1].open_loc))}: "
                  f"unterminated conditional directive")

    def _condition(self, buffer: SourceBuffer, directive: _Directive) -> bool:
        if directive.name in ("ifdef", "ifndef", "elifdef", "elifndef"):
            operand = _operand(directive)
            if operand is None:
                _warn(f"{self._where(buffer, directive.name_offset)}: macro name missing in #{directive.name}")
                return False
            defined = operand[0] in self.macros
            return defined if directive.name.endswith("ifdef") else not defined
        try:
            return self._evaluator.evaluate(directive.rest, self.macros)
        except ExpressionEvalError as exc:
            _warn(f"{self._where(buffer, directive.name_offset)}: cannot evaluate "
                  f"#{directive.name} condition ({exc}); treating it as false")
            return False

    def _handle_if(
        self,
        buffer: SourceBuffer,
        directive: _Directive,
        stack: List[_Conditional],
        active: bool,
    ) -> None:
        open_loc = buffer.loc(directive.name_offset)
        if not active:
            stack.append(_Conditional(open_loc, parent_active=False, active=False, taken=True))
            return
        if directive.name == "ifndef":
            operand = _operand(directive)
            if operand is not None:
                token = Token(self.identifiers.get(operand[0]), buffer.loc(operand[1]))
                self.callbacks.on_ifndef(open_loc, token, operand[0] in self.macros)
        result = self._condition(buffer, directive)
        stack.append(_Conditional(open_loc, parent_active=True, active=result, taken=result))

    def _handle_else(self, buffer: SourceBuffer, directive: _Directive, stack: List[_Conditional]) -> None:
        if not stack:
            _warn(f"{self._where(buffer, directive.name_offset)}: #{directive.name} without #if")
            return
        top = stack[-1]
        if top.seen_else:
            _warn(f"{self._where(buffer, directive.name_offset)}: #{directive.name} after #else")
        if directive.name == "else":
            top.seen_else = True
        if not top.parent_active or top.taken:
            top.active = False
            return
        result = True if directive.name == "else" else self._condition(buffer, directive)
        top.active = result
        top.taken = result

    def _handle_endif(self, buffer: SourceBuffer, directive: _Directive, stack: List[_Conditional]) -> None:
        if not stack:
            _warn(f"{self._where(buffer, directive.name_offset)}: #endif without #if")
            return
        top = stack.pop()
        self.callbacks.on_endif(buffer.loc(directive.name_offset), top.open_loc)

    def _handle_define(self, buffer: SourceBuffer, directive: _Directive) -> None:
        match = _MACRO_HEAD_RE.match(directive.rest)
        if match is None:
            _warn(f"{self._where(buffer, directive.name_offset)}: macro name missing in #define")
            return
        identifier = self.identifiers.get(match.group(1))
        name_loc = buffer.loc(directive.rest_offset + match.start(1))
        kind: Literal["object_like", "function_like"] = "object_like"
        params: Tuple[str, ...] = ()
        body = directive.rest[match.end():]
        if match.group(2):
            kind = "function_like"
            params_text, _, body = body.partition(")")
            params = tuple(p.strip() for p in params_text.split(",") if p.strip())
        macro = MacroInfo(
            identifier=identifier,
            definition_loc=name_loc,
            kind=kind,
            params=params,
            body=" ".join(body.split()),
        )
        self.macros[identifier.name] = macro
        self.callbacks.on_macro_defined(Token(identifier, name_loc), macro)

    def _handle_include(self, buffer: SourceBuffer, directive: _Directive, depth: int) -> None:
        where = self._where(buffer, directive.name_offset)
        match = _INCLUDE_RE.match(directive.rest)
        if match is None:
            _warn(f"{where}: unsupported #{directive.name} form; skipping it")
            return
        angled = match.group(2) is not None
        spelled = match.group(2) if angled else match.group(1)
        line = self.source_manager.presumed_location(buffer.loc(directive.name_offset)).line
        resolved = self.resolver(buffer.path, line, spelled, angled)
        if resolved is None:
            if not angled:
                _warn(f"{where}: cannot find include \"{spelled}\"")
            return
        path, origin = resolved
        if file_identity(path) in self._pragma_once:
            return
        if depth + 1 > self.MAX_INCLUDE_DEPTH:
            _warn(f"{where}: #include nested too deeply; not entering {path}")
            return
        try:
            text = self.reader(path)
        except OSError as exc:
            _warn(f"{where}: could not read {path}: {exc}")
            return
        self._enter_file(path, text, origin, depth + 1)


# ============================================================
# ==================== CONFIGURATION =========================
# ============================================================

@dataclass
class HdrguardConfig:
    policy: GuardPolicy = field(default_factory=GuardPolicy)
    include_dirs: List[str] = field(default_factory=list)
    system_include_dirs: List[str] = field(default_factory=list)
    defines: Dict[str, str] = field(default_factory=dict)
    clang_args: List[str] = field(default_factory=list)
    use_clang: bool = True


_POLICY_KEYS: Dict[str, type] = {
    "header_suffixes": list,
    "root": str,
    "prefix": str,
    "trailing_underscore": bool,
    "strip_include_dir": bool,
    "suggest_endif_comment": bool,
    "fix_exclude": list,
}
_PREPROCESSOR_KEYS: Dict[str, type] = {
    "include_dirs": list,
    "system_include_dirs": list,
    "defines": dict,
    "clang_args": list,
    "use_clang": bool,
}
_PATH_KEYS = {"root", "include_dirs", "system_include_dirs"}


def _resolve_config_path(path: str, base_dir: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(base_dir, path))


def _read_section(
    raw: Any,
    allowed: Dict[str, type],
    origin: str,
    base_dir: str,
) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        _warn(f"Ignoring section '{origin}': expected a mapping.")
        return {}
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        expected = allowed.get(key)
        if expected is None:
            _warn(f"Ignoring unknown setting '{origin}.{key}'.")
            continue
        if not isinstance(value, expected):
            _warn(f"Ignoring '{origin}.{key}': expected {expected.__name__}, got {type(value).__name__}.")
            continue
        if expected is list:
            value = [str(item) for item in value if item is not None]
        elif expected is dict:
            value = {str(k): "" if v is None else str(v) for k, v in value.items()}
        if key in _PATH_KEYS and isinstance(value, list):
            value = [_resolve_config_path(p, base_dir) for p in value]
        elif key in _PATH_KEYS:
            value = _resolve_config_path(value, base_dir)
        values[key] = value
    return values


def load_config_from_yaml(path: Optional[str]) -> HdrguardConfig:
    """
    Load an HdrguardConfig from a YAML file with optional 'policy' and
    'preprocessor' sections. Problems are reported on stderr and the affected
    settings keep their defaults. Relative paths resolve against the
    directory holding the config file, which is also the default policy root.
    """
    config = HdrguardConfig()
    if not path:
        return config

    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except FileNotFoundError:
        _warn(f"Config file not found: {path}")
        return config
    except OSError as exc:
        _warn(f"Could not read config file {path}: {exc}")
        return config
    except yaml.YAMLError as exc:
        _warn(f"Could not parse config file {path}: {exc}")
        return config

    base_dir = os.path.dirname(os.path.abspath(path))
    config.policy.root = base_dir
    if document is None:
        return config
    if not isinstance(document, dict):
        _warn(f"Ignoring config file {path}: expected a mapping at top level.")
        return config

    for key in document:
        if key not in ("policy", "preprocessor"):
            _warn(f"Ignoring unknown section '{key}' in {path}.")

    policy_values = _read_section(document.get("policy"), _POLICY_KEYS, "policy", base_dir)
    policy_values.setdefault("root", base_dir)
    config.policy = GuardPolicy(**policy_values)
    for key, value in _read_section(
        document.get("preprocessor"), _PREPROCESSOR_KEYS, "preprocessor", base_dir
    ).items():
        setattr(config, key, value)
    return config


# ============================================================
# ==================== UNIT PIPELINE =========================
# ============================================================

@dataclass
class UnitResult:
    path: str
    source_manager: SourceManager
    diagnostics: List[Diagnostic] = field(default_factory=list)


def check_translation_unit(
    path: str,
    config: Optional[HdrguardConfig] = None,
    *,
    resolver: Optional[IncludeResolver] = None,
    reader: Callable[[str], str] = read_source_file,
) -> UnitResult:
    """
    Preprocess one unit with fresh state and return its header guard
    diagnostics. The SourceManager is returned too, since locations in the
    diagnostics only mean something relative to it.
    """
    config = config if config is not None else HdrguardConfig()
    source_manager = SourceManager()
    callbacks = HeaderGuardCallbacks(source_manager, config.policy)
    if resolver is None:
        resolver = build_include_resolver(path, config)
    preprocessor = Preprocessor(
        source_manager,
        IdentifierTable(),
        callbacks,
        resolver,
        predefined=config.defines,
        reader=reader,
    )
    preprocessor.run(path)
    return UnitResult(path=path, source_manager=source_manager, diagnostics=list(callbacks.diagnostics))


def _fixit_span(fixit: FixIt) -> Tuple[Loc, Loc]:
    if isinstance(fixit, Replacement):
        return fixit.start, fixit.end
    return fixit.at, fixit.at


def apply_fixits(results: Iterable[UnitResult]) -> Dict[str, str]:
    """
    Apply every fix-it to the text it was computed against and return the new
    contents keyed by file path. The same edit reported by several units is
    applied once; an edit overlapping an earlier one is dropped.
    """
    originals: Dict[str, Tuple[str, str]] = {}  # identity -> (write path, text)
    edits: Dict[str, List[Tuple[int, int, str]]] = {}
    for result in results:
        source_manager = result.source_manager
        for diagnostic in result.diagnostics:
            for fixit in diagnostic.fixits:
                start, end = _fixit_span(fixit)
                buffer = source_manager.buffer_for(start)
                if buffer is None:
                    continue
                key = file_identity(buffer.path)
                originals.setdefault(key, (buffer.path, buffer.text))
                edit = (start.offset - buffer.base, end.offset - buffer.base, fixit.text)
                file_edits = edits.setdefault(key, [])
                if edit not in file_edits:
                    file_edits.append(edit)

    updated: Dict[str, str] = {}
    for key, file_edits in edits.items():
        write_path, text = originals[key]
        ordered = sorted(enumerate(file_edits), key=lambda item: (item[1][0], item[0]))
        pieces: List[str] = []
        cursor = 0
        for _, (start, end, replacement) in ordered:
            if start < cursor:
                _warn(f"{write_path}: dropping overlapping fix-it at offset {start}")
                continue
            pieces.append(text[cursor:start])
            pieces.append(replacement)
            cursor = end
        pieces.append(text[cursor:])
        updated[write_path] = "".join(pieces)
    return updated


# ============================================================
# ================== DIAGNOSTIC OUTPUT =======================
# ============================================================

def fixit_to_json_obj(fixit: FixIt, source_manager: SourceManager) -> Dict[str, Any]:
    start, end = _fixit_span(fixit)
    where = source_manager.presumed_location(start)
    return {
        "file": where.file,
        "line": where.line,
        "column": where.column,
        "offset": source_manager.file_offset(start),
        "length": end.offset - start.offset,
        "replacement": fixit.text,
    }


def diagnostic_to_json_obj(diagnostic: Diagnostic, source_manager: SourceManager) -> Dict[str, Any]:
    """
    Convert a Diagnostic into a JSON-friendly dict.
    Kept explicit so the field order stays stable for consumers.
    """
    return {
        "check": "header-guard",
        "kind": diagnostic.kind,
        "severity": "warning",
        "message": diagnostic.message,
        "location": asdict(source_manager.presumed_location(diagnostic.location)),
        "fixits": [fixit_to_json_obj(f, source_manager) for f in diagnostic.fixits],
        "tool": "hdrguard",
        "version": __version__,
    }


def collect_diagnostics(results: Iterable[UnitResult]) -> List[Dict[str, Any]]:
    """
    Flatten diagnostics from several units, dropping repeats of the same
    finding in a header that more than one unit includes.
    """
    seen: Set[Tuple[str, int, int, str, str]] = set()
    collected: List[Dict[str, Any]] = []
    for result in results:
        for diagnostic in result.diagnostics:
            obj = diagnostic_to_json_obj(diagnostic, result.source_manager)
            location = obj["location"]
            key = (
                file_identity(location["file"]),
                location["line"],
                location["column"],
                obj["kind"],
                obj["message"],
            )
            if key in seen:
                continue
            seen.add(key)
            collected.append(obj)
    return collected


def emit_diagnostics_json(results: Iterable[UnitResult], out: Optional[str] = None) -> None:
    text = json.dumps(collect_diagnostics(results), indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


def write_fixed_files(updated: Dict[str, str]) -> None:
    for path, text in updated.items():
        try:
            with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as handle:
                handle.write(text)
        except OSError as exc:
            _warn(f"Could not write fixes to {path}: {exc}")


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _parse_define(text: str) -> Tuple[str, str]:
    name, sep, value = text.partition("=")
    return name, value if sep else "1"


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for hdrguard.
    Intended usage:
      hdrguard check --config hdrguard.yaml -I include src/a.c src/b.c
    """
    parser = argparse.ArgumentParser(
        prog="hdrguard",
        description="hdrguard: header guard checks and fix-its for C/C++",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    check_p = subparsers.add_parser(
        "check",
        help="Check the headers reached from each translation unit and emit JSON diagnostics.",
    )
    check_p.add_argument("--config", metavar="CONFIG_YAML", help="YAML configuration file.")
    check_p.add_argument(
        "--out",
        metavar="OUT_JSON",
        help="Write diagnostics to this JSON file instead of stdout.",
    )
    check_p.add_argument("--fix", action="store_true", help="Apply fix-its to the files in place.")
    check_p.add_argument(
        "-I",
        dest="include_dirs",
        action="append",
        default=[],
        metavar="DIR",
        help="Add a user include search directory.",
    )
    check_p.add_argument(
        "--isystem",
        dest="system_include_dirs",
        action="append",
        default=[],
        metavar="DIR",
        help="Add a system include search directory.",
    )
    check_p.add_argument(
        "-D",
        dest="defines",
        action="append",
        default=[],
        metavar="NAME[=VALUE]",
        help="Predefine a macro.",
    )
    check_p.add_argument(
        "--no-clang",
        action="store_true",
        help="Resolve includes from search paths instead of libclang.",
    )
    check_p.add_argument("files", nargs="+", help="Translation units to check.")

    args = parser.parse_args(argv)

    if args.command == "check":
        config = load_config_from_yaml(args.config)
        config.include_dirs.extend(args.include_dirs)
        config.system_include_dirs.extend(args.system_include_dirs)
        config.defines.update(_parse_define(d) for d in args.defines)
        if args.no_clang:
            config.use_clang = False

        results: List[UnitResult] = []
        for path in args.files:
            try:
                results.append(check_translation_unit(path, config))
            except OSError as exc:
                _warn(f"Could not read input file {path}: {exc}")

        emit_diagnostics_json(results, out=args.out)
        found = any(result.diagnostics for result in results)
        if args.fix and found:
            write_fixed_files(apply_fixits(results))
            return 0
        return 1 if found else 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
