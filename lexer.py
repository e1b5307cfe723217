from __future__ import annotations
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple


class MiniScriptError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional["SourceLocation"] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class MiniScriptParseError(MiniScriptError):
    """Raised when a script's statements or control flow are malformed."""


@dataclass(frozen=True)
class SourceLocation:
    script: str
    line: int
    statement: str


COMMENT_PREFIX = "//"
PRINT_SHORTHAND = "``"
STR_MARKER = "%_str_token_"
ARGS_MARKER = "%_args_token_"
LOCAL_SIGIL = "$"
GLOBAL_SIGIL = "&"

KIND_COMMAND = "COMMAND"
KIND_IF = "IF"
KIND_ELSE = "ELSE"
KIND_END = "END"
KIND_LITERAL = "LITERAL"
KIND_VAR_LOCAL = "VAR_LOCAL"
KIND_VAR_GLOBAL = "VAR_GLOBAL"
KIND_OPERATOR = "OPERATOR"
KIND_WHILE = "WHILE"

KEYWORDS = {
    "if": KIND_IF,
    "else": KIND_ELSE,
    "end": KIND_END,
    "while": KIND_WHILE,
}

BOOLEAN_LITERALS = {"true", "false"}

OP_EQ = "="
OP_NE = "!="
OP_ADD = "+"
OP_SUB = "-"
OP_MUL = "*"
OP_DIV = "/"
OP_LT = "<"
OP_GT = ">"
OP_LE = "<="
OP_GE = ">="

OPERATORS = (OP_EQ, OP_NE, OP_ADD, OP_SUB, OP_MUL, OP_DIV, OP_LT, OP_GT, OP_LE, OP_GE)

_INDEX_RE = re.compile(r"\d+")


@dataclass
class Token:
    kind: str
    raw: str
    text: str
    operator: Optional[str] = None
    command: Optional[str] = None
    args_index: Optional[int] = None
    # Only meaningful on the first token of a statement.
    depth: int = 0


def classify(word: str, commands: Iterable[str]) -> Token:
    lower = word.lower()
    keyword = KEYWORDS.get(lower)
    if keyword is not None:
        return Token(keyword, lower, word)
    if lower in BOOLEAN_LITERALS:
        return Token(KIND_LITERAL, lower, word)
    if lower.startswith(LOCAL_SIGIL):
        return Token(KIND_VAR_LOCAL, lower, word)
    if lower.startswith(GLOBAL_SIGIL):
        return Token(KIND_VAR_GLOBAL, lower, word)
    # Longest names first so that "printc" is never shadowed by "print".
    for name in sorted(commands, key=len, reverse=True):
        prefix = name + ARGS_MARKER
        if not lower.startswith(prefix):
            continue
        match = _INDEX_RE.match(lower, len(prefix))
        if match is None:
            continue
        return Token(KIND_COMMAND, lower, word, command=name, args_index=int(match.group(0)))
    if lower in OPERATORS:
        return Token(KIND_OPERATOR, lower, word, operator=lower)
    return Token(KIND_LITERAL, lower, word)


def placeholder_index(raw: str, marker: str) -> Optional[int]:
    """Return the table index named by a ``marker<n>`` placeholder, if ``raw`` is one."""
    if not raw.startswith(marker):
        return None
    digits = raw[len(marker):]
    if not digits.isdigit():
        return None
    return int(digits)


# ---- Line scanners ----


def clean_lines(source: str) -> List[Tuple[int, str]]:
    out: List[Tuple[int, str]] = []
    for number, raw in enumerate(source.split("\n"), start=1):
        line = raw.strip()
        if not line or line.startswith(COMMENT_PREFIX):
            continue
        out.append((number, line))
    return out


def expand_print_shorthand(line: str) -> str:
    if line.startswith(PRINT_SHORTHAND):
        return 'print("' + line[len(PRINT_SHORTHAND):] + '")'
    return line


def _splice(line: str, spans: List[Tuple[int, int]], marker: str, first_index: int) -> str:
    # spans are inclusive (start, end) character positions, in order
    pieces: List[str] = []
    cursor = 0
    for offset, (start, end) in enumerate(spans):
        pieces.append(line[cursor:start])
        pieces.append(f"{marker}{first_index + offset}")
        cursor = end + 1
    pieces.append(line[cursor:])
    return "".join(pieces)


def extract_strings(line: str, first_index: int = 0) -> Tuple[str, List[str]]:
    """Replace each ``"..."`` span with a string placeholder.

    A quote preceded by a backslash does not open or close a span, and the
    extracted text keeps its ``\\"`` escapes. An unterminated quote is left in
    the line untouched.
    """
    spans: List[Tuple[int, int]] = []
    start: Optional[int] = None
    prev = ""
    for idx, ch in enumerate(line):
        if ch == '"' and prev != "\\":
            if start is None:
                start = idx
            else:
                spans.append((start, idx))
                start = None
        prev = ch
    if not spans:
        return line, []
    found = [line[s + 1:e] for s, e in spans]
    return _splice(line, spans, STR_MARKER, first_index), found


def extract_arguments(line: str, first_index: int = 0) -> Tuple[str, List[str]]:
    """Replace each ``(...)`` span with an argument placeholder.

    Spans do not nest: an opening parenthesis pairs with the next closing one.
    """
    spans: List[Tuple[int, int]] = []
    start: Optional[int] = None
    for idx, ch in enumerate(line):
        if ch == "(":
            if start is None:
                start = idx
        elif ch == ")" and start is not None:
            spans.append((start, idx))
            start = None
    if not spans:
        return line, []
    found = [line[s + 1:e] for s, e in spans]
    return _splice(line, spans, ARGS_MARKER, first_index), found


def find_interpolations(text: str) -> List[Tuple[int, int]]:
    """Locate ``{{ ... }}`` spans as half-open (start, end) ranges."""
    spans: List[Tuple[int, int]] = []
    start: Optional[int] = None
    n = len(text)
    idx = 0
    while idx + 1 < n:
        pair = text[idx:idx + 2]
        if start is None and pair == "{{":
            start = idx
        elif start is not None and pair == "}}":
            spans.append((start, idx + 2))
            start = None
        idx += 1
    return spans


def unescape_braces(text: str) -> str:
    return text.replace("\\{\\{", "{{").replace("\\}\\}", "}}")


def unescape_quotes(text: str) -> str:
    return text.replace('\\"', '"')


class Preprocessor:
    """Rewrites raw source into placeholder-bearing lines.

    The string and argument tables are filled in as lines are processed;
    placeholders index into them.
    """

    def __init__(self) -> None:
        self.strings: List[str] = []
        self.arguments: List[str] = []

    def reset(self) -> None:
        self.strings.clear()
        self.arguments.clear()

    def process(self, source: str) -> List[Tuple[int, str]]:
        lines = [(number, expand_print_shorthand(text)) for number, text in clean_lines(source)]
        # Strings first, so parentheses inside literals stay literal.
        lines = [(number, self.extract_strings(text)) for number, text in lines]
        return [(number, self.extract_arguments(text)) for number, text in lines]

    def extract_strings(self, line: str) -> str:
        new_line, found = extract_strings(line, len(self.strings))
        self.strings.extend(found)
        return new_line

    def extract_arguments(self, line: str) -> str:
        new_line, found = extract_arguments(line, len(self.arguments))
        self.arguments.extend(found)
        return new_line


def command_set(names: Iterable[str]) -> FrozenSet[str]:
    return frozenset(name.strip().lower() for name in names)
