from __future__ import annotations
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Sequence

from lexer import (
    KIND_COMMAND,
    KIND_ELSE,
    KIND_END,
    KIND_IF,
    KIND_WHILE,
    MiniScriptParseError,
    Preprocessor,
    SourceLocation,
    Token,
    classify,
    command_set,
)


@dataclass
class Statement:
    tokens: List[Token]
    line: str
    line_number: int

    @property
    def kind(self) -> str:
        return self.tokens[0].kind

    @property
    def is_command(self) -> bool:
        return self.tokens[0].kind == KIND_COMMAND

    @property
    def arguments(self) -> List[Token]:
        return self.tokens[1:] if self.is_command else []

    @property
    def expression_tokens(self) -> List[Token]:
        # A command line evaluates to its command; the argument tokens are
        # consumed by dispatch, not by the expression fold.
        return self.tokens[:1] if self.is_command else self.tokens


class Parser:
    """Turns preprocessed lines into depth-annotated statements.

    The set of command names is fixed for the lifetime of the parser; a word
    is only recognised as a command call if its name is in that set.
    """

    def __init__(
        self,
        preprocessor: Preprocessor,
        commands: Iterable[str],
        *,
        script_name: str = "<string>",
    ) -> None:
        self.preprocessor = preprocessor
        self.commands: FrozenSet[str] = command_set(commands)
        self.script_name = script_name
        self._source_lines: List[str] = []

    def parse(self, source: str) -> List[Statement]:
        self._source_lines = source.split("\n")
        lines = self.preprocessor.process(source)
        statements = [self.build_statement(text, number) for number, text in lines]
        annotate_depth(statements)
        return statements

    def build_statement(self, line: str, line_number: int = 0) -> Statement:
        words = line.split(" ")
        first = classify(words[0], self.commands)
        if first.kind == KIND_COMMAND:
            location = self._location(line_number, line)
            tokens = [first] + self.argument_tokens(first, location=location)
        else:
            tokens = [first] + [classify(word, self.commands) for word in words[1:]]
        return Statement(tokens=tokens, line=line, line_number=line_number)

    def location(self, statement: Statement) -> SourceLocation:
        return self._location(statement.line_number, statement.line)

    def _location(self, line_number: int, fallback: str) -> SourceLocation:
        text = fallback
        if 0 < line_number <= len(self._source_lines):
            text = self._source_lines[line_number - 1].strip()
        return SourceLocation(script=self.script_name, line=line_number, statement=text)

    def argument_tokens(self, token: Token, *, location: Optional[SourceLocation] = None) -> List[Token]:
        return [classify(part, self.commands) for part in self.argument_texts(token, location=location)]

    def argument_texts(self, token: Token, *, location: Optional[SourceLocation] = None) -> List[str]:
        table = self.preprocessor.arguments
        index = token.args_index
        if index is None or index >= len(table):
            raise MiniScriptParseError(
                f"No argument list recorded for command '{token.command}'",
                location=location,
                rule="ARGS",
            )
        return [part.strip() for part in table[index].split(",")]


def annotate_depth(statements: Sequence[Statement]) -> None:
    depth = 0
    for statement in statements:
        first = statement.tokens[0]
        if first.kind in (KIND_IF, KIND_WHILE):
            depth += 1
            first.depth = depth
        elif first.kind == KIND_ELSE:
            first.depth = depth
        elif first.kind == KIND_END:
            first.depth = depth
            depth -= 1


def find_else(statements: Sequence[Statement], depth: int, start: int) -> Optional[int]:
    for i in range(start, len(statements)):
        first = statements[i].tokens[0]
        if first.kind == KIND_ELSE and first.depth == depth:
            return i
        if first.kind == KIND_END and first.depth == depth:
            return None
        if first.kind == KIND_ELSE and first.depth < depth:
            return None
    return None


def find_end(statements: Sequence[Statement], depth: int, start: int) -> Optional[int]:
    for i in range(start, len(statements)):
        first = statements[i].tokens[0]
        if first.kind == KIND_END and first.depth == depth:
            return i
    return None
