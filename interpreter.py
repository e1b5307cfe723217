from __future__ import annotations
import json
import math
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

import numpy as np

from extensions import CommandHandler, MiniScriptExtensionError, RuntimeServices, StepContext, build_default_services
from lexer import (
    GLOBAL_SIGIL,
    KIND_COMMAND,
    KIND_ELSE,
    KIND_END,
    KIND_IF,
    KIND_OPERATOR,
    KIND_VAR_GLOBAL,
    KIND_VAR_LOCAL,
    KIND_WHILE,
    LOCAL_SIGIL,
    OP_ADD,
    OP_DIV,
    OP_EQ,
    OP_GE,
    OP_GT,
    OP_LE,
    OP_LT,
    OP_MUL,
    OP_NE,
    OP_SUB,
    STR_MARKER,
    MiniScriptError,
    MiniScriptParseError,
    Preprocessor,
    SourceLocation,
    Token,
    find_interpolations,
    placeholder_index,
    unescape_braces,
    unescape_quotes,
)
from parser import Parser, Statement, find_else, find_end


ERROR_RESULT = "»» MiniScript Error! ««"

NUMERIC_CHARS = frozenset("0123456789.,-")

_ARITHMETIC = {
    OP_ADD: np.add,
    OP_SUB: np.subtract,
    OP_MUL: np.multiply,
    OP_DIV: np.divide,
}

_COMPARISON = {
    OP_LT: np.less,
    OP_GT: np.greater,
    OP_LE: np.less_equal,
    OP_GE: np.greater_equal,
}


class MiniScriptRuntimeError(MiniScriptError):
    """Raised for runtime faults."""


@dataclass(frozen=True)
class Value:
    text: str = ""

    @classmethod
    def from_number(cls, number: float) -> "Value":
        x = float(number)
        if math.isfinite(x) and x.is_integer():
            # Avoid a trailing ".0" on integral results.
            return cls(str(int(x)))
        return cls(repr(x))

    @property
    def is_numeric(self) -> bool:
        return all(ch in NUMERIC_CHARS for ch in self.text)

    def numeric(self) -> float:
        text = self.text
        if not text or text != text.strip() or "_" in text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return 0.0

    def is_true(self) -> bool:
        return self.numeric() != 0.0 or self.text.lower() == "true"

    def operate(self, operator: str, other: "Value") -> "Value":
        both_numeric = self.is_numeric and other.is_numeric
        if operator == OP_EQ:
            if both_numeric:
                equal = self.numeric() == other.numeric()
            else:
                equal = self.text == other.text
            return ONE if equal else ZERO
        if operator == OP_NE:
            return ONE if self.operate(OP_EQ, other).numeric() == 0.0 else ZERO
        if operator == OP_ADD and not both_numeric:
            return Value(self.text + other.text)
        if not both_numeric:
            # Numeric-only operators quietly yield 0 for non-numeric operands.
            return ZERO
        left = np.float64(self.numeric())
        right = np.float64(other.numeric())
        with np.errstate(all="ignore"):
            if operator in _ARITHMETIC:
                return Value.from_number(float(_ARITHMETIC[operator](left, right)))
            if operator in _COMPARISON:
                return ONE if bool(_COMPARISON[operator](left, right)) else ZERO
        return ZERO

    def __str__(self) -> str:
        return self.text


ZERO = Value("0")
ONE = Value("1")


class BuiltinCommand(str, Enum):
    PRINT = "print"
    PRINTC = "printc"
    RAND = "rand"


@dataclass(frozen=True)
class ScriptResult:
    output: str
    error: Optional[MiniScriptError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def text(self) -> str:
        return self.output if self.error is None else ERROR_RESULT


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    line_index: int
    source_location: Optional[SourceLocation]
    rule: str
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(
        self,
        *,
        line_index: int,
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            line_index=line_index,
            source_location=location,
            rule=rule,
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


def _variable_name(name: str) -> str:
    key = name.strip().lower()
    if key.startswith(LOCAL_SIGIL):
        key = key[1:]
    return key


class Script:
    """One script source plus the state of its most recent run.

    Local variables survive between runs of the same ``Script``; statements and
    the literal tables are rebuilt every time the script is executed.
    """

    def __init__(self, source: str, name: str = "<string>") -> None:
        self.source = source
        self.name = name
        self.variables: Dict[str, Value] = {}
        self.engine: Optional[Engine] = None
        self.statements: List[Statement] = []
        self.output = ""
        self.preprocessor = Preprocessor()
        self.parser: Optional[Parser] = None
        # interpolation span text -> statement built from it, one per distinct span
        self._span_statements: Dict[str, Statement] = {}
        self._pointer = 0
        self._depth = 0
        self._loop_start: Dict[int, int] = {}

    @property
    def strings(self) -> List[str]:
        return self.preprocessor.strings

    @property
    def arguments(self) -> List[str]:
        return self.preprocessor.arguments

    def _require_engine(self) -> "Engine":
        if self.engine is None:
            raise MiniScriptRuntimeError("Script is not attached to an engine", rule="ENGINE")
        return self.engine

    def _require_parser(self) -> Parser:
        if self.parser is None:
            raise MiniScriptRuntimeError("Script has not been prepared", rule="ENGINE")
        return self.parser

    def prepare(self) -> None:
        engine = self._require_engine()
        self.preprocessor.reset()
        self._span_statements = {}
        self.parser = Parser(self.preprocessor, engine.command_names(), script_name=self.name)
        self.statements = self.parser.parse(self.source)

    # ---- execution ----

    def _execute(self) -> str:
        engine = self._require_engine()
        self.prepare()
        parser = self._require_parser()
        self.output = ""
        self._pointer = 0
        self._depth = 0
        self._loop_start = {}
        statements = self.statements
        while self._pointer < len(statements):
            statement = statements[self._pointer]
            engine._before_statement(self, self._pointer, statement)
            try:
                self._step(statement)
            except MiniScriptError as error:
                if error.location is None:
                    error.location = parser.location(statement)
                raise
            engine._after_statement(self, statement)
        return self.output

    def _step(self, statement: Statement) -> None:
        first = statement.tokens[0]
        kind = first.kind
        if kind == KIND_WHILE:
            self._depth += 1
            if self._condition(statement):
                self._loop_start.setdefault(self._depth, self._pointer)
                self._pointer += 1
            else:
                self._pointer = self._matching_end(self._depth, statement)
        elif kind == KIND_IF:
            self._depth += 1
            if self._condition(statement):
                self._pointer += 1
            else:
                else_line = find_else(self.statements, self._depth, self._pointer)
                if else_line is not None:
                    self._pointer = else_line + 1
                else:
                    self._pointer = self._matching_end(self._depth, statement)
        elif kind == KIND_ELSE:
            # Reached by falling out of a taken "if" branch.
            self._pointer = self._matching_end(first.depth, statement)
        elif kind == KIND_COMMAND:
            self._run_command(first, statement.arguments)
            self._pointer += 1
        elif kind == KIND_END:
            restart = self._loop_start.pop(self._depth, None)
            self._depth -= 1
            self._pointer = self._pointer + 1 if restart is None else restart
        elif kind in (KIND_VAR_LOCAL, KIND_VAR_GLOBAL):
            self._assign(statement)
            self._pointer += 1
        elif kind == KIND_OPERATOR:
            raise MiniScriptParseError(f"Statement cannot begin with operator '{first.text}'", rule="OPERATOR")
        else:
            self._pointer += 1

    def _condition(self, statement: Statement) -> bool:
        value = self.evaluate_expression(statement.tokens, 1)
        if value is None:
            raise MiniScriptParseError(f"'{statement.tokens[0].raw}' requires a condition", rule=statement.kind)
        return value.is_true()

    def _matching_end(self, depth: int, statement: Statement) -> int:
        end = find_end(self.statements, depth, self._pointer)
        if end is None:
            raise MiniScriptParseError(f"No matching 'end' for '{statement.tokens[0].raw}'", rule=statement.kind)
        return end

    def _assign(self, statement: Statement) -> None:
        tokens = statement.tokens
        if len(tokens) < 3:
            raise MiniScriptParseError("Assignment requires '<variable> = <value>'", rule="ASSIGN")
        if tokens[1].kind != KIND_OPERATOR or tokens[1].operator != OP_EQ:
            raise MiniScriptParseError(f"Expected '=' after '{tokens[0].text}'", rule="ASSIGN")
        if len(tokens) >= 5:
            value = self.evaluate_expression(tokens, 2)
        else:
            value = Value(self.resolve(tokens[2]))
        if value is None:
            raise MiniScriptParseError("Assignment has no value", rule="ASSIGN")
        target = tokens[0]
        name = target.raw[1:]
        if target.kind == KIND_VAR_LOCAL:
            self.variables[name] = value
        else:
            self._require_engine()._globals[name] = value

    # ---- evaluation ----

    def evaluate_expression(self, tokens: List[Token], start: int) -> Optional[Value]:
        """Fold ``tokens[start:]`` strictly left to right.

        There is no precedence: ``a + b * c`` is ``(a + b) * c``. A trailing
        token with no operand after it is ignored.
        """
        if start == len(tokens) - 1:
            return Value(self.resolve(tokens[start]))
        if start >= len(tokens):
            return None
        result = Value(self.resolve(tokens[start]))
        index = start + 1
        while index < len(tokens) - 1:
            operator = tokens[index]
            if operator.operator is None:
                raise MiniScriptRuntimeError(f"Expected an operator, found '{operator.text}'", rule="EXPR")
            operand = Value(self.resolve(tokens[index + 1]))
            result = result.operate(operator.operator, operand)
            index += 2
        return result

    def resolve(self, token: Token) -> str:
        if token.kind == KIND_COMMAND:
            arguments = self._require_parser().argument_tokens(token)
            return self._run_command(token, arguments)
        return self._resolve_argument(token)

    def _resolve_argument(self, token: Token) -> str:
        # Command-looking words are returned as text: calls do not nest.
        if token.kind == KIND_VAR_LOCAL:
            value = self.variables.get(token.raw[1:])
            return "" if value is None else value.text
        if token.kind == KIND_VAR_GLOBAL:
            value = self._require_engine()._globals.get(token.raw[1:])
            return "" if value is None else value.text
        index = placeholder_index(token.raw, STR_MARKER)
        if index is not None and index < len(self.strings):
            return self.interpolate(unescape_quotes(self.strings[index]))
        return token.text

    def interpolate(self, text: str) -> str:
        spans = find_interpolations(text)
        pieces: List[str] = []
        cursor = 0
        for start, end in spans:
            pieces.append(text[cursor:start])
            inner = text[start + 2:end - 2].strip()
            statement = self._span_statement(inner)
            value = self.evaluate_expression(statement.expression_tokens, 0)
            if value is None:
                return ""
            pieces.append(value.text)
            cursor = end
        pieces.append(text[cursor:])
        return unescape_braces("".join(pieces))

    def _span_statement(self, inner: str) -> Statement:
        statement = self._span_statements.get(inner)
        if statement is None:
            line = self.preprocessor.extract_arguments(inner)
            statement = self._require_parser().build_statement(line)
            self._span_statements[inner] = statement
        return statement

    # ---- commands and output ----

    def _run_command(self, token: Token, arguments: List[Token]) -> str:
        values = [self._resolve_argument(argument) for argument in arguments]
        result = self._require_engine().dispatch(token.command or "", values, self)
        return "" if result is None else result

    def emit(self, text: str, *, on_new_line: bool) -> None:
        if on_new_line and self.output:
            self.output += "\n"
        self.output += text


class Engine:
    def __init__(
        self,
        *,
        include_builtins: bool = True,
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
        seed: Optional[int] = None,
    ) -> None:
        self.services = services or build_default_services()
        self.hooks = self.services.hooks
        self.verbose = verbose
        self.rng = np.random.default_rng(seed)
        self._globals: Dict[str, Value] = {}
        self._commands: Dict[str, Optional[CommandHandler]] = {}
        if include_builtins:
            for builtin in BuiltinCommand:
                self._commands[builtin.value] = None
        for spec in self.services.commands:
            self.add_command(spec.name, spec.handler)
        self.current_script: Optional[Script] = None
        self.logger = StateLogger(verbose=verbose)

    # ---- API ----

    @property
    def globals(self) -> Mapping[str, Value]:
        return MappingProxyType(self._globals)

    def command_names(self) -> FrozenSet[str]:
        return frozenset(self._commands)

    def add_command(self, name: str, handler: Optional[CommandHandler]) -> None:
        key = name.strip().lower()
        if not key:
            raise MiniScriptExtensionError("Command name must be non-empty")
        if handler is not None and not callable(handler):
            raise MiniScriptExtensionError(f"Handler for command '{key}' is not callable")
        self._commands[key] = handler

    def run(self, script: Script, environment: Optional[Mapping[str, str]] = None) -> str:
        return self.execute(script, environment).text

    def execute(self, script: Script, environment: Optional[Mapping[str, str]] = None) -> ScriptResult:
        self.current_script = script
        script.engine = self
        for name, text in (environment or {}).items():
            script.variables[_variable_name(name)] = Value(str(text))
        self.logger = StateLogger(verbose=self.verbose)
        try:
            self._emit_event("script_start", self, script)
            output = script._execute()
            self._emit_event("script_end", self, script, output)
        except MiniScriptError as error:
            return self._failed(error)
        except Exception as exc:
            # Convert unexpected Python-level exceptions so the host still
            # gets a result instead of a crash.
            last = self.logger.last_entry
            wrapped = MiniScriptRuntimeError(
                f"Internal interpreter error: {exc}",
                location=last.source_location if last else None,
                rule="internal",
            )
            return self._failed(wrapped)
        finally:
            self.current_script = None
        return ScriptResult(output=output)

    def _failed(self, error: MiniScriptError) -> ScriptResult:
        last = self.logger.last_entry
        if error.step_index is None and last is not None:
            error.step_index = last.step_index
        try:
            self._emit_event("on_error", self, error)
        except MiniScriptError as hook_error:
            hook_error.step_index = error.step_index
            error = hook_error
        return ScriptResult(output="", error=error)

    # ---- command dispatch ----

    def dispatch(self, name: str, arguments: List[str], script: Script) -> Optional[str]:
        handler = self._commands.get(name)
        if handler is not None:
            try:
                result = handler(list(arguments))
            except MiniScriptError:
                raise
            except Exception as exc:
                raise MiniScriptRuntimeError(f"Command '{name}' failed: {exc}", rule="HANDLER") from exc
            return "" if result is None else str(result)
        try:
            builtin = BuiltinCommand(name)
        except ValueError:
            raise MiniScriptRuntimeError(f"Unknown command '{name}'", rule="COMMAND") from None
        if builtin is BuiltinCommand.RAND:
            return self._rand(arguments)
        text = "".join(arguments)
        script.emit(text, on_new_line=builtin is BuiltinCommand.PRINT)
        return text

    def _rand(self, arguments: List[str]) -> Optional[str]:
        try:
            bound = int(arguments[0]) if arguments else 0
        except ValueError:
            return None
        if bound <= 0:
            return None
        return str(int(self.rng.integers(0, bound)))

    # ---- hooks and tracing ----

    def _before_statement(self, script: Script, line_index: int, statement: Statement) -> None:
        self._emit_event("before_statement", self, statement)
        self._log_step(script, line_index, statement)

    def _after_statement(self, script: Script, statement: Statement) -> None:
        self._emit_event("after_statement", self, statement)

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hooks.emit(event, *args)
        except MiniScriptError:
            raise
        except Exception as exc:
            last = self.logger.last_entry
            raise MiniScriptRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=last.source_location if last else None,
                rule="EXT",
            )

    def _log_step(self, script: Script, line_index: int, statement: Statement) -> None:
        location = script.parser.location(statement) if script.parser else None
        env_snapshot = self.snapshot(script) if self.verbose else None
        entry = self.logger.record(
            line_index=line_index,
            location=location,
            rule=statement.kind,
            env_snapshot=env_snapshot,
        )

        # Run extension step rules (every N steps) after recording.
        if not self.hooks.has_step_rules:
            return
        try:
            self.hooks.after_step(
                self,
                StepContext(step_index=entry.step_index, line_index=line_index, statement=statement, location=location),
            )
        except MiniScriptError:
            raise
        except Exception as exc:
            raise MiniScriptRuntimeError(
                f"Extension step rule failed: {exc}",
                location=location,
                rule="EXT",
            )

    def snapshot(self, script: Optional[Script] = None) -> Dict[str, str]:
        def _render(value: Value) -> str:
            rendered = value.text
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return rendered

        out: Dict[str, str] = {}
        if script is not None:
            out.update({LOCAL_SIGIL + k: _render(v) for k, v in script.variables.items()})
        out.update({GLOBAL_SIGIL + k: _render(v) for k, v in self._globals.items()})
        return out


class TracebackFormatter:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _entry_for(self, error: MiniScriptError) -> Optional[StateEntry]:
        if error.step_index is None:
            return None
        for entry in reversed(self.engine.logger.entries):
            if entry.step_index == error.step_index:
                return entry
        return None

    def format_text(self, error: MiniScriptError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        location = error.location
        if location:
            lines.append(f"  Script \"{location.script}\", line {location.line}")
            if location.statement:
                lines.append(f"    {location.statement}")
        else:
            lines.append("  <unknown location>")
        entry = self._entry_for(error)
        if entry:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.env_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items())
                lines.append(f"    Env snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: MiniScriptError) -> str:
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
        }
        if error.location:
            data["source_location"] = {
                "script": error.location.script,
                "line": error.location.line,
                "statement": error.location.statement,
            }
        entry = self._entry_for(error)
        if entry:
            data["state_id"] = entry.state_id
            if entry.env_snapshot is not None:
                data["env_snapshot"] = entry.env_snapshot
        return json.dumps(data, indent=2)
