"""MiniScript extensions: host commands and run hooks loaded from Python files.

An extension is a ``.py`` file defining ``miniscript_register(ext)``; it may
set ``MINISCRIPT_EXTENSION_NAME`` (defaults to the file stem) and
``MINISCRIPT_EXTENSION_API_VERSION``. A directory path loads every public
``*.py`` file inside it, in name order.
"""
from __future__ import annotations

import importlib.util
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence


EXTENSION_API_VERSION = 1

CommandHandler = Callable[[List[str]], Optional[str]]
StepHandler = Callable[[Any, "StepContext"], None]

EVENTS = ("script_start", "before_statement", "after_statement", "script_end", "on_error")


class MiniScriptExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: CommandHandler
    ext_name: str
    doc: str = ""


@dataclass(frozen=True)
class StepContext:
    """What a step rule sees about the statement that was just logged."""

    step_index: int
    line_index: int
    statement: Any  # parser.Statement
    location: Any  # lexer.SourceLocation | None

    @property
    def rule(self) -> str:
        return self.statement.kind


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: StepHandler

    def due(self, step_index: int) -> bool:
        return step_index % self.every_n == 0


class HookRegistry:
    """Event handlers and step rules, called in registration order."""

    def __init__(self) -> None:
        self.handlers: Dict[str, List[Callable[..., None]]] = {event: [] for event in EVENTS}
        self.step_rules: List[StepRule] = []

    def on_event(self, event: str, handler: Callable[..., None]) -> None:
        if event not in self.handlers:
            raise MiniScriptExtensionError(f"Unknown event '{event}' (expected one of: {', '.join(EVENTS)})")
        self.handlers[event].append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self.handlers[event]:
            handler(*args)

    def add_step_rule(self, rule: StepRule) -> None:
        if rule.every_n < 1:
            raise MiniScriptExtensionError(f"Step rule '{rule.name}' must run every 1 or more steps")
        self.step_rules.append(rule)

    def after_step(self, engine: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if rule.due(ctx.step_index):
                rule.handler(engine, ctx)

    @property
    def has_step_rules(self) -> bool:
        return bool(self.step_rules)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hooks: HookRegistry = field(default_factory=HookRegistry)
    commands: List[CommandSpec] = field(default_factory=list)

    def command_owner(self, name: str) -> Optional[str]:
        for spec in self.commands:
            if spec.name == name:
                return spec.ext_name
        return None


class ExtensionAPI:
    """The ``ext`` object handed to ``miniscript_register``."""

    def __init__(self, services: RuntimeServices, name: str) -> None:
        self.services = services
        self.name = name

    def metadata(self, *, version: str = "0.0.0") -> None:
        self.services.metadata.append(ExtensionMetadata(name=self.name, version=version))

    def register_command(self, name: str, handler: CommandHandler, *, doc: str = "") -> None:
        key = name.strip().lower() if isinstance(name, str) else ""
        if not key:
            raise MiniScriptExtensionError(f"Extension '{self.name}' registered a command with no name")
        if not callable(handler):
            raise MiniScriptExtensionError(f"Handler for command '{key}' is not callable")
        owner = self.services.command_owner(key)
        if owner is not None:
            raise MiniScriptExtensionError(f"Command '{key}' is already provided by extension '{owner}'")
        self.services.commands.append(CommandSpec(name=key, handler=handler, ext_name=self.name, doc=doc))

    def command(self, name: str, *, doc: str = ""):
        """Decorator form of ``register_command``; the docstring is the default doc."""

        def register(fn: CommandHandler) -> CommandHandler:
            self.register_command(name, fn, doc=doc or (fn.__doc__ or "").strip())
            return fn

        return register

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None):
        def register(fn: Callable[..., None]) -> Callable[..., None]:
            self.services.hooks.on_event(event, fn)
            return fn

        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        def register(fn: StepHandler) -> StepHandler:
            rule_name = name or getattr(fn, "__name__", "step_rule")
            self.services.hooks.add_step_rule(StepRule(name=f"{self.name}.{rule_name}", every_n=every_n, handler=fn))
            return fn

        return register if handler is None else register(handler)


# ---- loading ----


def extension_files(path: str) -> List[str]:
    if os.path.isdir(path):
        names = sorted(n for n in os.listdir(path) if n.endswith(".py") and not n.startswith("_"))
        return [os.path.join(path, n) for n in names]
    if not os.path.isfile(path):
        raise MiniScriptExtensionError(f"Extension not found: {path}")
    return [path]


def load_extension_module(path: str) -> Any:
    stem = os.path.splitext(os.path.basename(path))[0]
    spec = importlib.util.spec_from_file_location(f"miniscript_ext_{stem}", path)
    if spec is None or spec.loader is None:
        raise MiniScriptExtensionError(f"Not a Python extension: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise MiniScriptExtensionError(f"Extension {path} failed to import: {exc}") from exc
    return module


def register_extension(services: RuntimeServices, module: Any, path: str) -> str:
    api_version = getattr(module, "MINISCRIPT_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise MiniScriptExtensionError(
            f"Extension {path} targets API version {api_version}; this interpreter provides {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "miniscript_register", None)
    if not callable(register):
        raise MiniScriptExtensionError(f"Extension {path} has no miniscript_register(ext) function")
    name = str(getattr(module, "MINISCRIPT_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
    register(ExtensionAPI(services, name))
    return name


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        for file_path in extension_files(path):
            register_extension(services, load_extension_module(file_path), file_path)
    return services
