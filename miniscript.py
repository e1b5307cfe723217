"""MiniScript entry point and REPL wiring."""
from __future__ import annotations
import argparse
import sys
from typing import Callable, Dict, List, Optional

from extensions import MiniScriptExtensionError, load_runtime_services
from interpreter import Engine, Script, TracebackFormatter
from lexer import MiniScriptError

PROMPT = "\x1b[38;2;153;221;255m>>>\033[0m "
CONTINUATION_PROMPT = "\x1b[38;2;153;221;255m..>\033[0m "


def _report(engine: Engine, error: MiniScriptError, *, verbose: bool, as_json: bool = False) -> None:
    formatter = TracebackFormatter(engine)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def _run_entry(engine: Engine, session: Script, source_text: str, verbose: bool) -> None:
    session.source = source_text
    result = engine.execute(session)
    if result.error is not None:
        _report(engine, result.error, verbose=verbose)
    elif result.output:
        print(result.output)


def run_repl(
    verbose: bool,
    engine: Optional[Engine] = None,
    read_line: Callable[[str], str] = input,
) -> int:
    print("\x1b[38;2;153;221;255mMiniScript\033[0m REPL. Enter statements, blank line to run buffer.")
    # One engine and one script for the whole session: &globals and $locals persist between entries.
    engine = engine or Engine(verbose=verbose)
    session = Script("", name="<repl>")
    buffer: List[str] = []

    while True:
        prompt = PROMPT if not buffer else CONTINUATION_PROMPT
        try:
            line = read_line(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()

        is_block_start = False
        if not buffer:
            first = stripped.split(" ", 1)[0].lower()
            if first in ("if", "while"):
                is_block_start = True

        if not buffer and stripped != "" and not is_block_start:
            _run_entry(engine, session, line, verbose)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            _run_entry(engine, session, source_text, verbose)
            continue

        if stripped != "":
            buffer.append(line)

    return 0


def _parse_environment(pairs: List[str]) -> Dict[str, str]:
    environment: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"--env expects NAME=VALUE, got '{pair}'")
        name, value = pair.split("=", 1)
        if not name.strip():
            raise ValueError(f"--env expects NAME=VALUE, got '{pair}'")
        environment[name.strip()] = value
    return environment


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="MiniScript reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit variable snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load commands from an extension .py file or every .py file in a directory")
    parser.add_argument("--env", dest="environment", action="append", default=[], metavar="NAME=VALUE", help="Preset a local variable")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the rand command")
    args = parser.parse_args(argv)

    try:
        environment = _parse_environment(args.environment)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.extensions)
    except MiniScriptExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    engine = Engine(services=services, verbose=args.verbose, seed=args.seed)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, engine=engine)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    result = engine.execute(Script(source_text, name=filename), environment)
    if result.error is not None:
        _report(engine, result.error, verbose=args.verbose, as_json=args.traceback_json)
        return 1
    if result.output:
        print(result.output)
    return 0


if __name__ == "__main__":
    sys.exit(run_cli())
