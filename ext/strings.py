"""MiniScript extension: string helpers.

Commands:
- join(a, b, ...)    arguments joined with single spaces
- upper(text)        uppercase
- lower(text)        lowercase
- length(text)       number of characters
- repeat(text, n)    text repeated n times (empty when n is not an integer or the
                     result would exceed MAX_REPEAT_LENGTH characters)
"""

from __future__ import annotations

from typing import List, Optional

from extensions import ExtensionAPI


MINISCRIPT_EXTENSION_NAME = "strings"
MINISCRIPT_EXTENSION_API_VERSION = 1

MAX_REPEAT_LENGTH = 1_000_000


def _first(args: List[str]) -> str:
    return args[0] if args else ""


def miniscript_register(ext: ExtensionAPI) -> None:
    ext.metadata(version="1.0.0")

    @ext.command("join")
    def _join(args: List[str]) -> str:
        return " ".join(args)

    @ext.command("upper")
    def _upper(args: List[str]) -> str:
        return _first(args).upper()

    @ext.command("lower")
    def _lower(args: List[str]) -> str:
        return _first(args).lower()

    @ext.command("length")
    def _length(args: List[str]) -> str:
        return str(len(_first(args)))

    @ext.command("repeat")
    def _repeat(args: List[str]) -> Optional[str]:
        if len(args) < 2:
            return None
        try:
            count = int(args[1])
        except ValueError:
            return None
        text = _first(args)
        if count > 0 and len(text) * count > MAX_REPEAT_LENGTH:
            return None
        return text * max(count, 0)
