"""
Console formatting for `sparebox-daemon verify` / `config`.
ANSI colours only when stdout is a terminal.
"""
from __future__ import annotations

import sys

_ANSI = sys.stdout.isatty()

_RESET = "\033[0m" if _ANSI else ""
_DIM = "\033[2m" if _ANSI else ""
_RED = "\033[31m" if _ANSI else ""
_GREEN = "\033[32m" if _ANSI else ""
_BOLD = "\033[1m" if _ANSI else ""


def print_banner(title: str, version: str) -> None:
    print(f"\n{_BOLD}Sparebox Daemon v{version}{_RESET} - {title}\n")


def print_section(name: str) -> None:
    print(f"\n{_BOLD}── {name} ──{_RESET}")


def print_field(label: str, value: object) -> None:
    print(f"  {label + ':':<12}{value}")


def print_ok(message: str) -> None:
    print(f"  {_GREEN}✓{_RESET} {message}")


def print_fail(message: str) -> None:
    print(f"  {_RED}✗{_RESET} {message}")


def print_status(message: str) -> None:
    print(f"{_DIM}  {message}{_RESET}")
