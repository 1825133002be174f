#!/usr/bin/env python3
"""sxz command line.

    sxz [pack] ARCHIVE SOURCE [options]     pack and sign (the default command)
    sxz verify ARCHIVE [options]
    sxz xar {extract-toc,list,extract,verify} ARCHIVE ...
    sxz devchain OUT_DIR

Each command is the ``main()`` of one module; the remaining arguments are
passed to it unchanged.
"""

from __future__ import annotations

import argparse
import importlib
import sys
from typing import List, NamedTuple, Optional


class Command(NamedTuple):
    module: str
    summary: str


COMMANDS = {
    "pack": Command("sxz_pack", "Pack and sign a Safari extension (default)"),
    "verify": Command("sxz_verify", "Verify a signed .safariextz archive"),
    "xar": Command("sxz_xar", "Inspect XAR archives and extract the TOC"),
    "devchain": Command("sxz_crypto", "Generate a development key and certificate chain"),
}
DEFAULT_COMMAND = "pack"


def build_parser() -> argparse.ArgumentParser:
    epilog = "\n".join(f"  {name:<10}{cmd.summary}" for name, cmd in COMMANDS.items())
    parser = argparse.ArgumentParser(
        prog="sxz",
        description="Pack, sign and verify Safari extensions without the browser.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"commands:\n{epilog}\n\nRun 'sxz <command> --help' for command options.",
    )
    parser.add_argument("command", choices=sorted(COMMANDS), metavar="command")
    parser.add_argument("args", nargs=argparse.REMAINDER, help=argparse.SUPPRESS)
    return parser


def _with_default_command(argv: List[str]) -> List[str]:
    # "sxz out.safariextz src/..." means "sxz pack out.safariextz src/...".
    if argv and argv[0] not in COMMANDS and not argv[0].startswith("-"):
        return [DEFAULT_COMMAND, *argv]
    return argv


def _exit_status(exc: SystemExit) -> int:
    if exc.code is None:
        return 0
    return exc.code if isinstance(exc.code, int) else 1


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0

    try:
        args = parser.parse_args(_with_default_command(argv))
        module = importlib.import_module(COMMANDS[args.command].module)
        return module.main(args.args, prog=f"sxz {args.command}")
    except SystemExit as exc:
        return _exit_status(exc)


if __name__ == "__main__":
    sys.exit(main())
