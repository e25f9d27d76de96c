"""
goose - the Duck interpreter.

Usage:
    goose run FILE [ARGS...]
    goose check FILE
    goose repl
    goose install SOURCE [--name NAME]
    goose list
    goose update [NAME...]
    goose rollback NAME
    goose FILE [ARGS...]          (same as `goose run`)
"""
import argparse
import asyncio
import sys
from pathlib import Path

from duck import duck_goose as goose
from duck.duck_datatypes import LexError
from duck.duck_lexer import Lexer, TokenType
from duck.duck_packages import LibraryManager, PackageError
from duck.duck_printer import display
from duck.duck_runtime import ScriptRunner

COMMANDS = ("run", "check", "repl", "install", "list", "update", "rollback")
RECURSION_LIMIT = 10000


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def _read_source(file_path: str):
    try:
        return Path(file_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        print("   Geese have excellent eyesight, you know.", file=sys.stderr)
    except OSError as e:
        print(f"Error: cannot read {file_path}: {e.strerror or e}", file=sys.stderr)
    return None


async def run_script_file(file_path: str, script_args, quiet: bool = False) -> int:
    """Run a Duck script file non-interactively; returns the exit status."""
    source = _read_source(file_path)
    if source is None:
        return 1
    script = Path(file_path).resolve()
    runner = ScriptRunner(
        list(script_args),
        source_dir=str(script.parent),
        path=str(script),
        stdout=sys.stdout,
        stderr=sys.stderr,
    )
    if not quiet:
        print(goose.startup())
    result = await runner.handle_script(source)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        if not quiet:
            print(goose.error_quip(result.error_kind), file=sys.stderr)
        return 1
    if not quiet:
        print(goose.success())
        print()
        print(goose.rating_box(runner.evaluator.stats))
    return 0


def check_file(file_path: str) -> int:
    source = _read_source(file_path)
    if source is None:
        return 1
    report = ScriptRunner().check(source)
    if report.error_message:
        print(report.error_message, file=sys.stderr)
        return 1
    print(goose.check_report(report.unauthorized))
    return 1 if report.unauthorized else 0


def _needs_more(text: str) -> bool:
    """True while a REPL entry has unclosed brackets or an unterminated string."""
    try:
        tokens = Lexer(text).tokenize()
    except LexError as e:
        return "Unterminated" in e.message
    depth = 0
    for tok in tokens:
        if tok.kind is TokenType.LBRACKET:
            depth += 1
        elif tok.kind is TokenType.RBRACKET:
            depth -= 1
    return depth > 0


async def repl() -> int:
    print(goose.repl_welcome())
    print()
    runner = ScriptRunner(source_dir=str(Path.cwd()), stdout=sys.stdout, stderr=sys.stderr)

    while True:
        try:
            raw = await ainput("duck> ")
            if raw == "":
                raise EOFError
            entry = raw.strip()
            if not entry:
                continue
            if entry == "exit":
                print(goose.goodbye())
                break
            while _needs_more(entry):
                more = await ainput("  ... ")
                if more == "":
                    raise EOFError
                entry += "\n" + more.rstrip("\n")

            result = await runner.handle_script(entry)
            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue
            if result.value is not None:
                print(f"=> {display(result.value)}")

        except EOFError:
            print()
            print(goose.goodbye())
            break
    return 0


def _library_command(args) -> int:
    manager = LibraryManager()
    try:
        match args.command:
            case "install":
                entry = manager.install(args.source, name=args.name)
                print(f"Installed {entry['name']} ({entry['commit'][:12]}) from {entry['source']}")
            case "list":
                libs = manager.list()
                if not libs:
                    print("No libraries installed.")
                for lib in libs:
                    print(f"{lib['name']:<20} {lib['commit'][:12]}  {lib['source']}")
            case "update":
                changed = manager.update(args.names or None)
                if not changed:
                    print("Everything is up to date.")
                for c in changed:
                    print(f"Updated {c['name']}: {c['old'][:12]} -> {c['new'][:12]}")
            case "rollback":
                commit = manager.rollback(args.name)
                print(f"Rolled {args.name} back to {commit[:12]}")
    except PackageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="goose",
        description="goose - the Duck interpreter. No quack, no execution.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a Duck script")
    run.add_argument("file", help="Path to the .duck source file")
    run.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the script as `args`")
    run.add_argument("-q", "--quiet", action="store_true",
                     help="Only print program output (no greeting or rating)")

    check = sub.add_parser("check", help="Report blocks that are missing a quack")
    check.add_argument("file", help="Path to the .duck source file")

    sub.add_parser("repl", help="Start the interactive REPL")

    install = sub.add_parser("install", help="Install a library with git")
    install.add_argument("source", help="git URL, local path or user/repo GitHub shorthand")
    install.add_argument("--name", help="Library name (default: repository name)")

    sub.add_parser("list", help="List installed libraries")

    update = sub.add_parser("update", help="Pull the latest version of installed libraries")
    update.add_argument("names", nargs="*", help="Libraries to update (default: all)")

    rollback = sub.add_parser("rollback", help="Return a library to its previous version")
    rollback.add_argument("name", help="Library to roll back")
    return parser


def main(argv=None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # `goose FILE` is shorthand for `goose run FILE`
    if argv and argv[0] not in COMMANDS and not argv[0].startswith("-"):
        argv.insert(0, "run")
    args = build_parser().parse_args(argv)

    match args.command:
        case "run":
            sys.setrecursionlimit(max(sys.getrecursionlimit(), RECURSION_LIMIT))
            return asyncio.run(run_script_file(args.file, args.args, quiet=args.quiet))
        case "check":
            return check_file(args.file)
        case "repl":
            try:
                return asyncio.run(repl())
            except KeyboardInterrupt:
                print()
                print(goose.goodbye())
                return 0
        case _:
            return _library_command(args)


if __name__ == "__main__":
    raise SystemExit(main())
