"""
__main__.py – CLI entry-point for the evtasm package.

Usage:  python -m evtasm <command> [options] <files…>

Commands
--------
assemble    FILE…   Assemble source files into <name>.bin + <name>.entries.json.
disassemble FILE…   Disassemble bytecode files into <name>.asm.
check       FILE…   Assemble sources / round-trip bytecode without writing.
opcodes             List the command table.

Entry points (for disassemble / check)
--------------------------------------
Without --entry the table is read from <name>.entries.json next to the
bytecode.  Each --entry is ROLE=OFFSET or a bare OFFSET, e.g.:
  --entry prologue=0       stage event
  --entry interact:20=0x40 interaction handler of object 20
  --entry lib:3=0x80       library function 3
  --entry 0x100            decode from 0x100, no role
"""

from __future__ import annotations

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

log = logging.getLogger("evtasm")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    console = Console(stderr=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, markup=True)],
        force=True,
    )


def _entry_arg(text: str):
    """Parse ``ROLE=OFFSET`` into (EntryPoint, offset), or a bare offset."""
    from evtasm.program import EntryPoint

    role, sep, offset = text.rpartition("=")
    try:
        if not sep:
            return int(offset, 0)
        return EntryPoint.parse(role), int(offset, 0)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"bad entry {text!r}: {exc}") from None


def _target_arg(text: str):
    from evtasm.program import Target

    try:
        return Target.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _describe(exc, path: Path) -> str:
    """Render an error with a line/column when it points into a source file."""
    text = None
    if exc.span is not None:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            text = None
    return exc.describe(text)


def _run_batch(work, files: list[Path], jobs: int) -> list:
    """Run *work(path)* for every file, in parallel; return per-file results.

    A result is the worker's return value, or the exception that stopped the
    unit.  A file that fails to read or decode never stops the others.
    """
    def unit(path: Path):
        try:
            return work(path)
        except (ValueError, KeyError, OSError) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=max(1, jobs)) as pool:
        return list(pool.map(unit, files))


def _report(files: list[Path], results: list, verb: str) -> int:
    from evtasm.errors import EvtasmError

    errors = 0
    for path, result in zip(files, results):
        if isinstance(result, EvtasmError):
            log.error("Error %s %s: %s", verb, escape(path.name), escape(_describe(result, path)))
            errors += 1
        elif isinstance(result, Exception):
            log.error("Error %s %s: %s", verb, escape(path.name), escape(str(result)))
            errors += 1
        else:
            for written in result:
                log.debug("  → %s", escape(str(written)))
    return 1 if errors else 0


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_assemble(args: argparse.Namespace) -> int:
    """Assemble source files into bytecode."""
    from evtasm.assemble import assemble_file

    outdir = Path(args.outdir) if args.outdir else Path(".")
    files = [Path(f) for f in args.files]

    def work(path: Path) -> list[Path]:
        log.debug("Assembling %s…", escape(path.name))
        return assemble_file(path, outdir=outdir, max_passes=args.max_passes)

    return _report(files, _run_batch(work, files, args.jobs), "assembling")


def cmd_disassemble(args: argparse.Namespace) -> int:
    """Disassemble bytecode files into assembly text."""
    from evtasm.disasm import disassemble_file

    outdir = Path(args.outdir) if args.outdir else Path(".")
    files = [Path(f) for f in args.files]
    entries = args.entry or None

    def work(path: Path) -> list[Path]:
        log.debug("Disassembling %s…", escape(path.name))
        return disassemble_file(path, outdir=outdir, entries=entries,
                                target=args.target, verify=args.verify)

    return _report(files, _run_batch(work, files, args.jobs), "disassembling")


def cmd_check(args: argparse.Namespace) -> int:
    """Assemble or round-trip every file in memory and print a summary."""
    from evtasm.assemble import assemble_script
    from evtasm.disasm import disassemble_script
    from evtasm.parser import parse
    from evtasm.program import load_entries

    files = [Path(f) for f in args.files]
    entries = args.entry or None

    def work(path: Path) -> tuple[int, int, int]:
        if path.suffix.lower() == ".bin":
            data = path.read_bytes()
            unit_entries, target = entries, args.target
            sidecar = path.with_name(path.stem + ".entries.json")
            if unit_entries is None and sidecar.exists():
                saved, unit_entries = load_entries(sidecar.read_text(encoding="utf-8"))
                target = target or saved
            script = disassemble_script(data, unit_entries if unit_entries is not None else [0],
                                        target, verify=True, max_passes=args.max_passes)
            return len(data), len(script.blocks), len(script.entries)
        script = parse(path.read_text(encoding="utf-8"))
        result = assemble_script(script, args.max_passes)
        return len(result.data), len(script.blocks), len(result.entries)

    results = _run_batch(work, files, args.jobs)

    table = Table(title="Check", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("File", style="magenta", no_wrap=True)
    table.add_column("Size", style="green", justify="right")
    table.add_column("Blocks", style="yellow", justify="right")
    table.add_column("Entries", style="yellow", justify="right")
    table.add_column("Status", style="cyan")
    errors = 0
    for path, result in zip(files, results):
        if isinstance(result, Exception):
            errors += 1
            table.add_row(escape(path.name), "-", "-", "-", "[red]failed[/red]")
            log.error("%s: %s", escape(path.name), escape(
                _describe(result, path) if hasattr(result, "describe") else str(result)))
        else:
            size, blocks, count = result
            table.add_row(escape(path.name), str(size), str(blocks), str(count), "ok")
    Console().print(table)
    return 1 if errors else 0


def cmd_opcodes(args: argparse.Namespace) -> int:
    """Print the command table."""
    from evtasm.opcodes import CMD_CATEGORIES, CMD_OPCODES
    from evtasm.signatures import CMD_SIGNATURES, describe

    table = Table(title="Commands", box=box.MINIMAL_DOUBLE_HEAD, show_lines=args.verbose)
    table.add_column("Code", style="yellow", justify="right")
    table.add_column("Name", style="magenta", no_wrap=True)
    table.add_column("Category", style="cyan")
    table.add_column("Operands", style="green")
    for name, code in CMD_OPCODES.items():
        if args.category and CMD_CATEGORIES[name] != args.category:
            continue
        shapes = CMD_SIGNATURES[name]
        if args.verbose:
            operands = "\n".join(", ".join(describe(slot) for slot in shape) or "-"
                                 for shape in shapes)
        else:
            operands = f"{len(shapes)} form(s)"
        table.add_row(f"0x{code:02x}", name, CMD_CATEGORIES[name], escape(operands))
    Console().print(table)
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    from evtasm.assemble import MAX_PASSES

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true",
                        help="Print progress messages.")
    common.add_argument("-o", "--outdir", metavar="DIR",
                        help="Output directory (default: current directory).")
    common.add_argument("-j", "--jobs", type=int, default=1, metavar="N",
                        help="Number of files processed in parallel (default: 1).")
    common.add_argument("--max-passes", type=int, default=MAX_PASSES, metavar="N",
                        dest="max_passes",
                        help=f"Bound on address layout passes (default: {MAX_PASSES}).")

    decode = argparse.ArgumentParser(add_help=False)
    decode.add_argument("--entry", action="append", type=_entry_arg, metavar="ROLE=OFFSET",
                        help="Entry point of the bytecode; may be repeated.")
    decode.add_argument("--target", type=_target_arg, metavar="globals|stage:NAME",
                        help="Target of the bytecode (default: from the entry table).")

    parser = argparse.ArgumentParser(
        prog="python -m evtasm",
        description="Event-script assembler and disassembler.",
    )
    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    # assemble
    p_asm = sub.add_parser("assemble", parents=[common],
                           help="Assemble source files into bytecode.")
    p_asm.add_argument("files", nargs="+", metavar="FILE")

    # disassemble
    p_dis = sub.add_parser("disassemble", parents=[common, decode],
                           help="Disassemble bytecode files into assembly text.")
    p_dis.add_argument("files", nargs="+", metavar="FILE")
    p_dis.add_argument("--verify", action="store_true",
                       help="Fail unless the output reassembles to the input bytes.")

    # check
    p_chk = sub.add_parser("check", parents=[common, decode],
                           help="Assemble sources or round-trip .bin files without writing.")
    p_chk.add_argument("files", nargs="+", metavar="FILE")

    # opcodes
    p_ops = sub.add_parser("opcodes", parents=[common], help="List the command table.")
    p_ops.add_argument("--category", choices=["control", "data", "direction", "debug", "system"],
                       help="Only list commands of one category.")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

_COMMANDS = {
    "assemble":    cmd_assemble,
    "disassemble": cmd_disassemble,
    "check":       cmd_check,
    "opcodes":     cmd_opcodes,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args   = parser.parse_args(argv)
    _setup_logging(args.verbose)
    return _COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
