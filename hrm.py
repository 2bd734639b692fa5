"""HRM interpreter entry point."""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Callable, List, Optional, TextIO

from extensions import HRMExtensionError, load_runtime_services
from interpreter import Interpreter, InterpreterError, TracebackFormatter
from lexer import HRMParseError, Lexer


EXIT_USAGE = 64


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except OSError as exc:
        print(f"Failed to read {path}: {exc}", file=sys.stderr)
        return None


def _file_sink(handle: TextIO) -> Callable[[str], None]:
    def _sink(text: str) -> None:
        handle.write(text + "\n")
        handle.flush()

    return _sink


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hrm",
        description="Interpreter for Human Resource Machine style programs",
    )
    parser.add_argument("script", nargs="?", help="Program file path, or literal program text with --source")
    parser.add_argument("-i", "--input", dest="input_path", metavar="FILE", help="Read inbox values from FILE")
    parser.add_argument("-o", "--output", dest="output_path", metavar="FILE", help="Write outbox values to FILE instead of stdout")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat script argument as literal program text")
    parser.add_argument("--strict", action="store_true", help="Reject unknown opcodes and malformed arguments")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record machine snapshots for every step")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: WARNING)",
    )
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load extension (.py or .hrmx); repeatable")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s:%(name)s:%(message)s")

    if args.script is None:
        parser.print_usage(sys.stderr)
        return EXIT_USAGE

    if args.source_mode:
        source_text = args.script
    else:
        source_text = _read_text(args.script)
        if source_text is None:
            return 1

    input_text: Optional[str] = None
    if args.input_path is not None:
        input_text = _read_text(args.input_path)
        if input_text is None:
            return 1

    lexer = Lexer(source_text, strict=args.strict)
    try:
        program = lexer.tokenize()
    except HRMParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    for diagnostic in lexer.diagnostics:
        logging.getLogger("hrm").info("Skipped: %s at %s", diagnostic.value, diagnostic.location)

    try:
        services = load_runtime_services(args.extensions)
    except HRMExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    output_handle: Optional[TextIO] = None
    if args.output_path is not None:
        try:
            output_handle = open(args.output_path, "w", encoding="utf-8")
        except OSError as exc:
            print(f"Failed to open {args.output_path}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(
        verbose=args.verbose,
        services=services,
        output_sink=_file_sink(output_handle) if output_handle is not None else None,
    )
    try:
        interpreter.run(program, input_text)
    except InterpreterError as error:
        formatter = TracebackFormatter(interpreter, source_text)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    finally:
        if output_handle is not None:
            output_handle.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
