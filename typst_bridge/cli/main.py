import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from typst_bridge.api import Compiler
from typst_bridge.data import OutputFormat
from typst_bridge.errors import BridgeError
from typst_bridge.logging import configure_logging


def compile_document(args: argparse.Namespace) -> int:
    """Compile one markup file and write the artifact."""
    output_format = OutputFormat.parse(args.format)
    markup = _read_markup(args.input)
    input_data = _load_data(args.data)

    options: Dict[str, Any] = {"font_paths": args.font_path or []}
    if args.root is not None:
        options["root"] = args.root
    elif args.input != "-":
        options["root"] = Path(args.input).resolve().parent
    if args.ppi is not None:
        options["ppi"] = args.ppi
    if args.timeout is not None:
        options["timeout"] = args.timeout
    if args.input != "-":
        options["main_path"] = Path(args.input).name
    if not args.system_fonts:
        options["include_system_fonts"] = False

    artifact = Compiler.get_instance().compile(markup, input_data, output_format, options)

    output = args.output
    if output is None:
        if args.input == "-":
            raise ValueError("--output is required when reading markup from stdin.")
        output = Path(args.input).with_suffix(f".{output_format.value}")
    if str(output) == "-":
        sys.stdout.buffer.write(artifact.data)
        sys.stdout.buffer.flush()
    else:
        Path(output).write_bytes(artifact.data)
        print(f"Wrote {len(artifact)} bytes of {output_format.value} to {output}", file=sys.stderr)
    return 0


def info(args: argparse.Namespace) -> int:
    """Print platform and engine details as JSON."""
    compiler = Compiler.get_instance()
    if args.load:
        compiler.initialize()
    print(json.dumps(compiler.info(), indent=2))
    return 0


def _read_markup(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _load_data(data: Optional[str]) -> Optional[Dict[str, Any]]:
    # "@file.json" reads the bindings from a file, anything else is inline JSON
    if data is None:
        return None
    text = Path(data[1:]).read_text(encoding="utf-8") if data.startswith("@") else data
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError("--data must be a JSON object.")
    return value


def cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="typst-bridge",
        description="Typst Bridge CLI",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Log level, e.g. INFO or DEBUG.")

    command_subparsers = parser.add_subparsers(
        dest="command", required=True, help="Primary commands"
    )

    compile_parser = command_subparsers.add_parser(
        "compile", help="Compile a markup file into PDF, SVG or PNG."
    )
    compile_parser.add_argument("input", help="Markup file, or '-' for stdin.")
    compile_parser.add_argument(
        "-o", "--output", type=Path, help="Output file, or '-' for stdout."
    )
    compile_parser.add_argument(
        "--data", help="Input bindings as a JSON object, or '@path' to read them from a file."
    )
    compile_parser.add_argument(
        "-f", "--format", default="pdf", help="Output format: pdf, svg or png."
    )
    compile_parser.add_argument("--root", type=Path, help="Root for relative includes.")
    compile_parser.add_argument(
        "--font-path",
        type=Path,
        action="append",
        help="Specifies one or more extra font directories.",
    )
    compile_parser.add_argument("--ppi", type=float, help="Pixels per inch for PNG output.")
    compile_parser.add_argument("--timeout", type=float, help="Advisory timeout in seconds.")
    compile_parser.add_argument(
        "--system-fonts", action=argparse.BooleanOptionalAction, default=True
    )
    compile_parser.set_defaults(func=compile_document)

    info_parser = command_subparsers.add_parser(
        "info", help="Show the platform key and the loaded engine."
    )
    info_parser.add_argument(
        "--load", action="store_true", help="Resolve and load the engine before reporting."
    )
    info_parser.set_defaults(func=info)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except (BridgeError, ValueError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    sys.exit(cli())
