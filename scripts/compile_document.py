#!/usr/bin/env python3
"""
Typst Compilation CLI

Compiles Typst documents to PDF, SVG or PNG by piping them through the typst
executable configured in the environment (TYPST_EXECUTABLE_PATH, .env) or a
YAML config file.

Commands:
    compile - Compile a single Typst document
    formats - List supported output formats

Examples:\n

    compile_document.py compile report.typ                          # report.pdf next to the source

    compile_document.py compile report.typ --format svg -o out.svg  # SVG to a chosen path

    cat report.typ | compile_document.py compile - -o -             # stdin to stdout

    compile_document.py compile report.typ --input version=1.2      # Pass sys.inputs values
"""

import sys
from pathlib import Path
from typing import List, Optional

import typer
from typing_extensions import Annotated

from typstpipe.compilation import (
    CompileOptions,
    ConfigurationError,
    ErrorKind,
    OutputFormat,
    compile_document,
    load_settings,
)
from typstpipe.compilation.logger import setup_compilation_logger

EXIT_COMPILE_FAILED = 1
EXIT_CONFIGURATION = 2
EXIT_CANCELLED = 130

app = typer.Typer(
    help="Compile Typst documents through the typst executable",
    add_completion=False,
    invoke_without_command=True,
)


@app.callback()
def main(ctx: typer.Context):
    """Show help by default when no command is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def default_output_path(source: str, output_format: OutputFormat) -> Path:
    """Output next to the source with the format's extension, or output.<ext> for stdin."""
    if source == "-":
        return Path(f"output{output_format.extension}")
    return Path(source).with_suffix(output_format.extension)


@app.command("compile")
def compile_command(
    source: Annotated[
        str,
        typer.Argument(help="Typst source file, or '-' to read from stdin"),
    ],
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: pdf, svg or png"),
    ] = "pdf",
    output: Annotated[
        Optional[str],
        typer.Option("--output", "-o", help="Output path, or '-' for stdout (default: <source>.<format>)"),
    ] = None,
    root: Annotated[
        Optional[str],
        typer.Option("--root", help="Project root; also the compiler's working directory"),
    ] = None,
    font_paths: Annotated[
        Optional[List[str]],
        typer.Option("--font-path", help="Additional font directory (repeatable)"),
    ] = None,
    inputs: Annotated[
        Optional[List[str]],
        typer.Option("--input", "-i", help="KEY=VALUE exposed to the document as sys.inputs (repeatable)"),
    ] = None,
    timeout_ms: Annotated[
        Optional[int],
        typer.Option("--timeout", help="Timeout in milliseconds (default: from settings)", min=1),
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="YAML config file with a 'typst:' section"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging (process ids, stream sizes, stderr lines)"),
    ] = False,
):
    """
    Compile a Typst document.

    Exit codes: 0 success, 1 compilation failed, 2 configuration error, 130 cancelled.

    Examples:\n

        $ compile_document.py compile report.typ                     # Compile to PDF

        $ compile_document.py compile report.typ -f png -o page.png  # Compile to PNG

        $ compile_document.py compile report.typ --timeout 5000      # Abort after 5 seconds
    """
    try:
        settings = load_settings(config)
    except ConfigurationError as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_CONFIGURATION)

    setup_compilation_logger(executable_path=settings.executable_path, level="DEBUG" if verbose else "WARNING")

    try:
        fmt = OutputFormat.parse(output_format)
        options = CompileOptions.from_pairs(
            format=fmt,
            root_directory=root,
            font_paths=font_paths or [],
            input_pairs=inputs or [],
            timeout_ms=timeout_ms,
        )
    except ValueError as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_CONFIGURATION)

    to_stdout = output == "-"
    output_path = None if to_stdout else Path(output) if output else default_output_path(source, fmt)

    typer.secho(f"\nCompiling: {source}", fg=typer.colors.BLUE, bold=True, err=True)
    typer.echo(f"Format: {fmt.value}", err=True)

    if source == "-":
        outcome = compile_document(sys.stdin.buffer, options, settings)
    else:
        source_path = Path(source)
        if not source_path.is_file():
            typer.secho(f"Error: Source file not found: {source_path}\n", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=EXIT_CONFIGURATION)
        with source_path.open("rb") as stream:
            outcome = compile_document(stream, options, settings)

    if outcome.diagnostics:
        typer.echo("\nDiagnostics:", err=True)
        typer.echo(outcome.diagnostics.rstrip("\n"), err=True)

    typer.echo("", err=True)
    if outcome.success:
        if to_stdout:
            sys.stdout.buffer.write(outcome.output_bytes)
            sys.stdout.buffer.flush()
        else:
            output_path.write_bytes(outcome.output_bytes)
        typer.secho("✓ Compilation succeeded", fg=typer.colors.GREEN, bold=True, err=True)
        typer.echo(f"  Output: {'<stdout>' if to_stdout else output_path} ({len(outcome.output_bytes)} bytes)", err=True)
        raise typer.Exit(code=0)

    typer.secho(f"✗ Compilation failed: {outcome.description}", fg=typer.colors.RED, bold=True, err=True)
    if outcome.error_kind is ErrorKind.CANCELLED:
        raise typer.Exit(code=EXIT_CANCELLED)
    if outcome.error_kind is ErrorKind.CONFIGURATION_ERROR:
        raise typer.Exit(code=EXIT_CONFIGURATION)
    raise typer.Exit(code=EXIT_COMPILE_FAILED)


@app.command("formats")
def formats_command():
    """List supported output formats and their media types."""
    for fmt in OutputFormat:
        typer.echo(f"{fmt.value:<5} {fmt.media_type}")


if __name__ == "__main__":
    app()
