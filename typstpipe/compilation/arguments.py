"""
Command-line argument construction for `typst compile`.

The argument vector is passed to the process directly (no shell), so values
need no quoting or escaping here.
"""

import os
from typing import List, Sequence

from typstpipe.compilation.options import CompileOptions

# Read the document from stdin and write the artifact to stdout
STDIN_STDOUT_MARKERS = ["-", "-"]


def build_arguments(options: CompileOptions, default_arguments: Sequence[str] = ()) -> List[str]:
    """
    Build the argument vector for one compilation.

    Produces: compile --format <fmt> [defaults]* [--font-path <p>]* [--input <k>=<v>]* [--root <dir>] - -

    Args:
        options: Compile options for this call
        default_arguments: Extra arguments from settings, placed after the format

    Returns:
        Argument list (executable not included)

    Example:
        >>> build_arguments(CompileOptions(font_paths=("fonts", " ")))
        ['compile', '--format', 'pdf', '--font-path', 'fonts', '-', '-']
    """
    args = ["compile", "--format", options.format.value.lower()]
    args.extend(default_arguments)

    for path in options.font_paths:
        if path and path.strip():
            args.extend(["--font-path", path.strip()])

    for key, value in options.inputs.items():
        args.extend(["--input", f"{key}={value}"])

    root = _root_directory(options)
    if root is not None:
        args.extend(["--root", root])

    args.extend(STDIN_STDOUT_MARKERS)
    return args


def working_directory(options: CompileOptions) -> str:
    """Working directory for the process: the root directory, else the current directory."""
    root = _root_directory(options)
    return root if root is not None else os.getcwd()


def _root_directory(options: CompileOptions):
    if options.root_directory is None or not options.root_directory.strip():
        return None
    return options.root_directory.strip()
