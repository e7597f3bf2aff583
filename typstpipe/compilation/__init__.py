"""
Compilation Context

Responsibilities:
- Builds the typst command line from compile options
- Starts the compiler process and pipes the document through it
- Drains the artifact (stdout) and diagnostics (stderr) concurrently
- Classifies the run into a single CompileOutcome
- Kills and releases the process on cancellation, timeout and errors

Owns: compiler process lifetime, stream copying, outcome model
Never: Parses or renders the document itself
"""

from typstpipe.compilation.arguments import build_arguments, working_directory
from typstpipe.compilation.compiler import CompilationState, TypstCompiler, compile_document
from typstpipe.compilation.exceptions import (
    CompilationCancelled,
    CompilationError,
    ConfigurationError,
    ProcessStartError,
    StdinWriteError,
    StdoutReadError,
    TypstError,
)
from typstpipe.compilation.launcher import ProcessLauncher
from typstpipe.compilation.options import CompileOptions, OutputFormat
from typstpipe.compilation.outcome import CompileOutcome, ErrorKind
from typstpipe.compilation.process import InMemoryProcess, OsProcessHandle, ProcessHandle, ProcessSpec
from typstpipe.compilation.settings import CompilerSettings, load_settings, validate_settings
