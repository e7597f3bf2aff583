"""
Result model for a compilation: one outcome per invocation.
"""

from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Optional

from typstpipe.compilation.exceptions import (
    CompilationCancelled,
    CompilationError,
    ConfigurationError,
    ProcessStartError,
    StdinWriteError,
    StdoutReadError,
    TypstError,
)


class ErrorKind(Enum):
    """Closed set of failure kinds."""

    CONFIGURATION_ERROR = "configuration_error"
    PROCESS_START_ERROR = "process_start_error"
    STDIN_WRITE_ERROR = "stdin_write_error"
    STDOUT_READ_ERROR = "stdout_read_error"
    COMPILATION_ERROR = "compilation_error"
    CANCELLED = "cancelled"


_EXCEPTION_BY_KIND = {
    ErrorKind.CONFIGURATION_ERROR: ConfigurationError,
    ErrorKind.PROCESS_START_ERROR: ProcessStartError,
    ErrorKind.STDIN_WRITE_ERROR: StdinWriteError,
    ErrorKind.STDOUT_READ_ERROR: StdoutReadError,
    ErrorKind.CANCELLED: CompilationCancelled,
}


@dataclass(frozen=True)
class CompileOutcome:
    """
    Outcome of one compilation.

    Attributes:
        success: Whether the compiler exited 0 and every stream copy completed
        output: Artifact bytes, rewound to the start (None unless success)
        diagnostics: Captured stderr text, on success and failure alike
        error_kind: Failure kind (None on success)
        description: Human-readable failure description ("" on success)
        pid: Compiler process id, when a process was started
        exit_code: Process exit code, when the process exited on its own
    """

    success: bool
    output: Optional[BytesIO] = None
    diagnostics: str = ""
    error_kind: Optional[ErrorKind] = None
    description: str = ""
    pid: Optional[int] = None
    exit_code: Optional[int] = None

    @classmethod
    def succeeded(
        cls, output: BytesIO, diagnostics: str = "", pid: Optional[int] = None
    ) -> "CompileOutcome":
        return cls(success=True, output=output, diagnostics=diagnostics, pid=pid, exit_code=0)

    @classmethod
    def failed(
        cls,
        error_kind: ErrorKind,
        description: str,
        diagnostics: str = "",
        pid: Optional[int] = None,
        exit_code: Optional[int] = None,
    ) -> "CompileOutcome":
        return cls(
            success=False,
            diagnostics=diagnostics,
            error_kind=error_kind,
            description=description,
            pid=pid,
            exit_code=exit_code,
        )

    @classmethod
    def from_error(cls, error: TypstError, diagnostics: str = "") -> "CompileOutcome":
        """Convert a component exception into a failed outcome."""
        if isinstance(error, CompilationError):
            return cls.failed(
                ErrorKind.COMPILATION_ERROR,
                error.message,
                diagnostics=error.stderr,
                pid=error.pid,
                exit_code=error.exit_code,
            )
        for kind, exc_type in _EXCEPTION_BY_KIND.items():
            if type(error) is exc_type:
                return cls.failed(
                    kind,
                    error.message,
                    diagnostics=diagnostics,
                    pid=error.pid,
                    exit_code=getattr(error, "exit_code", None),
                )
        raise TypeError(f"Unsupported error type: {type(error).__name__}")

    @property
    def cancelled(self) -> bool:
        return self.error_kind is ErrorKind.CANCELLED

    @property
    def output_bytes(self) -> bytes:
        """Artifact contents (b"" for failed outcomes)."""
        if self.output is None:
            return b""
        return self.output.getvalue()

    def raise_for_error(self) -> None:
        """
        Raise the exception matching this outcome's error kind.

        Does nothing for successful outcomes.

        Raises:
            TypstError: Subclass matching error_kind
        """
        if self.success:
            return
        if self.error_kind is ErrorKind.COMPILATION_ERROR:
            raise CompilationError(
                self.description, stderr=self.diagnostics, pid=self.pid, exit_code=self.exit_code
            )
        exc_type = _EXCEPTION_BY_KIND[self.error_kind]
        if exc_type is ProcessStartError:
            raise ProcessStartError(self.description)
        raise exc_type(self.description, pid=self.pid)
