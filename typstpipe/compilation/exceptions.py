"""Exceptions raised inside the compilation context.

Components raise these; the orchestrator converts them into a CompileOutcome.
Callers only see them through CompileOutcome.raise_for_error().
"""

from typing import Optional


class TypstError(Exception):
    """
    Base class for every compilation failure.

    Attributes:
        message: Error description
        pid: Id of the compiler process, when one existed
    """

    def __init__(self, message: str, pid: Optional[int] = None):
        self.message = message
        self.pid = pid
        super().__init__(message)


class ConfigurationError(TypstError):
    """Raised when settings or call arguments are invalid before any process exists."""

    pass


class ProcessStartError(TypstError):
    """Raised when the OS refuses to spawn the compiler process."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        self.original_error = original_error
        super().__init__(message)


class StdinWriteError(TypstError):
    """
    Raised when copying the source document into stdin fails.

    Attributes:
        exit_code: Exit code of the process if it had already exited
        original_error: The underlying I/O error
    """

    def __init__(
        self,
        message: str,
        pid: Optional[int] = None,
        exit_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.exit_code = exit_code
        self.original_error = original_error
        super().__init__(message, pid=pid)


class StdoutReadError(TypstError):
    """Raised when draining stdout (or stderr) fails."""

    def __init__(
        self,
        message: str,
        pid: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.original_error = original_error
        super().__init__(message, pid=pid)


class CompilationError(TypstError):
    """
    Raised for a clean process exit with a nonzero code.

    Attributes:
        exit_code: Process exit code
        stderr: Compiler diagnostics, verbatim
    """

    def __init__(
        self, message: str, stderr: str = "", pid: Optional[int] = None, exit_code: Optional[int] = None
    ):
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(f"{message} See stderr for details.", pid=pid)


class CompilationCancelled(TypstError):
    """Raised by CompileOutcome.raise_for_error() for a cancelled or timed-out compilation."""

    pass
