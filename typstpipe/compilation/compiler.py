"""
Typst Compilation Module

Runs the Typst compiler over its standard streams: the document goes in on
stdin, the artifact comes back on stdout, and diagnostics are captured from
stderr. Each call owns one process and four concurrent tasks (stdin feed,
stdout drain, stderr drain, exit wait), so many calls can run at once without
sharing anything.
"""

import asyncio
import io
import time
from enum import Enum
from typing import List, Optional

from typstpipe.compilation.exceptions import ProcessStartError, StdoutReadError, TypstError
from typstpipe.compilation.launcher import ProcessLauncher
from typstpipe.compilation.logger import (
    _log_warning,
    log_compilation_cancelled,
    log_compilation_failed,
    log_compilation_start,
    log_compilation_succeeded,
    log_kill_failed,
    log_killing_process,
    log_process_exited,
    log_state,
)
from typstpipe.compilation.options import CompileOptions
from typstpipe.compilation.outcome import CompileOutcome, ErrorKind
from typstpipe.compilation.process import ProcessFactory, ProcessHandle
from typstpipe.compilation.settings import CompilerSettings, optimal_buffer_size
from typstpipe.compilation.streams import (
    InputSource,
    collect_stderr,
    collect_stdout,
    feed_stdin,
    is_readable,
)

# How long to wait for a killed process to be reaped
KILL_GRACE_SECONDS = 5.0


class CompilationState(Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TypstCompiler:
    """
    Compiles Typst documents by piping them through the typst executable.

    Args:
        settings: Compiler settings (default: CompilerSettings())
        process_factory: Process handle factory passed to the launcher
            (default: real OS processes)

    Example:
        compiler = TypstCompiler(load_settings())
        outcome = await compiler.compile(open("doc.typ", "rb"), CompileOptions())
        if outcome.success:
            Path("doc.pdf").write_bytes(outcome.output_bytes)
        else:
            print(outcome.diagnostics)
    """

    def __init__(
        self,
        settings: Optional[CompilerSettings] = None,
        process_factory: Optional[ProcessFactory] = None,
    ):
        self.settings = settings or CompilerSettings()
        self.launcher = ProcessLauncher(
            self.settings.executable_path,
            process_factory=process_factory,
            default_arguments=self.settings.default_arguments,
        )

    async def compile(
        self,
        input_stream: InputSource,
        options: CompileOptions,
        cancel: Optional[asyncio.Event] = None,
    ) -> CompileOutcome:
        """
        Compile one document.

        Args:
            input_stream: Document source (bytes, binary file object or async reader)
            options: Compile options for this call
            cancel: Event that aborts the compilation when set

        Returns:
            CompileOutcome; cancellation and timeouts yield ErrorKind.CANCELLED

        Raises:
            asyncio.CancelledError: If the calling task itself is cancelled (the
                process is killed and released first)
        """
        start_time = time.monotonic()
        log_state(CompilationState.IDLE.value)

        problem = self._validate(input_stream, options)
        if problem is not None:
            return self._fail(CompileOutcome.failed(ErrorKind.CONFIGURATION_ERROR, problem))

        log_compilation_start(options.format.value)

        if cancel is not None and cancel.is_set():
            log_compilation_cancelled(None, "cancelled before launch")
            log_state(CompilationState.CANCELLED.value)
            return CompileOutcome.failed(ErrorKind.CANCELLED, "Compilation cancelled before the process was started.")

        log_state(CompilationState.LAUNCHING.value)
        try:
            handle = await self.launcher.launch(options)
        except ProcessStartError as e:
            return self._fail(CompileOutcome.from_error(e))

        log_state(CompilationState.RUNNING.value, pid=handle.pid)
        try:
            outcome = await self._run(handle, input_stream, options, cancel, start_time)
        finally:
            await self._release(handle)

        if outcome.success:
            log_compilation_succeeded(handle.pid, len(outcome.output_bytes), time.monotonic() - start_time)
            log_state(CompilationState.SUCCEEDED.value, pid=handle.pid)
        elif outcome.cancelled:
            log_state(CompilationState.CANCELLED.value, pid=handle.pid)
        else:
            self._fail(outcome)
        return outcome

    async def _run(
        self,
        handle: ProcessHandle,
        input_stream: InputSource,
        options: CompileOptions,
        cancel: Optional[asyncio.Event],
        start_time: float,
    ) -> CompileOutcome:
        loop = asyncio.get_running_loop()
        stdin_chunk = optimal_buffer_size(input_stream, self.settings.stdin_buffer_size)

        # Drains are created before the feed so output is consumed from the start
        stdout_task = loop.create_task(collect_stdout(handle, self.settings.stdout_buffer_size))
        stderr_task = loop.create_task(collect_stderr(handle))
        feed_task = loop.create_task(feed_stdin(handle, input_stream, stdin_chunk))
        exit_task = loop.create_task(handle.wait())
        tasks = [feed_task, stdout_task, stderr_task, exit_task]

        cancel_waiter = loop.create_task(cancel.wait()) if cancel is not None else None
        timeout = self.settings.timeout_seconds(options.timeout_ms)

        pending = set(tasks)
        try:
            while pending:
                waiters = pending | ({cancel_waiter} if cancel_waiter is not None else set())
                remaining = None if timeout is None else max(0.0, timeout - (time.monotonic() - start_time))
                done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

                if cancel_waiter is not None and cancel_waiter in done:
                    return await self._abort(handle, tasks, "cancellation")
                if not done:
                    return await self._abort(handle, tasks, f"timeout after {timeout:.3f}s")

                pending -= done
                for drain in (stdout_task, stderr_task):
                    if drain in done and drain.exception() is not None and handle.returncode is None:
                        # Nothing reads this pipe any more; stop the process before it blocks
                        self._kill(handle, "output read failure")
        except asyncio.CancelledError:
            await self._abort(handle, tasks, "caller cancellation")
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        return self._classify(handle, feed_task, stdout_task, stderr_task, exit_task)

    def _classify(
        self,
        handle: ProcessHandle,
        feed_task: asyncio.Task,
        stdout_task: asyncio.Task,
        stderr_task: asyncio.Task,
        exit_task: asyncio.Task,
    ) -> CompileOutcome:
        """Turn the finished tasks into an outcome. Runs only after all four have completed."""
        pid = handle.pid
        stderr_error = stderr_task.exception()
        diagnostics = stderr_task.result() if stderr_error is None else ""

        error = feed_task.exception() or stdout_task.exception() or stderr_error
        exit_error = exit_task.exception()
        if error is None and exit_error is not None:
            error = StdoutReadError(
                f"Failed to wait for Typst process (PID: {pid}): {exit_error}", pid=pid, original_error=exit_error
            )

        if error is not None:
            if stdout_task.exception() is None:
                stdout_task.result().close()
            if not isinstance(error, TypstError):
                error = StdoutReadError(f"Unexpected error for PID {pid}: {error}", pid=pid, original_error=error)
            return CompileOutcome.from_error(error, diagnostics=diagnostics)

        exit_code = exit_task.result()
        log_process_exited(pid, exit_code)
        if exit_code != 0:
            stdout_task.result().close()
            return CompileOutcome.failed(
                ErrorKind.COMPILATION_ERROR,
                f"Typst compilation failed (PID: {pid}) with exit code {exit_code}.",
                diagnostics=diagnostics,
                pid=pid,
                exit_code=exit_code,
            )

        return CompileOutcome.succeeded(stdout_task.result(), diagnostics=diagnostics, pid=pid)

    async def _abort(self, handle: ProcessHandle, tasks: List[asyncio.Task], reason: str) -> CompileOutcome:
        """Kill the process, unblock every task, and report the call as cancelled."""
        pid = handle.pid
        log_compilation_cancelled(pid, reason)
        self._kill(handle, reason)

        *copy_tasks, exit_task = tasks
        for task in copy_tasks:
            task.cancel()
        if not exit_task.done():
            await asyncio.wait({exit_task}, timeout=KILL_GRACE_SECONDS)
        exit_task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        # Drop any output collected before the kill
        stdout_result = results[1]
        if isinstance(stdout_result, io.BytesIO):
            stdout_result.close()

        return CompileOutcome.failed(
            ErrorKind.CANCELLED,
            f"Typst compilation (PID: {pid}) was cancelled: {reason}.",
            pid=pid,
        )

    async def _release(self, handle: ProcessHandle) -> None:
        """Kill the process if it is still running, reap it, and dispose the handle."""
        try:
            if handle.returncode is None:
                self._kill(handle, "cleanup")
                try:
                    await asyncio.wait_for(handle.wait(), KILL_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    _log_warning(f"Process (PID: {handle.pid}) did not exit after kill.", pid=handle.pid)
        finally:
            handle.dispose()

    @staticmethod
    def _kill(handle: ProcessHandle, reason: str) -> None:
        if handle.returncode is not None:
            return
        log_killing_process(handle.pid, reason)
        try:
            handle.kill()
        except OSError as e:
            log_kill_failed(handle.pid, e)

    def _validate(self, input_stream: InputSource, options: Optional[CompileOptions]) -> Optional[str]:
        if options is None or not isinstance(options, CompileOptions):
            return "Compile options cannot be null."
        if input_stream is None:
            return "Input stream cannot be null."
        if not is_readable(input_stream):
            return "Input stream must be readable."
        if not self.settings.executable_path or not self.settings.executable_path.strip():
            return "Typst executable path is not configured."
        return None

    @staticmethod
    def _fail(outcome: CompileOutcome) -> CompileOutcome:
        log_compilation_failed(outcome.error_kind.value, outcome.description, outcome.diagnostics, pid=outcome.pid)
        log_state(CompilationState.FAILED.value, pid=outcome.pid)
        return outcome


def compile_document(
    input_stream: InputSource,
    options: Optional[CompileOptions] = None,
    settings: Optional[CompilerSettings] = None,
    cancel: Optional[asyncio.Event] = None,
    process_factory: Optional[ProcessFactory] = None,
) -> CompileOutcome:
    """
    Blocking wrapper around TypstCompiler.compile() for code without an event loop.

    Args:
        input_stream: Document source
        options: Compile options (default: PDF output)
        settings: Compiler settings (default: CompilerSettings())
        cancel: Event that aborts the compilation when set
        process_factory: Process handle factory (default: real OS processes)

    Returns:
        CompileOutcome

    Example:
        outcome = compile_document(b'= Hello', CompileOptions(format=OutputFormat.SVG))
    """
    compiler = TypstCompiler(settings, process_factory=process_factory)
    return asyncio.run(compiler.compile(input_stream, options or CompileOptions(), cancel=cancel))
