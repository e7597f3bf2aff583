"""
Stream copying between the caller and the compiler's pipes.

Each coroutine here runs as its own task so that stdin is written while stdout
and stderr are drained. Writing stdin to completion before reading stdout
deadlocks as soon as the compiler's output fills the OS pipe buffer.
"""

import asyncio
import codecs
import inspect
import io
import threading
from typing import Any, AsyncIterator, Callable, Optional, Union

from typstpipe.compilation.exceptions import StdinWriteError, StdoutReadError
from typstpipe.compilation.logger import (
    _log_debug,
    log_stdin_copy_cancelled,
    log_stdin_copy_finished,
    log_stdin_copy_start,
    log_stdin_error,
    log_stdout_read_complete,
    log_stdout_read_error,
)
from typstpipe.compilation.process import ProcessHandle

InputSource = Union[bytes, bytearray, memoryview, Any]

STDERR_CHUNK_SIZE = 4096


def is_readable(input_stream: InputSource) -> bool:
    """Whether input_stream can be used as the document source."""
    if input_stream is None:
        return False
    if isinstance(input_stream, (bytes, bytearray, memoryview)):
        return True
    if not callable(getattr(input_stream, "read", None)):
        return False
    if getattr(input_stream, "closed", False):
        return False
    readable = getattr(input_stream, "readable", None)
    if callable(readable):
        try:
            return bool(readable())
        except ValueError:
            # Raised by closed file objects
            return False
    return True


async def iter_chunks(input_stream: InputSource, chunk_size: int) -> AsyncIterator[bytes]:
    """
    Yield the source in chunks of at most chunk_size bytes.

    Accepts bytes-like objects, in-memory buffers, blocking file objects (read in a
    daemon thread so the event loop keeps draining output) and objects whose
    read() is a coroutine (e.g. asyncio.StreamReader).
    """
    if isinstance(input_stream, (bytes, bytearray, memoryview)):
        view = memoryview(input_stream)
        for start in range(0, len(view), chunk_size):
            yield bytes(view[start : start + chunk_size])
        return

    read = input_stream.read
    in_memory = isinstance(input_stream, io.BytesIO)
    while True:
        if inspect.iscoroutinefunction(read):
            chunk = await read(chunk_size)
        elif in_memory:
            chunk = read(chunk_size)
        else:
            chunk = await _read_in_thread(read, chunk_size)
        if not chunk:
            return
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        yield chunk


def _read_in_thread(read: Callable[[int], Any], chunk_size: int) -> "asyncio.Future[Any]":
    """
    Run one blocking read() in a daemon thread.

    A read on a pipe or terminal cannot be interrupted. Unlike the loop's default
    executor, an abandoned daemon thread does not hold up asyncio.run() shutdown,
    so a cancelled or timed-out compilation returns even while the read is stuck.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _resolve(result: Any, error: Optional[BaseException]) -> None:
        if future.done():
            # Awaiting side was cancelled
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _worker() -> None:
        try:
            result, error = read(chunk_size), None
        except Exception as e:
            result, error = None, e
        try:
            loop.call_soon_threadsafe(_resolve, result, error)
        except RuntimeError:
            # Event loop already closed
            pass

    threading.Thread(target=_worker, name="typst-input-reader", daemon=True).start()
    return future


async def feed_stdin(handle: ProcessHandle, input_stream: InputSource, chunk_size: int) -> int:
    """
    Copy the whole input into the process's stdin, then close it.

    Args:
        handle: Started process
        input_stream: Document source
        chunk_size: Bytes per write

    Returns:
        Number of bytes written

    Raises:
        StdinWriteError: On any failure other than cancellation
        asyncio.CancelledError: If the copy was cancelled
    """
    pid = handle.pid
    stdin = handle.stdin
    written = 0
    log_stdin_copy_start(pid)

    try:
        async for chunk in iter_chunks(input_stream, chunk_size):
            stdin.write(chunk)
            await stdin.drain()
            written += len(chunk)
        await _close_stdin(stdin)
    except asyncio.CancelledError:
        log_stdin_copy_cancelled(pid)
        _abort_stdin(stdin)
        raise
    except OSError as e:
        # Usually BrokenPipeError: the compiler stopped reading, often because it exited
        log_stdin_error(pid, e)
        _abort_stdin(stdin)
        exit_code = handle.returncode
        if exit_code is not None:
            message = f"Typst process (PID: {pid}) exited with code {exit_code} during stdin write: {e}"
        else:
            message = f"I/O error during stdin write for PID {pid}: {e}"
        raise StdinWriteError(message, pid=pid, exit_code=exit_code, original_error=e) from e
    except Exception as e:
        log_stdin_error(pid, e)
        _abort_stdin(stdin)
        raise StdinWriteError(
            f"Unexpected error during stdin write for PID {pid}: {e}",
            pid=pid,
            exit_code=handle.returncode,
            original_error=e,
        ) from e

    log_stdin_copy_finished(pid, written)
    return written


async def collect_stdout(handle: ProcessHandle, chunk_size: int) -> io.BytesIO:
    """
    Drain stdout into memory.

    Returns:
        Buffer rewound to its start

    Raises:
        StdoutReadError: If reading fails (the partial buffer is discarded)
        asyncio.CancelledError: If draining was cancelled (the partial buffer is discarded)
    """
    pid = handle.pid
    buffer = io.BytesIO()

    try:
        while True:
            chunk = await handle.stdout.read(chunk_size)
            if not chunk:
                break
            buffer.write(chunk)
    except asyncio.CancelledError:
        buffer.close()
        raise
    except Exception as e:
        buffer.close()
        log_stdout_read_error(pid, e)
        raise StdoutReadError(f"Failed to read stdout stream for PID {pid}: {e}", pid=pid, original_error=e) from e

    buffer.seek(0)
    log_stdout_read_complete(pid, buffer.getbuffer().nbytes)
    return buffer


async def collect_stderr(handle: ProcessHandle) -> str:
    """
    Drain stderr as UTF-8 text.

    The accumulated text belongs to this task alone and is only handed out by
    returning it, so callers read it after the task has finished.

    Raises:
        StdoutReadError: If reading fails
    """
    pid = handle.pid
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts = []
    pending_line = ""

    try:
        while True:
            chunk = await handle.stderr.read(STDERR_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            parts.append(text)

            lines = (pending_line + text).split("\n")
            pending_line = lines.pop()
            for line in lines:
                _log_debug(f"stderr: {line.rstrip()}", pid=pid)

            if not chunk:
                break
    except Exception as e:
        raise StdoutReadError(f"Failed to read stderr stream for PID {pid}: {e}", pid=pid, original_error=e) from e

    if pending_line:
        _log_debug(f"stderr: {pending_line.rstrip()}", pid=pid)
    return "".join(parts)


async def _close_stdin(stdin) -> None:
    if not stdin.is_closing():
        stdin.close()
    await stdin.wait_closed()


def _abort_stdin(stdin) -> None:
    if not stdin.is_closing():
        stdin.close()
