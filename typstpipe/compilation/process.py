"""
Process handles for the compiler.

A ProcessHandle owns one process and its three pipes for the lifetime of one
compilation. Two variants exist:

- OsProcessHandle: a real OS process started with asyncio's subprocess support
- InMemoryProcess: a scripted in-memory process with bounded pipes, used in tests
  and anywhere the compiler should not actually run

The launcher picks the variant through its process_factory argument.
"""

import asyncio
import itertools
import os
import signal
import subprocess
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

# Typical OS pipe buffer size on Linux and macOS
DEFAULT_PIPE_CAPACITY = 64 * 1024

# Exit code reported for a killed in-memory process (mirrors -SIGKILL on POSIX)
KILLED_EXIT_CODE = -9


@dataclass(frozen=True)
class ProcessSpec:
    """What to run: executable, argument vector and working directory."""

    executable: str
    arguments: Tuple[str, ...] = ()
    cwd: Optional[str] = None

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.arguments]


class ProcessWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    def is_closing(self) -> bool: ...

    async def wait_closed(self) -> None: ...


class ProcessReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class ProcessHandle(Protocol):
    """Capability the orchestrator needs from a process."""

    spec: ProcessSpec

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> Optional[int]: ...

    @property
    def stdin(self) -> ProcessWriter: ...

    @property
    def stdout(self) -> ProcessReader: ...

    @property
    def stderr(self) -> ProcessReader: ...

    async def start(self) -> None: ...

    async def wait(self) -> int: ...

    def kill(self) -> None: ...

    def dispose(self) -> None: ...


ProcessFactory = Callable[[ProcessSpec], ProcessHandle]


class OsProcessHandle:
    """
    Real OS process.

    All three standard streams are pipes; stdout is read as raw bytes. On POSIX the
    child gets its own session so kill() reaches any process it spawned. On Windows
    no console window is created.
    """

    def __init__(self, spec: ProcessSpec):
        self.spec = spec
        self._process: Optional[asyncio.subprocess.Process] = None
        self._disposed = False

    async def start(self) -> None:
        platform_kwargs = {}
        if os.name == "nt":
            platform_kwargs["creationflags"] = (
                subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP
            )
        else:
            platform_kwargs["start_new_session"] = True

        self._process = await asyncio.create_subprocess_exec(
            self.spec.executable,
            *self.spec.arguments,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.spec.cwd,
            **platform_kwargs,
        )

    @property
    def pid(self) -> int:
        return self._started().pid

    @property
    def returncode(self) -> Optional[int]:
        if self._process is None:
            return None
        return self._process.returncode

    @property
    def stdin(self) -> asyncio.StreamWriter:
        return self._started().stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._started().stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._started().stderr

    async def wait(self) -> int:
        return await self._started().wait()

    def kill(self) -> None:
        """Kill the process (and its process group on POSIX). No-op once it has exited."""
        if self._process is None or self._process.returncode is not None:
            return
        if os.name == "nt":
            self._process.kill()
            return
        try:
            os.killpg(self._process.pid, signal.SIGKILL)
        except PermissionError:
            self._process.kill()

    def dispose(self) -> None:
        """
        Close stdin. Idempotent.

        Call after wait(): asyncio closes the subprocess transport by itself once the
        process has been reaped and its stdout and stderr pipes have reached EOF.
        """
        if self._disposed:
            return
        self._disposed = True
        if self._process is None:
            return
        if self._process.stdin is not None and not self._process.stdin.is_closing():
            self._process.stdin.close()

    def _started(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise RuntimeError("Process has not been started")
        return self._process


class MemoryPipe:
    """
    Bounded in-memory pipe with StreamWriter/StreamReader-like methods.

    drain() blocks while more than `capacity` bytes are unread, the way a full OS
    pipe blocks its writer. Once the reading side is gone, writes raise
    BrokenPipeError.
    """

    def __init__(self, capacity: int = DEFAULT_PIPE_CAPACITY):
        self.capacity = capacity
        self._buffer = bytearray()
        self._eof = False
        self._broken = False
        self._changed = asyncio.Condition()

    # Writing side

    def write(self, data: bytes) -> None:
        if self._broken:
            raise BrokenPipeError("Reading end of the pipe is closed")
        if self._eof:
            raise ValueError("write to closed pipe")
        self._buffer.extend(data)
        self._notify()

    async def drain(self) -> None:
        async with self._changed:
            await self._changed.wait_for(lambda: self._broken or len(self._buffer) <= self.capacity)
        if self._broken:
            raise BrokenPipeError("Reading end of the pipe is closed")

    def close(self) -> None:
        self._eof = True
        self._notify()

    def is_closing(self) -> bool:
        return self._eof

    async def wait_closed(self) -> None:
        return None

    # Reading side

    async def read(self, n: int = -1) -> bytes:
        if n < 0:
            # Read to EOF in capacity-sized chunks so the writer never stalls
            data = bytearray()
            while True:
                chunk = await self.read(self.capacity)
                if not chunk:
                    return bytes(data)
                data.extend(chunk)

        async with self._changed:
            await self._changed.wait_for(lambda: self._eof or self._buffer)
            size = min(n, len(self._buffer))
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            self._changed.notify_all()
        return data

    def break_pipe(self) -> None:
        """Mark the reading side as gone."""
        self._broken = True
        self._notify()

    def _notify(self) -> None:
        # Writers are synchronous; wake waiters from a scheduled callback
        async def _wake():
            async with self._changed:
                self._changed.notify_all()

        try:
            asyncio.get_running_loop().create_task(_wake())
        except RuntimeError:
            pass


Behavior = Callable[["InMemoryProcess"], Awaitable[int]]

_pids = itertools.count(40000)


@dataclass(eq=False)
class InMemoryProcess:
    """
    Scripted stand-in for the compiler process.

    The default behavior consumes all of stdin, writes `stderr_text` then
    `stdout_bytes`, and exits with `exit_code`. A custom `behavior` coroutine
    receives the process and returns the exit code; it reads from
    `process.stdin` and writes to `process.stdout` / `process.stderr`.

    Counters (`start_count`, `kill_count`, `dispose_count`) and `received_input`
    let tests check how the orchestrator used the handle.
    """

    spec: ProcessSpec = field(default_factory=lambda: ProcessSpec("typst"))
    stdout_bytes: bytes = b""
    stderr_text: str = ""
    exit_code: int = 0
    behavior: Optional[Behavior] = None
    start_error: Optional[BaseException] = None
    pipe_capacity: int = DEFAULT_PIPE_CAPACITY

    def __post_init__(self):
        self._pid = next(_pids)
        self._returncode: Optional[int] = None
        self._stdin = MemoryPipe(self.pipe_capacity)
        self._stdout = MemoryPipe(self.pipe_capacity)
        self._stderr = MemoryPipe(self.pipe_capacity)
        self._exited: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.received_input = b""
        self.start_count = 0
        self.kill_count = 0
        self.dispose_count = 0

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def stdin(self) -> MemoryPipe:
        return self._stdin

    @property
    def stdout(self) -> MemoryPipe:
        return self._stdout

    @property
    def stderr(self) -> MemoryPipe:
        return self._stderr

    @property
    def was_killed(self) -> bool:
        return self.kill_count > 0 and self._returncode == KILLED_EXIT_CODE

    async def start(self) -> None:
        self.start_count += 1
        if self.start_error is not None:
            raise self.start_error
        self._exited = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def wait(self) -> int:
        if self._exited is None:
            raise RuntimeError("Process has not been started")
        await self._exited.wait()
        return self._returncode

    def kill(self) -> None:
        self.kill_count += 1
        if self._task is not None and self._returncode is None:
            self._task.cancel()

    def dispose(self) -> None:
        self.dispose_count += 1

    async def _run(self) -> None:
        try:
            behavior = self.behavior or _default_behavior
            code = await behavior(self)
        except asyncio.CancelledError:
            code = KILLED_EXIT_CODE
        # Process exit closes its ends of every pipe
        self._stdin.break_pipe()
        self._stdout.close()
        self._stderr.close()
        self._returncode = code
        self._exited.set()


async def _default_behavior(process: InMemoryProcess) -> int:
    process.received_input = await process.stdin.read()
    if process.stderr_text:
        process.stderr.write(process.stderr_text.encode("utf-8"))
        await process.stderr.drain()
    if process.stdout_bytes:
        process.stdout.write(process.stdout_bytes)
        await process.stdout.drain()
    return process.exit_code
