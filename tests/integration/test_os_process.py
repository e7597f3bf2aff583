"""
Integration tests running the compiler against a real subprocess.

The executable is a small Python script standing in for typst (see
conftest.FAKE_TYPST_SOURCE); FAKE_TYPST_MODE picks what it does.
"""

import asyncio
import io
import os
import signal
import time

import pytest

from typstpipe.compilation import (
    CompileOptions,
    CompilerSettings,
    ErrorKind,
    OsProcessHandle,
    OutputFormat,
    TypstCompiler,
)


@pytest.fixture
def compiler(fake_typst):
    return TypstCompiler(CompilerSettings(executable_path=str(fake_typst)))


def assert_reaped(pid):
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def is_runnable(pid):
    """False once the process is gone or only a zombie waiting for its new parent to reap it."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat_path = f"/proc/{pid}/stat"
    if os.path.exists(stat_path):
        with open(stat_path) as stat_file:
            # Field 3, after the parenthesised command name
            state = stat_file.read().rsplit(")", 1)[1].split()[0]
        return state not in ("Z", "X")
    return True


def wait_until_not_runnable(pid, timeout=5.0):
    deadline = time.monotonic() + timeout
    while is_runnable(pid):
        if time.monotonic() > deadline:
            return False
        time.sleep(0.05)
    return True


@pytest.mark.integration
class TestRealProcess:
    def test_echo(self, run, compiler, monkeypatch):
        monkeypatch.setenv("FAKE_TYPST_MODE", "echo")

        outcome = run(compiler.compile(io.BytesIO(b"= Hello\nWorld"), CompileOptions()))

        assert outcome.success, outcome.description
        assert outcome.output_bytes == b"= Hello\nWorld"
        assert outcome.diagnostics == "warning: echo mode\n"
        assert outcome.exit_code == 0
        assert_reaped(outcome.pid)

    def test_large_document_streamed_both_ways(self, run, compiler, monkeypatch):
        """Output larger than the OS pipe buffer while input is still being written."""
        monkeypatch.setenv("FAKE_TYPST_MODE", "stream")
        document = os.urandom(1024 * 1024)

        outcome = run(asyncio.wait_for(compiler.compile(io.BytesIO(document), CompileOptions()), timeout=60))

        assert outcome.success, outcome.description
        assert outcome.output_bytes == document

    def test_compilation_failure(self, run, compiler, monkeypatch):
        monkeypatch.setenv("FAKE_TYPST_MODE", "fail")

        outcome = run(compiler.compile(b"#unknown", CompileOptions()))

        assert outcome.error_kind is ErrorKind.COMPILATION_ERROR
        assert outcome.exit_code == 1
        assert outcome.diagnostics == "error: unknown symbol\n"
        assert "exit code 1" in outcome.description

    def test_arguments_and_working_directory(self, run, compiler, monkeypatch, tmp_path):
        monkeypatch.setenv("FAKE_TYPST_MODE", "args")
        project = tmp_path / "project"
        project.mkdir()
        options = CompileOptions(
            format=OutputFormat.SVG,
            root_directory=str(project),
            inputs={"title": "Two words"},
        )

        outcome = run(compiler.compile(b"doc", options))

        assert outcome.success, outcome.description
        *arguments, cwd = outcome.output_bytes.decode().split("\n")
        assert arguments == [
            "compile", "--format", "svg", "--input", "title=Two words", "--root", str(project), "-", "-",
        ]
        assert os.path.realpath(cwd) == os.path.realpath(project)

    def test_timeout_kills_process(self, run, fake_typst, monkeypatch):
        monkeypatch.setenv("FAKE_TYPST_MODE", "hang")
        compiler = TypstCompiler(CompilerSettings(executable_path=str(fake_typst), default_timeout_ms=200))

        outcome = run(asyncio.wait_for(compiler.compile(b"doc", CompileOptions()), timeout=30))

        assert outcome.error_kind is ErrorKind.CANCELLED
        assert "timeout" in outcome.description
        assert_reaped(outcome.pid)

    def test_cancel_event_kills_process(self, run, compiler, monkeypatch):
        monkeypatch.setenv("FAKE_TYPST_MODE", "hang")

        async def scenario():
            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(0.3, cancel.set)
            return await compiler.compile(b"doc", CompileOptions(), cancel=cancel)

        outcome = run(asyncio.wait_for(scenario(), timeout=30))

        assert outcome.cancelled
        assert_reaped(outcome.pid)

    def test_cancel_kills_descendant_processes(self, run, compiler, monkeypatch, tmp_path):
        """Processes started by the compiler die with it; none is left running."""
        pid_file = tmp_path / "child.pid"
        monkeypatch.setenv("FAKE_TYPST_MODE", "spawn")
        monkeypatch.setenv("FAKE_TYPST_CHILD_PID_FILE", str(pid_file))

        async def scenario():
            cancel = asyncio.Event()

            async def cancel_once_child_started():
                while not pid_file.exists() or not pid_file.read_text().strip():
                    await asyncio.sleep(0.05)
                cancel.set()

            watcher = asyncio.ensure_future(cancel_once_child_started())
            try:
                return await compiler.compile(b"doc", CompileOptions(), cancel=cancel)
            finally:
                watcher.cancel()

        outcome = run(asyncio.wait_for(scenario(), timeout=30))
        child_pid = int(pid_file.read_text())

        try:
            assert outcome.cancelled
            assert_reaped(outcome.pid)
            assert wait_until_not_runnable(child_pid), f"child process {child_pid} survived cancellation"
        finally:
            try:
                os.kill(child_pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    @pytest.mark.parametrize("mode,timeout_ms", [("echo", None), ("hang", 200)])
    def test_handle_released(self, run, fake_typst, monkeypatch, mode, timeout_ms):
        """After compile() the process is reaped and stdin is closed, whether it finished or was killed."""
        monkeypatch.setenv("FAKE_TYPST_MODE", mode)
        handles = []

        def factory(spec):
            handle = OsProcessHandle(spec)
            handles.append(handle)
            return handle

        compiler = TypstCompiler(CompilerSettings(executable_path=str(fake_typst)), process_factory=factory)

        run(asyncio.wait_for(compiler.compile(b"doc", CompileOptions(timeout_ms=timeout_ms)), timeout=30))

        (handle,) = handles
        assert handle.returncode is not None
        assert handle.stdin.is_closing()
        if mode == "echo":
            # Both output pipes were drained to EOF
            assert handle.stdout.at_eof()
            assert handle.stderr.at_eof()
        handle.dispose()

    def test_missing_executable(self, run, tmp_path):
        compiler = TypstCompiler(CompilerSettings(executable_path=str(tmp_path / "no-such-typst")))

        outcome = run(compiler.compile(b"doc", CompileOptions()))

        assert outcome.error_kind is ErrorKind.PROCESS_START_ERROR
        assert outcome.pid is None

    def test_concurrent_compilations(self, run, compiler, monkeypatch):
        monkeypatch.setenv("FAKE_TYPST_MODE", "echo")
        documents = [f"= Document {i}".encode() * 1000 for i in range(6)]

        async def scenario():
            return await asyncio.gather(*(compiler.compile(doc, CompileOptions()) for doc in documents))

        outcomes = run(scenario())

        assert [outcome.output_bytes for outcome in outcomes] == documents
        assert len({outcome.pid for outcome in outcomes}) == len(documents)
