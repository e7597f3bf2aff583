"""Shared fixtures for compilation tests."""

import asyncio
import os
import stat
import sys

import pytest

from typstpipe.compilation import CompilerSettings, InMemoryProcess, TypstCompiler

TYPST_ENV_VARS = [
    "TYPST_EXECUTABLE_PATH",
    "TYPST_CONFIG_PATH",
    "TYPST_DEFAULT_TIMEOUT_MS",
    "TYPST_STDIN_BUFFER_SIZE",
    "TYPST_STDOUT_BUFFER_SIZE",
    "TYPST_DEFAULT_ARGUMENTS",
]

FAKE_TYPST_SOURCE = """#!{python}
import os
import sys
import time

mode = os.environ.get("FAKE_TYPST_MODE", "echo")

if mode == "echo":
    data = sys.stdin.buffer.read()
    sys.stderr.write("warning: echo mode\\n")
    sys.stdout.buffer.write(data)
elif mode == "stream":
    # Writes output while input is still arriving
    while True:
        chunk = sys.stdin.buffer.read1(65536)
        if not chunk:
            break
        sys.stdout.buffer.write(chunk)
        sys.stdout.buffer.flush()
elif mode == "fail":
    sys.stdin.buffer.read()
    sys.stderr.write("error: unknown symbol\\n")
    sys.exit(1)
elif mode == "args":
    sys.stdin.buffer.read()
    sys.stdout.write("\\n".join(sys.argv[1:] + [os.getcwd()]))
elif mode == "hang":
    time.sleep(60)
elif mode == "spawn":
    # Leaves a long-running child behind, like a compiler helper process
    import subprocess
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    with open(os.environ["FAKE_TYPST_CHILD_PID_FILE"], "w") as pid_file:
        pid_file.write(str(child.pid))
    time.sleep(60)
"""


class ProcessRecorder:
    """Process factory that builds InMemoryProcess doubles and keeps them for inspection."""

    def __init__(self, process_class=InMemoryProcess, **process_kwargs):
        self.process_class = process_class
        self.process_kwargs = process_kwargs
        self.processes = []

    def __call__(self, spec):
        process = self.process_class(spec, **self.process_kwargs)
        self.processes.append(process)
        return process

    @property
    def last(self):
        return self.processes[-1]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove TYPST_* variables so settings tests start from defaults."""
    for name in TYPST_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def recorder_factory():
    return ProcessRecorder


@pytest.fixture
def make_compiler():
    """Build a TypstCompiler wired to a ProcessRecorder."""

    def _make(recorder, **settings_kwargs):
        settings = CompilerSettings(**{"executable_path": "typst", **settings_kwargs})
        return TypstCompiler(settings, process_factory=recorder)

    return _make


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def fake_typst(tmp_path):
    """Executable script standing in for typst; behavior picked with FAKE_TYPST_MODE."""
    if sys.platform == "win32":
        pytest.skip("fake typst executable relies on a POSIX shebang")

    script = tmp_path / "bin" / "typst"
    script.parent.mkdir()
    script.write_text(FAKE_TYPST_SOURCE.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    assert os.access(script, os.X_OK)
    return script
