"""
Compilation context logger.

Provides logging interface for the compilation context with automatic [typst] prefix.
Compilation modules should import from this module, not from loguru directly.
Process ids are bound as structured context (`pid`) on every event that has one.
"""

from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from typstpipe.utils.logger import setup_logger as _setup_logger

CONTEXT_PREFIX = "[typst]"


def setup_compilation_logger(
    log_dir: Optional[Path] = None, executable_path: Optional[str] = None, level: str = "INFO"
) -> Optional[Path]:
    """
    Setup logger for the compilation context.

    Args:
        log_dir: Directory for this session's log file (optional)
        executable_path: Compiler executable, recorded in the provenance header
        level: Console level

    Returns:
        Path to log file, or None
    """
    return _setup_logger(
        context_name="typst",
        log_dir=log_dir,
        extra_provenance={"Typst executable": executable_path},
        level=level,
    )


# Wrapper functions with automatic [typst] prefix


def _log_info(message: str, pid: Optional[int] = None) -> None:
    logger.bind(pid=pid).info(f"{CONTEXT_PREFIX} {message}")


def _log_success(message: str, pid: Optional[int] = None) -> None:
    logger.bind(pid=pid).success(f"{CONTEXT_PREFIX} {message}")


def _log_error(message: str, pid: Optional[int] = None) -> None:
    logger.bind(pid=pid).error(f"{CONTEXT_PREFIX} {message}")


def _log_warning(message: str, pid: Optional[int] = None) -> None:
    logger.bind(pid=pid).warning(f"{CONTEXT_PREFIX} {message}")


def _log_debug(message: str, pid: Optional[int] = None) -> None:
    logger.bind(pid=pid).debug(f"{CONTEXT_PREFIX} {message}")


# Compile lifecycle events


def log_compilation_start(format_name: str) -> None:
    _log_info(f"Starting compilation. Format={format_name}")


def log_creating_process(executable: str, arguments: Sequence[str], cwd: str) -> None:
    _log_debug(f"Creating process. Executable='{executable}', Args={list(arguments)}, Cwd='{cwd}'")


def log_process_started(pid: int) -> None:
    _log_debug(f"Process started (PID: {pid}). Beginning stream capture.", pid=pid)


def log_process_start_failed(error: BaseException) -> None:
    _log_error(f"Failed to start process: {error}")


def log_stdin_copy_start(pid: int) -> None:
    _log_debug(f"Starting copy from input stream to stdin (PID: {pid}).", pid=pid)


def log_stdin_copy_finished(pid: int, bytes_written: int) -> None:
    _log_debug(f"Finished writing {bytes_written} bytes to stdin (PID: {pid}). Stdin closed.", pid=pid)


def log_stdin_copy_cancelled(pid: int) -> None:
    _log_warning(f"Writing to stdin (PID: {pid}) was cancelled.", pid=pid)


def log_stdin_error(pid: int, error: BaseException) -> None:
    _log_error(f"Error during stdin write (PID: {pid}): {error!r}", pid=pid)


def log_stdout_read_complete(pid: int, bytes_read: int) -> None:
    _log_debug(f"Read {bytes_read} bytes from stdout into memory (PID: {pid}).", pid=pid)


def log_stdout_read_error(pid: int, error: BaseException) -> None:
    _log_error(f"Error reading stdout (PID: {pid}): {error!r}", pid=pid)


def log_process_exited(pid: int, exit_code: int) -> None:
    _log_debug(f"Process exited (PID: {pid}) with code {exit_code}.", pid=pid)


def log_compilation_succeeded(pid: int, output_size: int, elapsed_time: float) -> None:
    _log_success(f"Compilation succeeded (PID: {pid}): {output_size} bytes ({elapsed_time:.2f}s)", pid=pid)


def log_compilation_failed(kind: str, description: str, diagnostics: str, pid: Optional[int] = None) -> None:
    _log_error(f"Compilation failed [{kind}]: {description}", pid=pid)
    # Raw output keeps multi-line compiler diagnostics readable
    if diagnostics:
        logger.opt(raw=True).debug(f"\n{'=' * 80}\nTYPST STDERR:\n{'=' * 80}\n{diagnostics}\n")


def log_compilation_cancelled(pid: Optional[int], reason: str) -> None:
    _log_warning(f"Compilation was cancelled (PID: {pid if pid is not None else -1}): {reason}.", pid=pid)


def log_killing_process(pid: int, reason: str) -> None:
    _log_warning(f"Killing process (PID: {pid}) due to {reason}.", pid=pid)


def log_kill_failed(pid: int, error: BaseException) -> None:
    _log_warning(f"Failed to kill process (PID: {pid}). It might have exited already: {error!r}", pid=pid)


def log_state(state: str, pid: Optional[int] = None) -> None:
    _log_debug(f"State -> {state}", pid=pid)
