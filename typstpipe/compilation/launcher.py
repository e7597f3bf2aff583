"""
Starts the compiler process for one compilation.
"""

import asyncio
from typing import Optional, Sequence

from typstpipe.compilation.arguments import build_arguments, working_directory
from typstpipe.compilation.exceptions import ProcessStartError
from typstpipe.compilation.logger import (
    _log_debug,
    log_creating_process,
    log_process_start_failed,
    log_process_started,
)
from typstpipe.compilation.options import CompileOptions
from typstpipe.compilation.process import OsProcessHandle, ProcessFactory, ProcessHandle, ProcessSpec


class ProcessLauncher:
    """
    Creates and starts one process handle per compilation.

    Args:
        executable_path: Compiler executable (already resolved by settings loading)
        process_factory: Builds a handle from a ProcessSpec (default: OsProcessHandle)
        default_arguments: Extra arguments placed after `--format` on every call
    """

    def __init__(
        self,
        executable_path: str,
        process_factory: Optional[ProcessFactory] = None,
        default_arguments: Sequence[str] = (),
    ):
        self.executable_path = executable_path
        self.process_factory = process_factory or OsProcessHandle
        self.default_arguments = tuple(default_arguments)

    def build_spec(self, options: CompileOptions) -> ProcessSpec:
        return ProcessSpec(
            executable=self.executable_path,
            arguments=tuple(build_arguments(options, self.default_arguments)),
            cwd=working_directory(options),
        )

    async def launch(self, options: CompileOptions) -> ProcessHandle:
        """
        Create and start the process.

        A handle whose start fails is disposed before the error is raised and is
        never returned. asyncio.CancelledError propagates unchanged.

        Returns:
            Started process handle, owned by the caller

        Raises:
            ProcessStartError: If the process could not be created or started
        """
        spec = self.build_spec(options)
        log_creating_process(spec.executable, spec.arguments, spec.cwd)

        try:
            handle = self.process_factory(spec)
        except Exception as e:
            log_process_start_failed(e)
            raise ProcessStartError(f"Failed to create Typst process: {e}", original_error=e) from e

        _log_debug("Starting process...")
        try:
            await handle.start()
        except asyncio.CancelledError:
            handle.kill()
            handle.dispose()
            raise
        except Exception as e:
            handle.dispose()
            log_process_start_failed(e)
            raise ProcessStartError(f"Failed to start Typst process: {e}", original_error=e) from e

        log_process_started(handle.pid)
        return handle
