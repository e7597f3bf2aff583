"""
Compiler settings.

Settings are resolved once, from (lowest to highest priority):
    1. Built-in defaults
    2. The `typst:` section of a YAML config file (TYPST_CONFIG_PATH or argument)
    3. Environment variables (a .env file is honored via python-dotenv)

The resulting CompilerSettings value is passed explicitly to the compiler;
nothing in the compilation context reads the environment itself.

Environment variables:
    TYPST_EXECUTABLE_PATH      Path to the typst executable (default: `typst` on PATH)
    TYPST_DEFAULT_TIMEOUT_MS   Timeout applied when a call sets none (default: 30000, <=0 disables)
    TYPST_STDIN_BUFFER_SIZE    Chunk size for writing stdin (default: 81920)
    TYPST_STDOUT_BUFFER_SIZE   Chunk size for reading stdout (default: 81920)
    TYPST_DEFAULT_ARGUMENTS    Extra arguments for every call, shell-split
"""

import os
import shlex
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from omegaconf import OmegaConf

from typstpipe.compilation.exceptions import ConfigurationError

SECTION_NAME = "typst"
EXECUTABLE_PATH_ENV_VAR = "TYPST_EXECUTABLE_PATH"
CONFIG_PATH_ENV_VAR = "TYPST_CONFIG_PATH"

DEFAULT_EXECUTABLE = "typst"
DEFAULT_STREAM_BUFFER_SIZE = 81920
DEFAULT_TIMEOUT_MS = 30000
MAX_SENSIBLE_BUFFER_SIZE = 4 * 1024 * 1024

_ENV_FIELDS = {
    "TYPST_DEFAULT_TIMEOUT_MS": "default_timeout_ms",
    "TYPST_STDIN_BUFFER_SIZE": "stdin_buffer_size",
    "TYPST_STDOUT_BUFFER_SIZE": "stdout_buffer_size",
}


@dataclass(frozen=True)
class CompilerSettings:
    """
    Process-wide compiler settings.

    Attributes:
        executable_path: Path to the typst executable
        default_timeout_ms: Timeout for calls that set none; <=0 disables it
        stdin_buffer_size: Chunk size for copying the document into stdin
        stdout_buffer_size: Chunk size for draining stdout
        default_arguments: Extra arguments added to every compile call
    """

    executable_path: str = DEFAULT_EXECUTABLE
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    stdin_buffer_size: int = DEFAULT_STREAM_BUFFER_SIZE
    stdout_buffer_size: int = DEFAULT_STREAM_BUFFER_SIZE
    default_arguments: Tuple[str, ...] = field(default_factory=tuple)

    def timeout_seconds(self, timeout_ms: Optional[int] = None) -> Optional[float]:
        """Effective timeout in seconds for a call, or None for no timeout."""
        effective = timeout_ms if timeout_ms is not None and timeout_ms > 0 else self.default_timeout_ms
        if effective is None or effective <= 0:
            return None
        return effective / 1000


def load_settings(config_path: Optional[Path] = None, validate: bool = True) -> CompilerSettings:
    """
    Resolve compiler settings from defaults, YAML config and environment.

    Args:
        config_path: YAML file with a `typst:` section (default: TYPST_CONFIG_PATH, if set)
        validate: Raise if the settings are unusable (default: True)

    Returns:
        Resolved CompilerSettings

    Raises:
        ConfigurationError: If validate is True and validate_settings() reports problems,
            or if a value cannot be converted

    Example:
        # typst.yaml
        # typst:
        #   executable_path: /opt/typst/bin/typst
        #   default_timeout_ms: 60000
        settings = load_settings(Path("typst.yaml"))
    """
    load_dotenv()

    values: Dict[str, Any] = {}

    if config_path is None and os.getenv(CONFIG_PATH_ENV_VAR):
        config_path = Path(os.getenv(CONFIG_PATH_ENV_VAR))
    if config_path is not None:
        values.update(_load_yaml_section(Path(config_path)))

    executable = os.getenv(EXECUTABLE_PATH_ENV_VAR)
    if executable:
        values["executable_path"] = executable

    for env_var, field_name in _ENV_FIELDS.items():
        raw = os.getenv(env_var)
        if raw:
            values[field_name] = _to_int(raw, env_var)

    raw_arguments = os.getenv("TYPST_DEFAULT_ARGUMENTS")
    if raw_arguments:
        values["default_arguments"] = shlex.split(raw_arguments)

    settings = _build(values)

    if validate:
        problems = validate_settings(settings)
        if problems:
            raise ConfigurationError("Invalid Typst settings:\n  - " + "\n  - ".join(problems))

    return settings


def validate_settings(settings: CompilerSettings) -> List[str]:
    """
    Check settings for problems that would prevent any compilation.

    Args:
        settings: Settings to check

    Returns:
        List of problem descriptions (empty if settings are usable)
    """
    problems = []

    if not settings.executable_path or not settings.executable_path.strip():
        problems.append(
            "Typst executable path is not configured. "
            f"Set the '{EXECUTABLE_PATH_ENV_VAR}' environment variable "
            f"or '{SECTION_NAME}.executable_path' in the config file."
        )
    elif resolve_executable(settings.executable_path) is None:
        problems.append(
            f"Typst executable not found at configured path: {settings.executable_path}. "
            "Ensure the path is correct and the file is executable."
        )

    if settings.stdin_buffer_size <= 0:
        problems.append(f"stdin_buffer_size must be positive, got {settings.stdin_buffer_size}")
    if settings.stdout_buffer_size <= 0:
        problems.append(f"stdout_buffer_size must be positive, got {settings.stdout_buffer_size}")

    return problems


def resolve_executable(executable_path: str) -> Optional[str]:
    """Return the absolute path of an executable given as a path or a PATH lookup name."""
    candidate = Path(executable_path).expanduser()
    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate.resolve())
    return shutil.which(executable_path)


def optimal_buffer_size(stream: Any, default_size: int) -> int:
    """
    Choose a copy chunk size for a stream.

    Caps at 4 MiB; for seekable streams shorter than 1 MiB, shrinks to the stream
    length so small documents are copied in a single chunk.

    Args:
        stream: Source stream (file object or similar)
        default_size: Configured chunk size

    Returns:
        Chunk size in bytes
    """
    size = min(default_size, MAX_SENSIBLE_BUFFER_SIZE)

    length = _remaining_length(stream)
    if length is not None and 0 < length < 1024 * 1024:
        return min(size, length)
    return size


def _remaining_length(stream: Any) -> Optional[int]:
    seekable = getattr(stream, "seekable", None)
    if seekable is None or not callable(seekable):
        return None
    try:
        if not seekable():
            return None
        position = stream.tell()
        end = stream.seek(0, os.SEEK_END)
        stream.seek(position)
    except (OSError, ValueError):
        return None
    return end - position


def _load_yaml_section(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    loaded = OmegaConf.to_container(OmegaConf.load(config_path), resolve=True) or {}
    section = loaded.get(SECTION_NAME, {}) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{SECTION_NAME}' section in {config_path} must be a mapping")

    known = {f for f in CompilerSettings.__dataclass_fields__}
    unknown = set(section) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{SECTION_NAME}' section of {config_path}: {', '.join(sorted(unknown))}"
        )
    return dict(section)


def _build(values: Dict[str, Any]) -> CompilerSettings:
    settings = CompilerSettings()
    if "default_arguments" in values:
        arguments = values["default_arguments"]
        if isinstance(arguments, str):
            arguments = shlex.split(arguments)
        values["default_arguments"] = tuple(str(arg) for arg in arguments)
    for name in ("default_timeout_ms", "stdin_buffer_size", "stdout_buffer_size"):
        if name in values:
            values[name] = _to_int(values[name], name)
    return replace(settings, **values)


def _to_int(raw: Any, name: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
