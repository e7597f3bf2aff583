"""
Compile options passed by callers for a single compilation.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple


class OutputFormat(Enum):
    """Output formats supported by `typst compile`. Values are the CLI tokens."""

    PDF = "pdf"
    SVG = "svg"
    PNG = "png"

    @property
    def media_type(self) -> str:
        """MIME type of the produced artifact."""
        return _MEDIA_TYPES[self]

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @classmethod
    def parse(cls, text: str) -> "OutputFormat":
        """
        Parse a format name case-insensitively.

        Raises:
            ValueError: If text names no known format
        """
        try:
            return cls(text.strip().lower())
        except ValueError:
            valid = ", ".join(fmt.value for fmt in cls)
            raise ValueError(f"Invalid format '{text}'. Must be one of: {valid}") from None


_MEDIA_TYPES = {
    OutputFormat.PDF: "application/pdf",
    OutputFormat.SVG: "image/svg+xml",
    OutputFormat.PNG: "image/png",
}


@dataclass(frozen=True)
class CompileOptions:
    """
    Options for one compilation.

    Attributes:
        format: Desired output format (default: PDF)
        root_directory: Project root, also used as the process working directory
        font_paths: Extra font directories, in order
        inputs: Values exposed to the document through `sys.inputs`
        timeout_ms: Per-call timeout in milliseconds (None uses the settings default)
    """

    format: OutputFormat = OutputFormat.PDF
    root_directory: Optional[str] = None
    font_paths: Tuple[str, ...] = ()
    inputs: Mapping[str, str] = field(default_factory=dict)
    timeout_ms: Optional[int] = None

    def __post_init__(self):
        # Freeze the collections so the options stay read-only after construction
        object.__setattr__(self, "font_paths", tuple(self.font_paths or ()))
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs or {})))

    @classmethod
    def from_pairs(
        cls,
        format: OutputFormat = OutputFormat.PDF,
        root_directory: Optional[str] = None,
        font_paths: Iterable[str] = (),
        input_pairs: Iterable[str] = (),
        timeout_ms: Optional[int] = None,
    ) -> "CompileOptions":
        """
        Build options from `key=value` strings, as typed on a command line.

        Raises:
            ValueError: If a pair has no '=' or an empty key
        """
        inputs = {}
        for pair in input_pairs:
            key, sep, value = pair.partition("=")
            if not sep or not key.strip():
                raise ValueError(f"Input must be KEY=VALUE, got: {pair!r}")
            inputs[key.strip()] = value

        return cls(
            format=format,
            root_directory=root_directory,
            font_paths=tuple(font_paths),
            inputs=inputs,
            timeout_ms=timeout_ms,
        )
