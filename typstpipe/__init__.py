"""
typstpipe - Typst compilation over standard streams

Pipes Typst source documents through the typst executable and returns the
compiled artifact (PDF, SVG or PNG) together with the compiler's diagnostics.

Architecture:
- Compilation Context: argument building, process lifetime, stream copying, outcomes
- Utils: logging setup
"""

__version__ = "0.1.0"
