"""
Shared utilities for typstpipe.

Common functionality used across contexts:
- Logger setup with provenance
"""
