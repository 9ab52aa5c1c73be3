"""Command-line interface for session-broker.

Provides commands for fetching tokens, inspecting and cleaning cached
sessions, and running a test suite with pre-fetched tokens.
"""

from .main import cli, main

__all__ = ["cli", "main"]
