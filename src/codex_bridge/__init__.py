"""Codex Bridge: chat topics driving supervised codex agent runs."""

__all__ = ["__version__"]
__version__ = "0.1.0"
