"""CMDFORGE — natural language in, confirmed Python execution out."""

from cmdforge.identity import __version__

__all__ = ["__version__"]
