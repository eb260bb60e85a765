"""File-based coordination substrate for multi-process iterative loops."""

__version__ = "0.1.0"
