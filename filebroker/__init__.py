"""File-based request/response broker."""

__version__ = "0.1.0"
