"""mediaflow - background media processing with live progress notifications."""

__version__ = "1.0.0"
