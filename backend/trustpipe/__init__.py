"""Trust and verification pipeline worker."""

__version__ = "0.1.0"
