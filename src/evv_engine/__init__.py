"""EVV capture, compliance and sync engine."""

__version__ = "0.1.0"
