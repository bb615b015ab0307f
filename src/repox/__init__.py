"""repox: multi-repository workspace manager."""

__version__ = "0.1.0"
