"""devsuite — event-sourced work session tracking."""

__version__ = "0.1.0"
