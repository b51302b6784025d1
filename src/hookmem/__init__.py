"""Background session processing for coding-assistant hooks."""

__version__ = "0.1.0"

__all__ = ["__version__"]
