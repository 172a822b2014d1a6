"""Watch-time inference and lifetime statistics worker."""

__version__ = "0.1.0"
