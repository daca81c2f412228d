"""HTTP reverse/forward proxy gateway."""

__version__ = "1.0.0"
