"""Self-updating application supervisor: poll a branch, build releases, keep one child running."""

__version__ = "0.3.0"

__all__ = ["__version__"]
