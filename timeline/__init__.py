"""Timeline: conflict-free working-tree snapshots on top of git."""

__version__ = "0.3.0"

__all__ = ["__version__"]
