"""Browser-driven control plane for timed stimulus sessions."""

__version__ = "0.1.0"
