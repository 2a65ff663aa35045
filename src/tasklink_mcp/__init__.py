"""TaskLink MCP: correlate agent activity with planned tasks and stream updates."""

__version__ = "0.1.0"

__all__ = ["__version__"]
