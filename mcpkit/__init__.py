"""Model Context Protocol server toolkit: JSON-RPC dispatch with stdio and Server-Sent Events transports."""

__version__ = "0.1.0"

__all__ = ["__version__"]