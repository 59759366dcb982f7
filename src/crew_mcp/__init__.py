"""Crew MCP: worker orchestration and planning supervision."""

__version__ = "0.1.0"

__all__ = ["__version__"]
