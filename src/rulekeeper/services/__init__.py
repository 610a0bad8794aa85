"""Outer surfaces: MCP tool server."""
