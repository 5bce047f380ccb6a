"""
Descope MCP authorization gateway.
"""
__version__ = "1.0.1"
