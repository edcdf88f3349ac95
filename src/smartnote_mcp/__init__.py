"""
SmartNote MCP - AI-assisted note organization and semantic search as an MCP server.
This package implements a Model Context Protocol (MCP) server for a personal notes
store with folders and tags. Notes are embedded lazily into a timestamp-ordered
cache, which powers blended semantic/lexical search and folder/tag suggestions
for newly captured content.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("smartnote-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
