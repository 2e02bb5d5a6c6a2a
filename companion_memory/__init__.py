"""
Companion Memory: long-term personal memory for a conversational companion.

`MemorySession` is the entry point; `mcp_interface` serves it as MCP tools.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
