"""agentweb: streaming agent chat service with sandboxed tools and MCP providers."""

__version__ = "0.3.0"
