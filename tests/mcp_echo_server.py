"""Small stdio MCP server used by the client tests."""
import os
import threading

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("echo")


@mcp.tool()
def echo(text: str) -> str:
    """Repeat the text back."""
    return f"echo: {text}"


@mcp.tool()
def shutdown() -> str:
    """Exit the process shortly after answering."""
    threading.Timer(0.2, os._exit, args=(3,)).start()
    return "bye"


@mcp.resource("docs://readme")
def readme() -> str:
    return "read me"


if __name__ == "__main__":
    mcp.run()
