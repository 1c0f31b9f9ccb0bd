"""MCP Server - Main Entry Point.

Serves the Google Meet voice bridge tools over stdio.

Usage:
    python -m server                 # Headless Chromium
    python -m server --headed        # Show the browser window
    python -m server --verbose       # Debug logging
"""

import argparse
import asyncio
import logging
import signal
import sys

from fastmcp import FastMCP

from tool_modules.aa_gmeet.src.config import get_config, update_config
from tool_modules.aa_gmeet.src.session import SessionManager, get_session_manager


def setup_logging(level: str = "info") -> logging.Logger:
    """Configure logging for MCP server.

    Logs to stderr since stdout is reserved for JSON-RPC.
    Format excludes timestamp since journald adds its own.
    """
    stream_handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(name)s - %(levelname)s - %(message)s",
        handlers=[stream_handler],
        force=True,
    )
    return logging.getLogger(__name__)


def create_mcp_server(name: str = "gmeet") -> FastMCP:
    """Create an MCP server with the Meet voice bridge tools registered."""
    logger = logging.getLogger(__name__)
    server = FastMCP(name)

    from tool_modules.aa_gmeet.src.tools_basic import register_tools

    count = register_tools(server)
    logger.info(f"Server '{name}' ready with {count} tools")
    return server


async def run_mcp_server(server: FastMCP, manager: SessionManager | None = None):
    """Run the MCP server in stdio mode until it exits or a signal arrives.

    On SIGINT/SIGTERM, and on any other exit, every open session is closed
    before returning so no browser instance outlives the process.
    """
    logger = logging.getLogger(__name__)
    manager = manager or get_session_manager()
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler(sig):
        logger.info(f"Received signal {sig.name}")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler, sig)

    logger.info("Starting MCP server (stdio mode)...")
    serve_task = asyncio.create_task(server.run_stdio_async())
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        done, _ = await asyncio.wait(
            {serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if serve_task in done:
            serve_task.result()
    finally:
        for task in (serve_task, stop_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(serve_task, stop_task, return_exceptions=True)

        closed = await manager.close_all()
        if closed:
            logger.info(f"Closed {closed} session(s) on shutdown")

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Google Meet voice bridge MCP server")
    parser.add_argument("--name", default="gmeet", help="Server name (default: gmeet)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Run Chromium with a visible window (overrides GMEET_HEADLESS)",
    )
    args = parser.parse_args()

    config = get_config()
    if args.headed:
        update_config(headless=False)
    logger = setup_logging("debug" if args.verbose else config.log_level)

    try:
        server = create_mcp_server(name=args.name)
        asyncio.run(run_mcp_server(server))
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
