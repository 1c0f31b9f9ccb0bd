"""Entry point for running the MCP server.

Usage:
    python -m server              # Headless
    python -m server --headed     # Visible browser window
"""

from .main import main

if __name__ == "__main__":
    main()
