"""Shared paths for tool modules.

Importing this package puts the project root on sys.path so tool modules can
import from ``server`` when loaded outside an installed environment:

    from tool_modules.common import PROJECT_ROOT

    __project_root__ = PROJECT_ROOT
"""

import os
import sys
from pathlib import Path

# tool_modules/common/__init__.py -> project root
PROJECT_ROOT = Path(__file__).parent.parent.parent


def setup_path() -> None:
    """Add the project root to sys.path once."""
    root = str(PROJECT_ROOT)
    if root not in sys.path:
        sys.path.insert(0, root)


def get_project_root() -> Path:
    return PROJECT_ROOT


def get_gmeet_home() -> Path:
    """Return the per-user gmeet directory (config file, browser profiles).

    ``GMEET_HOME`` overrides the default of ``~/.gmeet-mcp``.
    """
    val = os.environ.get("GMEET_HOME")
    if val:
        return Path(os.path.expanduser(val))
    return Path.home() / ".gmeet-mcp"


setup_path()
