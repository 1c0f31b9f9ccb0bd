"""
Browser-control boundary.

The takeover and playback code never touches Playwright directly. Everything
goes through three primitives:

- evaluate(script, arg): run a JS function in the page and return its result
- add_init_script(script): run a script in every document before page code
- wait_for(ms): let the page settle

``add_init_script`` is how the RTCPeerConnection construction interceptor is
installed; browsers have no native hook for observing object creation, so this
is a required capability of any implementation.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

logger = logging.getLogger(__name__)


@runtime_checkable
class BrowserControl(Protocol):
    """Protocol for the page-evaluation channel used by the audio bridge."""

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Evaluate a JS function expression in the page."""
        ...

    async def add_init_script(self, script: str) -> None:
        """Register a script to run before any page script on every load."""
        ...

    async def wait_for(self, ms: float) -> None:
        """Wait for ``ms`` milliseconds."""
        ...


class PlaywrightPageControl:
    """BrowserControl backed by a Playwright page.

    Init scripts are registered on the browser context when one is given so
    that they also apply to pages Meet opens later.
    """

    def __init__(self, page: "Page", context: Optional["BrowserContext"] = None):
        self.page = page
        self.context = context

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self.page.evaluate(script, arg)

    async def add_init_script(self, script: str) -> None:
        target = self.context if self.context is not None else self.page
        await target.add_init_script(script)

    async def wait_for(self, ms: float) -> None:
        await self.page.wait_for_timeout(ms)
