"""
Google Meet page controls.

The thin DOM layer the session needs: navigate and join, leave, and make
sure the microphone control is on before speaking. Selectors follow the
current Meet UI and may need updates as it changes.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from tool_modules.aa_gmeet.src.errors import GmeetError

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)


class MeetPageError(GmeetError):
    """Raised when a Meet UI control cannot be found or used."""

    code = "MEET_ERROR"


class MeetPage:
    """Drives the Meet UI for one page."""

    SELECTORS = {
        "join_button_texts": ["Join now", "Join anyway", "Switch here", "Ask to join"],
        "got_it_button": 'button:has-text("Got it")',
        "dismiss_texts": ["Not now", "Got it", "Dismiss", "Skip", "Maybe later"],
        "camera_off_button": '[aria-label*="Turn off camera"]',
        "mic_on_button": '[aria-label*="Turn on microphone"]',
        "mic_off_button": '[aria-label*="Turn off microphone"]',
        "leave_button": '[aria-label*="Leave"], [data-tooltip*="Leave"]',
    }

    def __init__(
        self,
        page: "Page",
        join_attempts: int = 5,
        join_retry_delay: float = 2.0,
        settle_delay: float = 5.0,
    ):
        self.page = page
        self.join_attempts = join_attempts
        self.join_retry_delay = join_retry_delay
        self.settle_delay = settle_delay
        self.joined = False

    async def join(self, meet_url: str) -> None:
        """Navigate to the meeting and click through to the call.

        Raises:
            MeetPageError: If no join button appeared after all attempts.
        """
        logger.info(f"[JOIN] Navigating to meeting: {meet_url}")
        await self.page.goto(meet_url, wait_until="domcontentloaded", timeout=30000)
        await self.dismiss_dialogs()
        await asyncio.sleep(self.settle_delay / 2)

        # Camera off on the pre-join screen; the bot only speaks
        await self._click_if_present(self.SELECTORS["camera_off_button"])

        for attempt in range(1, self.join_attempts + 1):
            if await self._click_join_button():
                break
            logger.warning(
                f"[JOIN] Join button not found (attempt {attempt}/{self.join_attempts})"
            )
            if attempt < self.join_attempts:
                await asyncio.sleep(self.join_retry_delay)
        else:
            raise MeetPageError(f"Could not find join button on {meet_url}")

        # Let the call UI load and WebRTC negotiate
        await asyncio.sleep(self.settle_delay)
        await self.dismiss_dialogs()
        self.joined = True
        logger.info("[JOIN] Successfully joined meeting")

    async def _click_join_button(self) -> bool:
        for text in self.SELECTORS["join_button_texts"]:
            for selector in (
                f'button:has-text("{text}")',
                f'div[role="button"]:has-text("{text}")',
            ):
                locator = self.page.locator(selector)
                if await locator.count() > 0:
                    await locator.first.click()
                    logger.info(f"[JOIN] Clicked '{text}'")
                    return True
        return False

    async def dismiss_dialogs(self) -> None:
        """Dismiss info popups ("Got it", "Not now", ...). Never raises."""
        for text in self.SELECTORS["dismiss_texts"]:
            try:
                button = self.page.locator(
                    f'[role="dialog"] button:has-text("{text}"), '
                    f'[role="alertdialog"] button:has-text("{text}")'
                )
                if await button.count() > 0:
                    await button.first.click(timeout=1000)
                    logger.info(f"Dismissed dialog popup by clicking '{text}'")
                    await asyncio.sleep(0.3)
            except Exception as e:
                logger.debug(f"Suppressed error dismissing '{text}' dialog: {e}")

    async def _click_if_present(self, selector: str) -> bool:
        try:
            locator = self.page.locator(selector)
            if await locator.count() > 0:
                await locator.first.click(timeout=2000)
                return True
        except Exception as e:
            logger.debug(f"Suppressed error clicking {selector}: {e}")
        return False

    async def ensure_microphone_on(self) -> bool:
        """Unmute the Meet microphone control if it is muted.

        Returns:
            True if the control was clicked.
        """
        clicked = await self._click_if_present(self.SELECTORS["mic_on_button"])
        if clicked:
            logger.info("Microphone unmuted")
        return clicked

    async def microphone_state(self) -> str:
        """Read the Meet microphone control without touching it.

        Returns:
            "on", "off", or "unknown" if neither control is visible.
        """
        try:
            if await self.page.locator(self.SELECTORS["mic_off_button"]).count() > 0:
                return "on"
            if await self.page.locator(self.SELECTORS["mic_on_button"]).count() > 0:
                return "off"
        except Exception as e:
            logger.debug(f"Could not read microphone control: {e}")
        return "unknown"

    async def leave(self) -> None:
        """Click the leave-call control.

        Raises:
            MeetPageError: If the control is not there.
        """
        leave_button = await self.page.wait_for_selector(
            self.SELECTORS["leave_button"], timeout=5000
        )
        if not leave_button:
            raise MeetPageError("Leave button not found")
        await leave_button.click()
        self.joined = False
        logger.info("Left meeting")
