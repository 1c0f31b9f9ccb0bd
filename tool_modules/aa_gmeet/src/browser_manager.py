"""
Browser runtime for Meet sessions.

Each session gets its own persistent Chromium context with an instance
profile directory, so concurrent sessions never fight over profile locks and
a hung instance can be found (and killed) by its profile path.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tool_modules.common import PROJECT_ROOT

__project_root__ = PROJECT_ROOT

from tool_modules.aa_gmeet.src.browser_control import PlaywrightPageControl
from tool_modules.aa_gmeet.src.config import GmeetConfig
from tool_modules.aa_gmeet.src.errors import BrowserError
from tool_modules.aa_gmeet.src.meet_page import MeetPage

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

logger = logging.getLogger(__name__)

CHROME_FLAGS = [
    "--use-fake-device-for-media-stream",
    "--use-fake-ui-for-media-stream",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=WebRtcHideLocalIpsWithMdns",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-infobars",
    "--autoplay-policy=no-user-gesture-required",
]

MEET_ORIGIN = "https://meet.google.com"

# Login state copied from the main profile into each instance profile
PROFILE_FILES = [
    "Default/Cookies",
    "Default/Login Data",
    "Default/Web Data",
]


@dataclass
class BrowserSession:
    """The browser resources owned by one session."""

    session_id: str
    context: "BrowserContext"
    page: "Page"
    profile_dir: Path
    playwright: Any = None
    control: PlaywrightPageControl = field(init=False)
    meet_page: MeetPage = field(init=False)

    def __post_init__(self):
        self.control = PlaywrightPageControl(self.page, self.context)
        self.meet_page = MeetPage(self.page)

    async def close(self, timeout: float = 10.0) -> None:
        """Close the context and stop Playwright.

        Raises whatever the context close raised (including a timeout) so the
        caller can fall back to force_kill().
        """
        try:
            await asyncio.wait_for(self.context.close(), timeout=timeout)
        finally:
            if self.playwright is not None:
                playwright, self.playwright = self.playwright, None
                try:
                    await asyncio.wait_for(playwright.stop(), timeout=5.0)
                except Exception as e:
                    logger.warning(f"[{self.session_id}] Error stopping playwright: {e}")

    async def force_kill(self) -> bool:
        """Kill every browser process launched with this instance's profile."""
        import psutil

        logger.warning(f"[{self.session_id}] Force killing browser instance...")
        killed = False
        marker = str(self.profile_dir)
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
                if any(marker in str(arg) for arg in cmdline):
                    proc.kill()
                    logger.info(
                        f"[{self.session_id}] Killed process {proc.info['pid']} by profile match"
                    )
                    killed = True
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return killed


def _prepare_instance_profile(base_dir: Path, session_id: str) -> Path:
    instance_dir = base_dir / f"instance-{session_id}"
    (instance_dir / "Default").mkdir(parents=True, exist_ok=True)

    for lock_file in ["SingletonCookie", "SingletonLock", "SingletonSocket"]:
        lock_path = instance_dir / lock_file
        if lock_path.exists() or lock_path.is_symlink():
            try:
                lock_path.unlink()
                logger.info(f"Removed stale lock file: {lock_file}")
            except OSError as e:
                logger.warning(f"Could not remove lock file {lock_file}: {e}")

    for rel in PROFILE_FILES:
        src = base_dir / rel
        dst = instance_dir / rel
        if src.exists() and not dst.exists():
            try:
                shutil.copy2(src, dst)
                logger.debug(f"Copied {rel} to instance profile")
            except OSError as e:
                logger.warning(f"Failed to copy {rel}: {e}")
    return instance_dir


async def launch_browser_session(session_id: str, config: GmeetConfig) -> BrowserSession:
    """Launch a persistent Chromium context for one session.

    The page is not navigated; install init scripts first, then join.

    Raises:
        BrowserError: If Playwright is missing or Chromium fails to start.
    """
    try:
        from playwright.async_api import async_playwright
    except ImportError as e:
        raise BrowserError(
            f"Playwright not installed: {e}. Run: pip install playwright && playwright install chromium"
        ) from e

    base_dir = Path(config.chrome_user_data_dir).expanduser()
    base_dir.mkdir(parents=True, exist_ok=True)
    profile_dir = _prepare_instance_profile(base_dir, session_id)

    logger.info(
        f"[{session_id}] Launching persistent browser context "
        f"(profile={profile_dir}, headless={config.headless})"
    )

    playwright = await async_playwright().start()
    try:
        context = await playwright.chromium.launch_persistent_context(
            user_data_dir=str(profile_dir),
            headless=config.headless,
            executable_path=config.chrome_executable_path or None,
            args=CHROME_FLAGS,
            ignore_default_args=["--enable-automation"],
            permissions=["microphone", "camera"],
            bypass_csp=True,
            viewport={"width": 1280, "height": 720},
        )
        await context.grant_permissions(["microphone", "camera"], origin=MEET_ORIGIN)
        page = context.pages[0] if context.pages else await context.new_page()
    except Exception as e:
        try:
            await playwright.stop()
        except Exception as stop_err:
            logger.debug(f"Suppressed error stopping playwright after launch failure: {stop_err}")
        raise BrowserError(f"Failed to launch browser: {e}") from e

    return BrowserSession(
        session_id=session_id,
        context=context,
        page=page,
        profile_dir=profile_dir,
        playwright=playwright,
    )
