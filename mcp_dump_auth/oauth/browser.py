"""Opening URLs in the user's default browser."""

import logging
import shutil
import subprocess
import sys
from typing import Protocol

from mcp_dump_auth.utils.errors import BrowserLaunchError

logger = logging.getLogger(__name__)

# Launchers tried in order on Linux and other Unix systems
LINUX_BROWSERS = ("xdg-open", "x-www-browser", "www-browser", "firefox", "chrome", "chromium")


class BrowserLauncher(Protocol):
    """Anything that can open a URL for the user."""

    def open(self, url: str) -> None: ...


class SystemBrowser:
    """Opens URLs with the platform's browser launcher."""

    def __init__(self, platform: str | None = None):
        self.platform = platform or sys.platform

    def command(self, url: str) -> list[str]:
        """Build the launcher command for a URL.

        Raises:
            BrowserLaunchError: If no launcher is available
        """
        if self.platform == "darwin":
            return ["open", url]
        if self.platform == "win32":
            return ["cmd", "/c", "start", "", url]

        for launcher in LINUX_BROWSERS:
            if shutil.which(launcher):
                return [launcher, url]
        raise BrowserLaunchError(f"no browser launcher found (tried {', '.join(LINUX_BROWSERS)})")

    def open(self, url: str) -> None:
        """Launch the browser without waiting for it.

        Raises:
            BrowserLaunchError: If the launcher cannot be started
        """
        cmd = self.command(url)
        try:
            subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=self.platform != "win32",
            )
        except OSError as e:
            raise BrowserLaunchError(f"failed to launch {cmd[0]}: {e}") from e
        logger.debug(f"Launched browser with {cmd[0]}")


def open_browser(url: str) -> None:
    """Open a URL with the system browser."""
    SystemBrowser().open(url)
