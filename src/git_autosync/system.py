import logging
import subprocess
import sys

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class SystemStrategy:
    """Base class defining the interface for desktop notifications."""

    def notify(self, title: str, message: str) -> None:
        """Sends a desktop notification.

        Args:
            title (str): The notification title.
            message (str): The notification body text.
        """
        pass


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using AppleScript."""
        # Sanitize quotes to prevent AppleScript syntax errors.
        clean_msg = message.replace('"', "'")
        clean_title = title.replace('"', "'")
        script = (
            f'display notification "{clean_msg}" with title "{clean_title}" '
            f'subtitle "{APP_NAME}"'
        )
        subprocess.run(
            ["osascript", "-e", script], stderr=subprocess.DEVNULL, timeout=10
        )


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using `notify-send`."""
        try:
            subprocess.run(
                ["notify-send", "--app-name", APP_NAME, title, message],
                stderr=subprocess.DEVNULL,
                timeout=10,
            )
        except FileNotFoundError:
            logger.debug("notify-send not installed; notification dropped.")


def get_system() -> SystemStrategy:
    """Factory function to retrieve the platform-specific system strategy.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy, or the base
        SystemStrategy depending on the operating system.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    else:
        return SystemStrategy()


class Notifier:
    """Fire-and-forget notification sink.

    Failures of the underlying strategy are logged and never propagate to
    the caller.
    """

    def __init__(self, strategy: SystemStrategy | None = None):
        self.strategy = strategy if strategy is not None else get_system()

    def notify(self, title: str, body: str) -> None:
        try:
            self.strategy.notify(title, body)
        except Exception as e:
            logger.warning(f"NOTIFY FAILED: {title}: {e}")
