"""Desktop notifications for engine signals.

Notifications are best effort: the platform notifier runs as a subprocess
(notify-send, osascript or a PowerShell toast) and any failure is logged
at debug level and reported as ``False``.

This module provides:
- send_notification: Show one notification on the current platform
- notify_*: Notifications for the engine signals the user must know about
- attach_notifications: Subscribe the notifiers to an EngineSignals
"""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devicesync.client.signals import EngineSignals

logger = logging.getLogger(__name__)

APP_NAME = "DeviceSync"

_TOAST_SCRIPT = """
[Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, ContentType = WindowsRuntime] | Out-Null
$xml = [Windows.UI.Notifications.ToastNotificationManager]::GetTemplateContent(
    [Windows.UI.Notifications.ToastTemplateType]::ToastText02)
$lines = $xml.GetElementsByTagName("text")
$lines.Item(0).AppendChild($xml.CreateTextNode('{title}')) | Out-Null
$lines.Item(1).AppendChild($xml.CreateTextNode('{message}')) | Out-Null
[Windows.UI.Notifications.ToastNotificationManager]::CreateToastNotifier('{app}').Show(
    [Windows.UI.Notifications.ToastNotification]::new($xml))
"""


class NotificationType(Enum):
    """Severity of a notification."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def urgency(self) -> str:
        """notify-send urgency level."""
        return "critical" if self is NotificationType.ERROR else "normal"


@dataclass
class Notification:
    """A notification to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


def _linux_command(notification: Notification) -> list[str]:
    return [
        "notify-send",
        "--urgency", notification.type.urgency,
        "--app-name", APP_NAME,
        notification.title,
        notification.message,
    ]


def _macos_command(notification: Notification) -> list[str]:
    def quote(text: str) -> str:
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'

    script = f"display notification {quote(notification.message)} with title {quote(notification.title)}"
    return ["osascript", "-e", script]


def _windows_command(notification: Notification) -> list[str]:
    def quote(text: str) -> str:
        return text.replace("'", "''")

    script = _TOAST_SCRIPT.format(
        title=quote(notification.title),
        message=quote(notification.message),
        app=APP_NAME,
    )
    return ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", script]


_COMMANDS = {
    "Linux": _linux_command,
    "Darwin": _macos_command,
    "Windows": _windows_command,
}


def send_notification(notification: Notification) -> bool:
    """Show a notification with the platform's native notifier.

    Args:
        notification: The notification to show.

    Returns:
        True if the notifier ran successfully.
    """
    system = platform.system()
    build_command = _COMMANDS.get(system)
    if build_command is None:
        logger.warning("Notifications not supported on %s", system)
        return False

    command = build_command(notification)
    try:
        subprocess.run(
            command,
            capture_output=True,
            check=True,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
    except FileNotFoundError:
        logger.debug("%s not found, notification skipped", command[0])
        return False
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("%s notification failed: %s", system, e)
        return False
    return True


def notify_session_expired(recoverable: bool) -> bool:
    """Ask the user to pair again once recovery has given up."""
    if recoverable:
        return False
    return send_notification(
        Notification(
            title=f"{APP_NAME} - Pairing Required",
            message="The session could not be renewed. Run 'devicesync pair' with a new code.",
            type=NotificationType.ERROR,
        )
    )


def notify_connection_failed(attempts: int) -> bool:
    return send_notification(
        Notification(
            title=f"{APP_NAME} - Offline",
            message=f"Could not reach the server after {attempts} attempts.",
            type=NotificationType.WARNING,
        )
    )


def notify_session_recovered() -> bool:
    return send_notification(
        Notification(
            title=f"{APP_NAME} - Session Renewed",
            message="Sync resumed with a renewed session.",
        )
    )


def attach_notifications(signals: EngineSignals) -> None:
    """Subscribe the desktop notifiers to the engine signals."""
    signals.session_expired.connect(notify_session_expired)
    signals.connection_failed.connect(notify_connection_failed)
    signals.session_recovered.connect(notify_session_recovered)
