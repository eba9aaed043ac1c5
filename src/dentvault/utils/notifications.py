"""Desktop Notification Manager for DentVault"""

import logging
import shutil
import subprocess

MAX_ERROR_LENGTH = 100


class NotificationManager:
    """Manages desktop notifications for backup and restore outcomes"""

    def __init__(self):
        self.logger = logging.getLogger("DentVault.Notifications")
        self.enabled = self._check_notification_support()

    def _check_notification_support(self) -> bool:
        """Check if notify-send is available"""
        if shutil.which("notify-send"):
            self.logger.debug("Desktop notifications enabled (notify-send)")
            return True

        self.logger.debug("Desktop notifications not available")
        return False

    def send(self, title: str, message: str, urgency: str = "normal", icon: str | None = None) -> bool:
        """Send a desktop notification

        Args:
            title: Notification title
            message: Notification message
            urgency: Urgency level ('low', 'normal', 'critical')
            icon: Optional icon name

        Returns:
            True if notification sent successfully, False otherwise
        """
        if not self.enabled:
            return False

        cmd = ["notify-send", f"--urgency={urgency}"]
        if icon:
            cmd.extend(["--icon", icon])
        cmd.extend([title, message])

        try:
            subprocess.run(cmd, check=False, capture_output=True, timeout=10)
            return True
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.warning(f"Failed to send notification: {e}")
            return False

    @staticmethod
    def _shorten(error: str) -> str:
        return error[:MAX_ERROR_LENGTH] + "..." if len(error) > MAX_ERROR_LENGTH else error

    def notify_backup_success(self, backup_name: str, size_mb: float = 0, includes_assets: bool = False) -> bool:
        title = "✅ Backup Successful"
        message = f"Backup: {backup_name}"
        if includes_assets:
            message += " (with images)"
        if size_mb > 0:
            message += f"\nSize: {size_mb:.2f} MB"
        return self.send(title, message, urgency="normal", icon="emblem-default")

    def notify_backup_failure(self, error: str = "") -> bool:
        title = "❌ Backup Failed"
        message = "The clinic database could not be backed up"
        if error:
            message += f"\nError: {self._shorten(error)}"
        return self.send(title, message, urgency="critical", icon="dialog-error")

    def notify_restore_complete(self, backup_name: str, missing_assets: int = 0) -> bool:
        """Send notification for a finished restore, flagging unrepaired assets"""
        if missing_assets:
            title = "⚠️ Restore Completed With Warnings"
            message = f"Backup: {backup_name}\n{missing_assets} image file(s) could not be found"
            return self.send(title, message, urgency="normal", icon="dialog-warning")
        return self.send("✅ Restore Complete", f"Backup: {backup_name}", urgency="normal", icon="emblem-default")

    def notify_restore_failure(self, error: str = "", rolled_back: bool = True) -> bool:
        if rolled_back:
            title = "❌ Restore Failed"
            message = "Previous data was kept"
        else:
            title = "🚨 Restore Rollback Failed"
            message = "Manual intervention required"
        if error:
            message += f"\nError: {self._shorten(error)}"
        return self.send(title, message, urgency="critical", icon="dialog-error")
