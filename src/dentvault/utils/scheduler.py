"""Automated backup scheduler using cron"""

import logging
import os
import re
import shlex
import subprocess
import tempfile

SCHEDULE_MARKER = "backup --scheduled"

FREQUENCY_TEMPLATES = {
    "hourly": {"schedule": "0 * * * *", "description": "Every hour at minute 0"},
    "daily": {"schedule": "0 2 * * *", "description": "Daily at 2:00 AM"},
    "weekly": {"schedule": "0 3 * * 0", "description": "Weekly on Sunday at 3:00 AM"},
}


class BackupScheduler:
    """Manage periodic DentVault backups as cron entries"""

    def __init__(self, config_dir: str | None = None):
        self.config_dir = config_dir
        self.logger = logging.getLogger("DentVault.Scheduler")

    def get_current_crontab(self) -> list[str]:
        """Get current user's crontab entries"""
        try:
            result = subprocess.run(["crontab", "-l"], capture_output=True, text=True, timeout=30)
            if result.returncode == 0:
                return result.stdout.strip().split("\n") if result.stdout else []
            else:
                return []
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.warning(f"Failed to read crontab: {e}")
            return []

    def set_crontab(self, entries: list[str]) -> tuple[bool, str]:
        """Set the user's crontab to the given entries"""
        try:
            with tempfile.NamedTemporaryFile(mode="w", delete=False, suffix=".cron") as f:
                f.write("\n".join(entries) + "\n")
                temp_file = f.name

            result = subprocess.run(["crontab", temp_file], capture_output=True, text=True, timeout=30)
            os.unlink(temp_file)

            if result.returncode == 0:
                return True, "Crontab updated successfully"
            else:
                return False, f"Failed to update crontab: {result.stderr}"

        except (OSError, subprocess.SubprocessError) as e:
            return False, f"Error updating crontab: {e!s}"

    def add_backup_schedule(self, schedule: str, command: str, comment: str | None = None) -> tuple[bool, str]:
        """Add a backup schedule to crontab

        Args:
            schedule: Cron schedule expression (e.g., '0 2 * * *' for daily at 2 AM)
            command: Backup command to execute
            comment: Optional comment for the cron entry

        Returns:
            Tuple of (success, message)
        """
        entries = self.get_current_crontab()

        for entry in entries:
            if command in entry and not entry.strip().startswith("#"):
                return False, "This backup schedule already exists"

        if comment:
            entries.append(f"# {comment}")
        entries.append(f"{schedule} {command}")

        return self.set_crontab(entries)

    def remove_backup_schedule(self, pattern: str = SCHEDULE_MARKER) -> tuple[bool, str]:
        """Remove backup schedules matching pattern, with their comment lines

        Returns:
            Tuple of (success, message)
        """
        entries = self.get_current_crontab()
        original_count = len(entries)

        filtered = []
        skip_next_comment = False
        for i, entry in enumerate(entries):
            if entry.strip().startswith("#") and i + 1 < len(entries):
                if pattern in entries[i + 1]:
                    skip_next_comment = True
                    continue

            if skip_next_comment:
                skip_next_comment = False
                continue

            if pattern not in entry:
                filtered.append(entry)

        removed_count = original_count - len(filtered)
        if removed_count == 0:
            return False, f"No schedules found matching pattern: {pattern}"

        success, msg = self.set_crontab(filtered)
        if success:
            return True, f"Removed {removed_count} schedule(s)"
        return False, msg

    def list_backup_schedules(self) -> list[dict[str, str]]:
        """List the DentVault cron schedules"""
        entries = self.get_current_crontab()
        schedules = []
        cron_pattern = re.compile(r"^([\d\*\/\-,]+\s+){5}(.+)$")

        for i, entry in enumerate(entries):
            entry = entry.strip()
            if not entry or entry.startswith("#") or SCHEDULE_MARKER not in entry:
                continue
            if not cron_pattern.match(entry):
                continue

            parts = entry.split(None, 5)
            schedule = " ".join(parts[:5])
            comment = None
            if i > 0 and entries[i - 1].strip().startswith("#"):
                comment = entries[i - 1].strip()[1:].strip()

            schedules.append(
                {
                    "schedule": schedule,
                    "command": parts[5],
                    "comment": comment or "No description",
                    "human_readable": self.parse_cron_schedule(schedule),
                }
            )

        return schedules

    def parse_cron_schedule(self, schedule: str) -> str:
        """Convert cron schedule to human-readable format"""
        parts = schedule.split()
        if len(parts) != 5:
            return "Invalid schedule"

        for template in FREQUENCY_TEMPLATES.values():
            if template["schedule"] == schedule:
                return template["description"]

        minute, hour, day, month, weekday = parts
        desc = []
        if minute == "*":
            desc.append("Every minute")
        elif "/" in minute:
            desc.append(f"Every {minute.split('/')[1]} minutes")
        else:
            desc.append(f"At minute {minute}")

        if hour != "*":
            if "/" in hour:
                desc.append(f"every {hour.split('/')[1]} hours")
            else:
                desc.append(f"at hour {hour}")
        if day != "*":
            desc.append(f"on day {day}")
        if month != "*":
            desc.append(f"in month {month}")
        if weekday != "*":
            days = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
            if weekday.isdigit() and 0 <= int(weekday) <= 6:
                desc.append(f"on {days[int(weekday)]}")

        return ", ".join(desc)

    def generate_backup_command(self, include_assets: bool = False) -> str:
        """Build the command line cron runs for a scheduled backup"""
        dentvault_path = subprocess.run(["which", "dentvault"], capture_output=True, text=True, timeout=10).stdout.strip()
        if dentvault_path:
            base_cmd = shlex.quote(dentvault_path)
        else:
            python_path = subprocess.run(["which", "python3"], capture_output=True, text=True, timeout=10).stdout.strip()
            base_cmd = f"{shlex.quote(python_path or 'python3')} -m dentvault.cli"

        if self.config_dir:
            base_cmd += f" --config-dir {shlex.quote(str(self.config_dir))}"

        cmd = f"{base_cmd} {SCHEDULE_MARKER}"
        if include_assets:
            cmd += " --with-assets"
        return f"{cmd} > /dev/null 2>&1"

    def schedule_frequency(self, frequency: str, include_assets: bool = False) -> tuple[bool, str]:
        """Replace any existing DentVault schedule with one at the given frequency

        Args:
            frequency: 'hourly', 'daily' or 'weekly'
            include_assets: Scheduled backups include the asset tree

        Returns:
            Tuple of (success, message)
        """
        template = FREQUENCY_TEMPLATES.get(frequency)
        if template is None:
            raise ValueError(f"Invalid frequency: {frequency} (expected one of {', '.join(FREQUENCY_TEMPLATES)})")

        if self.list_backup_schedules():
            success, msg = self.remove_backup_schedule()
            if not success:
                return False, msg

        command = self.generate_backup_command(include_assets)
        success, msg = self.add_backup_schedule(template["schedule"], command, f"DentVault {frequency} backup")
        if success:
            self.logger.info(f"Scheduled {frequency} backups ({template['description']})")
            return True, f"Scheduled {frequency} backups: {template['description']}"
        return False, msg
