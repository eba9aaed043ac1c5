"""Error taxonomy for the DentVault backup engine"""


class DentVaultError(Exception):
    """Base class for all backup/restore failures"""

    code = "unknown"


class SourceUnavailable(DentVaultError):
    """Live database is missing or zero-length"""

    code = "source_unavailable"


class CheckpointFailed(DentVaultError):
    """WAL checkpoint could not complete (never fatal, logged only)"""

    code = "checkpoint_failed"


class SnapshotFailed(DentVaultError):
    """Both the native backup and the raw file copy failed"""

    code = "snapshot_failed"


class ArchiveFailed(DentVaultError):
    """Archive stream could not be written"""

    code = "archive_failed"


class IntegrityFailed(DentVaultError):
    """Structural check failed on a backup database"""

    code = "integrity_failed"


class MalformedArchive(DentVaultError):
    """Archive is unreadable or lacks the inner database"""

    code = "malformed_archive"


class BackupNotFound(DentVaultError):
    """Requested backup does not exist on disk or in the registry"""

    code = "backup_not_found"


class RestoreFailed(DentVaultError):
    """Replacing or reconciling failed; live state was rolled back"""

    code = "restore_failed"


class RollbackFailed(RestoreFailed):
    """Rollback after a failed restore did not complete; manual intervention required"""

    code = "rollback_failed"

    def __init__(self, message: str, anchor_dir: str | None = None):
        super().__init__(message)
        self.anchor_dir = anchor_dir


class OperationInProgress(DentVaultError):
    """Another backup or restore holds the single-flight guard"""

    code = "operation_in_progress"


class ReconciliationWarning(UserWarning):
    """Asset path or parent link could not be repaired"""
