"""User-visible failure messages, keyed by error code"""

from dentvault.core.errors import DentVaultError

MESSAGES = {
    "en": {
        "source_unavailable": "The clinic database file was not found or is empty.",
        "checkpoint_failed": "The database could not be flushed before the backup.",
        "snapshot_failed": "Failed to create the backup: the database could not be copied.",
        "archive_failed": "Failed to create the backup archive.",
        "integrity_failed": "The backup file is corrupted or invalid.",
        "malformed_archive": "The backup archive is damaged or does not contain a database.",
        "backup_not_found": "Backup file not found.",
        "restore_failed": "Failed to restore the backup. Your previous data was kept.",
        "rollback_failed": "Restore failed and the previous data could not be put back. Manual intervention is required.",
        "operation_in_progress": "Another backup or restore is already running. Try again when it finishes.",
        "unknown": "An unexpected error occurred.",
    },
    "ar": {
        "source_unavailable": "ملف قاعدة البيانات غير موجود أو فارغ.",
        "checkpoint_failed": "تعذر حفظ بيانات قاعدة البيانات قبل النسخ الاحتياطي.",
        "snapshot_failed": "فشل في إنشاء النسخة الاحتياطية: تعذر نسخ قاعدة البيانات.",
        "archive_failed": "فشل في إنشاء أرشيف النسخة الاحتياطية.",
        "integrity_failed": "ملف النسخة الاحتياطية تالف أو غير صالح.",
        "malformed_archive": "أرشيف النسخة الاحتياطية تالف أو لا يحتوي على قاعدة بيانات.",
        "backup_not_found": "ملف النسخة الاحتياطية غير موجود.",
        "restore_failed": "فشل في استعادة النسخة الاحتياطية. تم الاحتفاظ ببياناتك السابقة.",
        "rollback_failed": "فشلت الاستعادة وتعذر إرجاع البيانات السابقة. يلزم تدخل يدوي.",
        "operation_in_progress": "توجد عملية نسخ احتياطي أو استعادة قيد التنفيذ. حاول مرة أخرى بعد انتهائها.",
        "unknown": "حدث خطأ غير متوقع.",
    },
}


def user_message(error: BaseException, locale: str = "en") -> str:
    """One translated line describing an error, falling back to English"""
    table = MESSAGES.get(locale, MESSAGES["en"])
    code = error.code if isinstance(error, DentVaultError) else "unknown"
    return table.get(code, table["unknown"])
