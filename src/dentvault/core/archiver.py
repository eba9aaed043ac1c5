"""Asset archiver: database snapshot plus asset tree in one zip archive"""

import logging
import os
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ArchiveFailed, MalformedArchive

logger = logging.getLogger("DentVault.Archiver")

# Fixed inner layout of archive backups
ARCHIVE_DB_NAME = "dental_clinic.db"
ARCHIVE_ASSETS_DIR = "dental_images"
COMPRESSION_LEVEL = 9


@dataclass
class ArchiveSummary:
    """Result of packaging an archive backup"""

    archive_path: Path
    asset_count: int
    skipped: list[str] = field(default_factory=list)
    size_bytes: int = 0


@dataclass
class ArchiveContents:
    """Member listing of an archive backup"""

    has_database: bool
    asset_files: list[str]
    members: list[str]


def list_asset_files(asset_root: Path) -> list[Path]:
    """All regular files under the asset root, in stable order"""
    if not asset_root.exists():
        return []
    return sorted(p for p in asset_root.rglob("*") if p.is_file())


def package_with_assets(db_snapshot_path: str | Path, asset_root_dir: str | Path, dest_archive_path: str | Path) -> ArchiveSummary:
    """Stream a database snapshot and the asset tree into a compressed archive

    Files are written one at a time so memory use does not grow with the
    number of assets. A file that disappears between enumeration and writing
    is skipped with a warning; any other write error aborts the archive and
    deletes the partial file.

    Args:
        db_snapshot_path: Consistent database snapshot to store as ``dental_clinic.db``
        asset_root_dir: Root of the asset tree, stored under ``dental_images/``
        dest_archive_path: Archive to create

    Returns:
        ArchiveSummary with the number of assets written

    Raises:
        ArchiveFailed: The archive could not be written
    """
    db_snapshot_path = Path(db_snapshot_path)
    asset_root = Path(asset_root_dir)
    dest = Path(dest_archive_path)
    dest.parent.mkdir(parents=True, exist_ok=True)

    if not db_snapshot_path.exists() or db_snapshot_path.stat().st_size == 0:
        raise ArchiveFailed(f"Database snapshot missing or empty: {db_snapshot_path}")

    asset_files = list_asset_files(asset_root)
    if asset_root.exists():
        logger.info(f"Found {len(asset_files)} asset files to archive under {asset_root}")
    else:
        logger.info(f"No asset directory at {asset_root}, archiving database only")

    skipped: list[str] = []
    written = 0
    try:
        with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=COMPRESSION_LEVEL) as zf:
            zf.write(db_snapshot_path, arcname=ARCHIVE_DB_NAME)

            for asset in asset_files:
                arcname = f"{ARCHIVE_ASSETS_DIR}/{asset.relative_to(asset_root).as_posix()}"
                try:
                    zf.write(asset, arcname=arcname)
                    written += 1
                except FileNotFoundError:
                    logger.warning(f"Asset vanished during archiving, skipped: {asset}")
                    skipped.append(str(asset))

            logger.info(f"Finalizing archive with {written} asset files ({len(skipped)} skipped)")

    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
        if dest.exists():
            dest.unlink()
            logger.info(f"Removed partial archive: {dest.name}")
        raise ArchiveFailed(f"Failed to write archive {dest}: {e}") from e

    return ArchiveSummary(archive_path=dest, asset_count=written, skipped=skipped, size_bytes=dest.stat().st_size)


def inspect_archive(archive_path: str | Path) -> ArchiveContents:
    """List an archive's members without extracting it

    Raises:
        MalformedArchive: The file is not a readable zip archive
    """
    try:
        with zipfile.ZipFile(archive_path) as zf:
            members = zf.namelist()
    except (zipfile.BadZipFile, OSError) as e:
        raise MalformedArchive(f"Cannot read archive {archive_path}: {e}") from e

    prefix = f"{ARCHIVE_ASSETS_DIR}/"
    return ArchiveContents(
        has_database=ARCHIVE_DB_NAME in members,
        asset_files=[m for m in members if m.startswith(prefix) and not m.endswith("/")],
        members=members,
    )


def extract_archive(archive_path: str | Path, dest_dir: str | Path) -> Path:
    """Extract an archive, refusing members that would land outside ``dest_dir``

    Returns:
        Path to the extracted inner database

    Raises:
        MalformedArchive: Unreadable archive, unsafe member, or no inner database
    """
    target = Path(dest_dir).resolve()
    target.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as zf:
            for member in zf.infolist():
                name = member.filename
                if os.path.isabs(name) or name.startswith(("/", "\\")) or ".." in Path(name).parts:
                    raise MalformedArchive(f"Archive member '{name}' would extract outside target directory")
                member_path = (target / name).resolve()
                if member_path != target and not str(member_path).startswith(str(target) + os.sep):
                    raise MalformedArchive(f"Archive member '{name}' would extract outside target directory")
            zf.extractall(target)
    except (zipfile.BadZipFile, OSError) as e:
        raise MalformedArchive(f"Cannot extract archive {archive_path}: {e}") from e

    extracted_db = target / ARCHIVE_DB_NAME
    if not extracted_db.exists():
        raise MalformedArchive(f"Database file '{ARCHIVE_DB_NAME}' not found in archive {archive_path}")
    return extracted_db
