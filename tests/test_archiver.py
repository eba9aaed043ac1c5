"""Tests for the asset archiver"""

import zipfile

import pytest

from conftest import seed_assets, write_asset
from dentvault.core import archiver
from dentvault.core.archiver import (
    ARCHIVE_DB_NAME,
    extract_archive,
    inspect_archive,
    package_with_assets,
)
from dentvault.core.errors import ArchiveFailed, MalformedArchive
from dentvault.core.snapshot import snapshot


@pytest.fixture
def db_snapshot(clinic_db, tmp_path):
    path = tmp_path / "snapshot.db"
    snapshot(clinic_db.path(), path, source=clinic_db)
    return path


def test_archive_layout(db_snapshot, app_config, tmp_path):
    seed_assets(app_config.assets_dir)
    dest = tmp_path / "backup.zip"

    summary = package_with_assets(db_snapshot, app_config.assets_dir, dest)

    assert summary.asset_count == 4
    assert summary.size_bytes == dest.stat().st_size
    with zipfile.ZipFile(dest) as zf:
        names = set(zf.namelist())
        assert ARCHIVE_DB_NAME in names
        assert "dental_images/p1/11/before/before_1.jpg" in names
        assert "dental_images/p3/32/clinical/clinical_1.jpg" in names
        assert zf.getinfo(ARCHIVE_DB_NAME).compress_type == zipfile.ZIP_DEFLATED
        assert zf.read("dental_images/p2/24/xray/xray_1.png") == b"img3-bytes"


def test_missing_asset_root_gives_database_only_archive(db_snapshot, tmp_path):
    dest = tmp_path / "backup.zip"

    summary = package_with_assets(db_snapshot, tmp_path / "no_images", dest)

    assert summary.asset_count == 0
    assert inspect_archive(dest).members == [ARCHIVE_DB_NAME]


def test_vanished_file_is_skipped(db_snapshot, app_config, tmp_path, monkeypatch):
    real = seed_assets(app_config.assets_dir)
    ghost = app_config.assets_dir / "p1" / "11" / "before" / "ghost.jpg"
    monkeypatch.setattr(archiver, "list_asset_files", lambda root: real + [ghost])
    dest = tmp_path / "backup.zip"

    summary = package_with_assets(db_snapshot, app_config.assets_dir, dest)

    assert summary.asset_count == 4
    assert summary.skipped == [str(ghost)]
    assert dest.exists()


def test_write_error_removes_partial_archive(db_snapshot, app_config, tmp_path, monkeypatch):
    seed_assets(app_config.assets_dir)
    real_write = zipfile.ZipFile.write

    def failing_write(self, filename, arcname=None, *args, **kwargs):
        if arcname and arcname.startswith("dental_images/"):
            raise PermissionError("permission denied")
        return real_write(self, filename, arcname, *args, **kwargs)

    monkeypatch.setattr(zipfile.ZipFile, "write", failing_write)
    dest = tmp_path / "backup.zip"

    with pytest.raises(ArchiveFailed):
        package_with_assets(db_snapshot, app_config.assets_dir, dest)
    assert not dest.exists()


def test_empty_snapshot_is_rejected(tmp_path):
    empty = tmp_path / "empty.db"
    empty.touch()

    with pytest.raises(ArchiveFailed):
        package_with_assets(empty, tmp_path, tmp_path / "backup.zip")


def test_inspect_reports_missing_database(tmp_path):
    dest = tmp_path / "images_only.zip"
    with zipfile.ZipFile(dest, "w") as zf:
        zf.writestr("dental_images/p1/11/before/a.jpg", b"x")

    contents = inspect_archive(dest)

    assert contents.has_database is False
    assert contents.asset_files == ["dental_images/p1/11/before/a.jpg"]


def test_inspect_corrupt_archive(tmp_path):
    bad = tmp_path / "bad.zip"
    bad.write_bytes(b"this is not a zip file")

    with pytest.raises(MalformedArchive):
        inspect_archive(bad)


def test_extract_rejects_path_traversal(tmp_path):
    evil = tmp_path / "evil.zip"
    with zipfile.ZipFile(evil, "w") as zf:
        zf.writestr(ARCHIVE_DB_NAME, b"db")
        zf.writestr("../outside.txt", b"gotcha")

    with pytest.raises(MalformedArchive):
        extract_archive(evil, tmp_path / "out")
    assert not (tmp_path / "outside.txt").exists()


def test_extract_requires_inner_database(tmp_path):
    archive = tmp_path / "images_only.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("dental_images/p1/11/before/a.jpg", b"x")

    with pytest.raises(MalformedArchive):
        extract_archive(archive, tmp_path / "out")


def test_extract_returns_database_path(db_snapshot, tmp_path):
    source_assets = tmp_path / "assets"
    write_asset(source_assets, "p1/11/after/a.jpg")
    archive = tmp_path / "backup.zip"
    package_with_assets(db_snapshot, source_assets, archive)

    extracted = extract_archive(archive, tmp_path / "out")

    assert extracted == (tmp_path / "out" / ARCHIVE_DB_NAME).resolve()
    assert (tmp_path / "out" / "dental_images" / "p1" / "11" / "after" / "a.jpg").exists()
