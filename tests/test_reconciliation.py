"""Tests for post-restore reconciliation and filesystem sync"""

import pytest

from conftest import seed_assets, write_asset
from dentvault.core.errors import ReconciliationWarning
from dentvault.core.reconciliation import (
    AssetSchema,
    ReconciliationScanner,
    canonical_stored_path,
    clean_owner_name,
    resolve_stored_path,
)


def image_row(db, image_id):
    return db.query("SELECT * FROM dental_treatment_images WHERE id = ?", (image_id,))[0]


@pytest.fixture
def scanner(clinic_db, app_config):
    return ReconciliationScanner(clinic_db, app_config.assets_dir)


def test_clean_owner_name():
    assert clean_owner_name("Ahmed Ali", "p1") == "Ahmed_Ali"
    assert clean_owner_name("سارة  محمد!", "p2") == "سارة_محمد"
    assert clean_owner_name("O'Brien-Smith", "p3") == "OBrienSmith"
    # the fallback underscore is stripped along with other punctuation
    assert clean_owner_name(None, "p9") == "Patientp9"


def test_resolve_stored_path(tmp_path):
    assert resolve_stored_path(tmp_path, "dental_images/p1/11/before/a.jpg") == tmp_path / "p1/11/before/a.jpg"
    assert resolve_stored_path(tmp_path, "dental_images\\p1\\11\\before\\a.jpg") == tmp_path / "p1/11/before/a.jpg"


def test_consistent_rows_are_left_alone(scanner, app_config):
    seed_assets(app_config.assets_dir)

    report = scanner.reconcile()

    assert report.rows_scanned == 4
    assert report.paths_updated == 0
    assert report.parents_relinked == 0
    assert report.missing == []


def test_stored_path_is_normalized(scanner, clinic_db, app_config):
    seed_assets(app_config.assets_dir)
    clinic_db.execute(
        "UPDATE dental_treatment_images SET image_path = ? WHERE id = 'img1'",
        ("C:\\clinic\\dental_images\\p1\\11\\before\\before_1.jpg",),
    )

    report = scanner.reconcile()

    assert report.paths_updated == 1
    assert image_row(clinic_db, "img1")["image_path"] == "dental_images/p1/11/before/before_1.jpg"


def test_legacy_layout_is_migrated(scanner, clinic_db, app_config):
    root = app_config.assets_dir
    write_asset(root, "Ahmed_Ali/before/before_1.jpg", b"legacy")
    write_asset(root, "سارة_محمد/xray/xray_1.png", b"legacy-xray")
    clinic_db.execute("UPDATE dental_treatment_images SET image_path = 'Ahmed_Ali/before/before_1.jpg' WHERE id = 'img1'")

    report = scanner.reconcile()

    assert image_row(clinic_db, "img1")["image_path"] == "dental_images/p1/11/before/before_1.jpg"
    assert (root / "p1/11/before/before_1.jpg").read_bytes() == b"legacy"
    assert (root / "p2/24/xray/xray_1.png").read_bytes() == b"legacy-xray"
    assert "img1" not in report.missing
    assert "img3" not in report.missing


def test_file_found_elsewhere_is_adopted(scanner, clinic_db, app_config):
    root = app_config.assets_dir
    write_asset(root, "misc/imports/clinical_1.jpg", b"found")

    report = scanner.reconcile()

    assert (root / "p3/32/clinical/clinical_1.jpg").read_bytes() == b"found"
    assert "img4" not in report.missing
    assert "img4" not in report.ambiguous


def test_ambiguous_match_is_flagged(scanner, app_config):
    root = app_config.assets_dir
    write_asset(root, "a/after_1.jpg", b"first")
    write_asset(root, "b/after_1.jpg", b"second")

    report = scanner.reconcile()

    assert report.ambiguous["img2"] == [str(root / "a/after_1.jpg"), str(root / "b/after_1.jpg")]
    assert (root / "p1/11/after/after_1.jpg").read_bytes() == b"first"


def test_missing_file_is_reported_and_row_kept(scanner, clinic_db, app_config, caplog):
    app_config.assets_dir.mkdir()
    before = image_row(clinic_db, "img3")["image_path"]

    report = scanner.reconcile()

    assert set(report.missing) == {"img1", "img2", "img3", "img4"}
    assert image_row(clinic_db, "img3")["image_path"] == before
    warned = [r for r in caplog.records if getattr(r, "category", None) == ReconciliationWarning.__name__]
    assert len(warned) == 4


def test_parent_is_relinked_to_latest_treatment(scanner, clinic_db, app_config):
    seed_assets(app_config.assets_dir)
    clinic_db.execute("UPDATE dental_treatment_images SET dental_treatment_id = 't1' WHERE id = 'img1'")

    report = scanner.reconcile()

    assert report.parents_relinked == 1
    assert image_row(clinic_db, "img1")["dental_treatment_id"] == "t2"


def test_row_without_matching_treatment_is_orphaned(scanner, clinic_db, app_config, caplog):
    seed_assets(app_config.assets_dir)
    clinic_db.execute("UPDATE dental_treatment_images SET tooth_number = 5 WHERE id = 'img3'")

    report = scanner.reconcile()

    assert report.orphaned == ["img3"]
    assert image_row(clinic_db, "img3")["dental_treatment_id"] == "t3"
    assert any(
        "img3" in r.getMessage() and getattr(r, "category", None) == ReconciliationWarning.__name__
        for r in caplog.records
    )


def test_reconcile_skips_when_tables_missing(live_db, tmp_path):
    live_db.execute("DROP TABLE dental_treatment_images")

    report = ReconciliationScanner(live_db, tmp_path).reconcile()

    assert report.rows_scanned == 0


def test_sync_adds_rows_for_unregistered_files(scanner, clinic_db, app_config):
    seed_assets(app_config.assets_dir)
    write_asset(app_config.assets_dir, "p1/11/xray/new_xray.jpg")

    stats = scanner.sync_filesystem()

    assert stats.total_processed == 5
    assert stats.total_added == 1
    assert stats.total_skipped == 4
    [row] = clinic_db.query(
        "SELECT * FROM dental_treatment_images WHERE image_path = ?",
        (canonical_stored_path("p1", 11, "xray", "new_xray.jpg"),),
    )
    assert row["dental_treatment_id"] == "t2"
    assert row["image_type"] == "xray"
    assert len(row["id"]) == 36


def test_sync_is_idempotent(scanner, app_config):
    write_asset(app_config.assets_dir, "p2/24/after/after.webp")

    assert scanner.sync_filesystem().total_added == 1
    assert scanner.sync_filesystem().total_added == 0


def test_sync_skips_invalid_layouts(scanner, app_config):
    root = app_config.assets_dir
    write_asset(root, "p1/before/flat.jpg")
    write_asset(root, "p1/40/before/bad_tooth.jpg")
    write_asset(root, "p1/abc/before/not_a_tooth.jpg")
    write_asset(root, "p1/11/selfie/bad_category.jpg")
    write_asset(root, "nobody/11/before/unknown_patient.jpg")
    write_asset(root, "p1/11/before/notes.txt")

    stats = scanner.sync_filesystem()

    assert stats.total_processed == 5
    assert stats.total_added == 0
    assert stats.total_skipped == 5


def test_sync_records_error_without_treatment(scanner, app_config):
    write_asset(app_config.assets_dir, "p3/7/before/no_treatment.jpg")

    stats = scanner.sync_filesystem()

    assert stats.total_errors == 1
    assert stats.errors[0]["file"] == "p3/7/before/no_treatment.jpg"


def test_sync_uses_configured_timestamp_columns(clinic_db, app_config):
    clinic_db.execute("ALTER TABLE dental_treatment_images RENAME COLUMN taken_date TO captured_at")
    clinic_db.execute("ALTER TABLE dental_treatment_images RENAME COLUMN updated_at TO modified_at")
    write_asset(app_config.assets_dir, "p2/24/clinical/photo.jpg")
    schema = AssetSchema(asset_taken_at="captured_at", asset_updated_at="modified_at")

    stats = ReconciliationScanner(clinic_db, app_config.assets_dir, schema).sync_filesystem()

    assert stats.total_added == 1
    [row] = clinic_db.query(
        "SELECT * FROM dental_treatment_images WHERE image_path = ?",
        (canonical_stored_path("p2", 24, "clinical", "photo.jpg"),),
    )
    assert row["captured_at"] == row["created_at"] == row["modified_at"]
    assert row["captured_at"] is not None
