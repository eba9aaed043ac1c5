"""Tests for the backup registry"""

import json

import pytest

from dentvault.core.registry import BackupFormat, BackupRecord, BackupRegistry, parse_timestamp


def make_record(tmp_path, name, created_at="2024-05-01T10:00:00.000Z", create_file=True, **kwargs):
    path = tmp_path / f"{name}.db"
    if create_file:
        path.write_bytes(b"backup")
    return BackupRecord(
        name=name,
        path=str(path),
        size=6,
        created_at=created_at,
        format=kwargs.pop("format", BackupFormat.DB_ONLY),
        **kwargs,
    )


@pytest.fixture
def registry(tmp_path):
    return BackupRegistry(tmp_path / "backup_registry.json")


def test_registry_file_created_empty(tmp_path):
    BackupRegistry(tmp_path / "sub" / "registry.json")

    assert json.loads((tmp_path / "sub" / "registry.json").read_text()) == []


def test_add_is_idempotent_by_name(registry, tmp_path):
    record = make_record(tmp_path, "backup_a")
    registry.add(record)
    registry.add(record)

    assert [r.name for r in registry.list()] == ["backup_a"]


def test_add_overwrites_existing_entry(registry, tmp_path):
    registry.add(make_record(tmp_path, "backup_a"))
    updated = make_record(tmp_path, "backup_a")
    updated.size = 999
    registry.add(updated)

    assert registry.get("backup_a").size == 999


def test_add_caps_entries(tmp_path):
    registry = BackupRegistry(tmp_path / "registry.json", max_entries=3)
    for i in range(5):
        registry.add(make_record(tmp_path, f"backup_{i}", created_at=f"2024-05-0{i + 1}T10:00:00Z"))

    raw = json.loads((tmp_path / "registry.json").read_text())
    assert [entry["name"] for entry in raw] == ["backup_4", "backup_3", "backup_2"]


def test_list_drops_missing_files_and_rewrites(registry, tmp_path):
    registry.add(make_record(tmp_path, "kept"))
    registry.add(make_record(tmp_path, "gone", create_file=False))

    assert [r.name for r in registry.list()] == ["kept"]
    raw = json.loads(registry.registry_path.read_text())
    assert [entry["name"] for entry in raw] == ["kept"]


def test_list_is_newest_first(registry, tmp_path):
    registry.add(make_record(tmp_path, "newest", created_at="2024-06-01T00:00:00Z"))
    registry.add(make_record(tmp_path, "oldest", created_at="2024-01-01T00:00:00Z"))

    assert [r.name for r in registry.list()] == ["newest", "oldest"]


def test_list_removes_duplicate_names(registry, tmp_path):
    make_record(tmp_path, "dup")
    entry = make_record(tmp_path, "dup").to_dict()
    registry.registry_path.write_text(json.dumps([entry, entry]))

    assert len(registry.list()) == 1
    assert len(json.loads(registry.registry_path.read_text())) == 1


def test_remove_deletes_file(registry, tmp_path):
    registry.add(make_record(tmp_path, "backup_a"))

    removed = registry.remove("backup_a", delete_file=True)

    assert removed.name == "backup_a"
    assert not (tmp_path / "backup_a.db").exists()
    assert registry.get("backup_a") is None
    assert registry.remove("backup_a") is None


def test_prune_keeps_newest(registry, tmp_path):
    for i in range(15):
        registry.add(make_record(tmp_path, f"backup_{i:02d}", created_at=f"2024-05-{i + 1:02d}T10:00:00Z"))

    removed = registry.prune(10)

    assert len(removed) == 5
    assert sorted(r.name for r in removed) == [f"backup_{i:02d}" for i in range(5)]
    assert len(registry.list()) == 10
    for i in range(5):
        assert not (tmp_path / f"backup_{i:02d}.db").exists()
    assert (tmp_path / "backup_05.db").exists()


def test_prune_rejects_negative(registry):
    with pytest.raises(ValueError):
        registry.prune(-1)


def test_corrupt_registry_is_treated_as_empty(registry, tmp_path):
    registry.registry_path.write_text("{not json")

    assert registry.list() == []
    registry.add(make_record(tmp_path, "fresh"))
    assert [r.name for r in registry.list()] == ["fresh"]


def test_legacy_fields_are_migrated(registry, tmp_path):
    archive = tmp_path / "old.zip"
    archive.write_bytes(b"zip")
    legacy = [
        {
            "name": "old",
            "path": str(archive),
            "size": 3,
            "created_at": "2023-12-01T08:00:00.000Z",
            "version": "4.0.0",
            "platform": "win32",
            "database_type": "sqlite",
            "backup_format": "sqlite_with_images",
            "includes_images": True,
        }
    ]
    registry.registry_path.write_text(json.dumps(legacy))

    [record] = registry.list()
    assert record.format is BackupFormat.ARCHIVE_WITH_ASSETS
    assert record.includes_assets is True
    assert record.platform == "win32"

    registry.add(make_record(tmp_path, "new"))
    raw = json.loads(registry.registry_path.read_text())
    assert raw[1]["format"] == "archive-with-assets"
    assert "backup_format" not in raw[1]


def test_parse_timestamp_handles_zulu_and_garbage():
    assert parse_timestamp("2024-05-01T10:00:00.000Z").tzinfo is not None
    assert parse_timestamp("not a date").year == 1
