"""Shared fixtures: a small clinic database, image tree and engine under tmp_path"""

import logging
from pathlib import Path

import pytest

from dentvault.core.backup_engine import BackupEngine
from dentvault.core.config_manager import AppConfig
from dentvault.core.database import SQLiteDatabase

SCHEMA = """
CREATE TABLE patients (
    id TEXT PRIMARY KEY,
    full_name TEXT NOT NULL,
    phone TEXT,
    created_at TEXT
);
CREATE TABLE appointments (
    id TEXT PRIMARY KEY,
    patient_id TEXT REFERENCES patients(id),
    title TEXT,
    start_time TEXT
);
CREATE TABLE payments (
    id TEXT PRIMARY KEY,
    patient_id TEXT REFERENCES patients(id),
    amount REAL,
    payment_date TEXT
);
CREATE TABLE treatments (
    id TEXT PRIMARY KEY,
    name TEXT,
    default_cost REAL
);
CREATE TABLE dental_treatments (
    id TEXT PRIMARY KEY,
    patient_id TEXT REFERENCES patients(id),
    tooth_number INTEGER,
    treatment_type TEXT,
    created_at TEXT
);
CREATE TABLE dental_treatment_images (
    id TEXT PRIMARY KEY,
    dental_treatment_id TEXT REFERENCES dental_treatments(id),
    patient_id TEXT,
    tooth_number INTEGER,
    image_path TEXT,
    image_type TEXT,
    description TEXT,
    taken_date TEXT,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE settings (
    id INTEGER PRIMARY KEY,
    clinic_name TEXT,
    currency TEXT
);
"""

PATIENTS = [
    ("p1", "Ahmed Ali", "0501", "2024-01-01T09:00:00Z"),
    ("p2", "سارة محمد", "0502", "2024-01-02T09:00:00Z"),
    ("p3", "John Smith", "0503", "2024-01-03T09:00:00Z"),
]

DENTAL_TREATMENTS = [
    ("t1", "p1", 11, "filling", "2024-02-01T10:00:00Z"),
    ("t2", "p1", 11, "crown", "2024-03-01T10:00:00Z"),
    ("t3", "p2", 24, "extraction", "2024-02-10T10:00:00Z"),
    ("t4", "p3", 32, "root_canal", "2024-02-15T10:00:00Z"),
]

# (id, treatment, patient, tooth, category, filename)
IMAGES = [
    ("img1", "t2", "p1", 11, "before", "before_1.jpg"),
    ("img2", "t2", "p1", 11, "after", "after_1.jpg"),
    ("img3", "t3", "p2", 24, "xray", "xray_1.png"),
    ("img4", "t4", "p3", 32, "clinical", "clinical_1.jpg"),
]


def create_schema(db_path: Path) -> SQLiteDatabase:
    db = SQLiteDatabase(db_path)
    db.connection.executescript(SCHEMA)
    db.connection.commit()
    return db


def image_path(patient: str, tooth: int, category: str, filename: str) -> str:
    return f"dental_images/{patient}/{tooth}/{category}/{filename}"


def seed_clinic(db: SQLiteDatabase) -> None:
    """Three patients with appointments, treatments and four image records"""
    conn = db.connection
    with conn:
        conn.executemany("INSERT INTO patients VALUES (?, ?, ?, ?)", PATIENTS)
        conn.executemany(
            "INSERT INTO appointments VALUES (?, ?, ?, ?)",
            [(f"a{i}", pid, "Checkup", f"2024-04-0{i}T10:00:00Z") for i, (pid, *_rest) in enumerate(PATIENTS, 1)],
        )
        conn.execute("INSERT INTO payments VALUES ('pay1', 'p1', 150.0, '2024-04-01')")
        conn.execute("INSERT INTO treatments VALUES ('tr1', 'Cleaning', 50.0)")
        conn.executemany("INSERT INTO dental_treatments VALUES (?, ?, ?, ?, ?)", DENTAL_TREATMENTS)
        conn.executemany(
            "INSERT INTO dental_treatment_images "
            "(id, dental_treatment_id, patient_id, tooth_number, image_path, image_type, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, '2024-03-01', '2024-03-01')",
            [(i, t, p, tooth, image_path(p, tooth, cat, name), cat) for i, t, p, tooth, cat, name in IMAGES],
        )
        conn.execute("INSERT INTO settings VALUES (1, 'Smile Clinic', 'SAR')")


def write_asset(root: Path, relative: str, content: bytes = b"\xff\xd8\xff image bytes") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def seed_assets(root: Path) -> list[Path]:
    """One file per IMAGES row, in the canonical layout"""
    return [
        write_asset(root, f"{p}/{tooth}/{cat}/{name}", f"{i}-bytes".encode())
        for i, _t, p, tooth, cat, name in IMAGES
    ]


def table_rows(db: SQLiteDatabase, table: str) -> list[dict]:
    return db.query(f"SELECT * FROM {table} ORDER BY id")


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        base_dir=tmp_path,
        database_path=tmp_path / "dental_clinic.db",
        assets_dir=tmp_path / "dental_images",
        backup_dir=tmp_path / "backups",
        registry_file=tmp_path / "backup_registry.json",
    )


@pytest.fixture
def live_db(app_config: AppConfig):
    db = create_schema(app_config.database_path)
    yield db
    db.close()


@pytest.fixture
def clinic_db(live_db: SQLiteDatabase) -> SQLiteDatabase:
    seed_clinic(live_db)
    return live_db


@pytest.fixture
def engine(app_config: AppConfig, clinic_db: SQLiteDatabase) -> BackupEngine:
    return BackupEngine(app_config, db=clinic_db, enable_notifications=False)


@pytest.fixture(autouse=True)
def _close_log_handlers():
    yield
    logger = logging.getLogger("DentVault")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
