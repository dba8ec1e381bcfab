"""
SQLite database setup and access layer.
Schema: medications, medication_doses, mood_entries.

Timestamps are stored as epoch milliseconds (INTEGER). Ids are uuid4 hex
strings so records can be created offline and merged later.
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Optional

from mood_pharma.config import DB_PATH
from mood_pharma.core.models import (
    Medication,
    MedicationDose,
    MoodEntry,
    TherapeuticRange,
)

log = logging.getLogger("pk.db")

_local = threading.local()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS medications (
    id                      TEXT    PRIMARY KEY,
    name                    TEXT    NOT NULL,
    drug_class              TEXT,
    half_life               REAL    NOT NULL CHECK(half_life > 0),
    volume_of_distribution  REAL    NOT NULL CHECK(volume_of_distribution > 0),
    bioavailability         REAL    NOT NULL CHECK(bioavailability > 0 AND bioavailability <= 1),
    absorption_rate         REAL    NOT NULL CHECK(absorption_rate > 0),
    therapeutic_min         REAL,
    therapeutic_max         REAL,
    therapeutic_unit        TEXT    DEFAULT 'mg/L',
    scheduled_time          TEXT,
    created_at              INTEGER NOT NULL,
    updated_at              INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS medication_doses (
    id              TEXT    PRIMARY KEY,
    medication_id   TEXT    NOT NULL REFERENCES medications(id) ON DELETE CASCADE,
    timestamp       INTEGER NOT NULL,
    dose_amount     REAL    NOT NULL CHECK(dose_amount > 0),
    notes           TEXT    DEFAULT ''
);

CREATE TABLE IF NOT EXISTS mood_entries (
    id              TEXT    PRIMARY KEY,
    timestamp       INTEGER NOT NULL,
    mood_score      REAL    NOT NULL CHECK(mood_score BETWEEN 0 AND 10),
    anxiety_level   REAL    CHECK(anxiety_level BETWEEN 0 AND 10),
    energy_level    REAL    CHECK(energy_level BETWEEN 0 AND 10),
    focus_level     REAL    CHECK(focus_level BETWEEN 0 AND 10),
    cognitive_score REAL,
    attention_shift REAL,
    notes           TEXT    DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_doses_med_ts ON medication_doses(medication_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_mood_ts ON mood_entries(timestamp);
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def get_connection() -> sqlite3.Connection:
    """Thread-local SQLite connection with WAL mode."""
    conn = getattr(_local, "conn", None)
    if conn is None or getattr(_local, "path", None) != DB_PATH:
        if conn is not None:
            conn.close()
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        _local.conn = conn
        _local.path = DB_PATH
    return conn


def close_connection() -> None:
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
        _local.conn = None
        _local.path = None


@contextmanager
def db_cursor():
    """Yield a cursor, auto-commit on success, rollback on error."""
    conn = get_connection()
    cur = conn.cursor()
    try:
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db():
    """Create tables if they don't exist."""
    with db_cursor() as cur:
        cur.executescript(SCHEMA_SQL)
    log.info("Database initialized at %s", DB_PATH)


# --- Row mapping ---

def _row_to_medication(row: sqlite3.Row) -> Medication:
    data = dict(row)
    t_min = data.pop("therapeutic_min")
    t_max = data.pop("therapeutic_max")
    unit = data.pop("therapeutic_unit") or "mg/L"
    rng = TherapeuticRange(min=t_min, max=t_max, unit=unit) if t_min is not None and t_max is not None else None
    return Medication(therapeutic_range=rng, **data)


# --- Medications ---

def insert_medication(name: str, half_life: float, volume_of_distribution: float,
                      bioavailability: float, absorption_rate: float,
                      drug_class: Optional[str] = None,
                      therapeutic_range: Optional[TherapeuticRange] = None,
                      scheduled_time: Optional[str] = None) -> Medication:
    med_id = uuid.uuid4().hex
    now = _now_ms()
    with db_cursor() as cur:
        cur.execute(
            """INSERT INTO medications
               (id, name, drug_class, half_life, volume_of_distribution, bioavailability,
                absorption_rate, therapeutic_min, therapeutic_max, therapeutic_unit,
                scheduled_time, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                med_id, name, drug_class, half_life, volume_of_distribution,
                bioavailability, absorption_rate,
                therapeutic_range.min if therapeutic_range else None,
                therapeutic_range.max if therapeutic_range else None,
                therapeutic_range.unit if therapeutic_range else "mg/L",
                scheduled_time, now, now,
            ),
        )
    return get_medication(med_id)


def get_medication(medication_id: str) -> Optional[Medication]:
    with db_cursor() as cur:
        cur.execute("SELECT * FROM medications WHERE id=?", (medication_id,))
        row = cur.fetchone()
        return _row_to_medication(row) if row else None


def list_medications() -> list[Medication]:
    with db_cursor() as cur:
        cur.execute("SELECT * FROM medications ORDER BY name")
        return [_row_to_medication(r) for r in cur.fetchall()]


_MEDICATION_COLUMNS = {
    "name", "drug_class", "half_life", "volume_of_distribution",
    "bioavailability", "absorption_rate", "scheduled_time",
}


def update_medication(medication_id: str, **fields) -> Optional[Medication]:
    """Update the given columns. Unknown keys raise ValueError."""
    unknown = set(fields) - _MEDICATION_COLUMNS - {"therapeutic_range"}
    if unknown:
        raise ValueError(f"Unknown medication fields: {sorted(unknown)}")
    values = {k: v for k, v in fields.items() if k != "therapeutic_range"}
    if "therapeutic_range" in fields:
        rng = fields["therapeutic_range"]
        values["therapeutic_min"] = rng.min if rng else None
        values["therapeutic_max"] = rng.max if rng else None
        values["therapeutic_unit"] = rng.unit if rng else "mg/L"
    values["updated_at"] = _now_ms()
    assignments = ", ".join(f"{col}=?" for col in values)
    with db_cursor() as cur:
        cur.execute(
            f"UPDATE medications SET {assignments} WHERE id=?",
            (*values.values(), medication_id),
        )
        if cur.rowcount == 0:
            return None
    return get_medication(medication_id)


def delete_medication(medication_id: str) -> bool:
    """Delete a medication and (via cascade) its doses."""
    with db_cursor() as cur:
        cur.execute("DELETE FROM medications WHERE id=?", (medication_id,))
        return cur.rowcount > 0


# --- Doses ---

def insert_dose(medication_id: str, dose_amount: float,
                timestamp: Optional[int] = None, notes: str = "") -> MedicationDose:
    dose = MedicationDose(
        id=uuid.uuid4().hex,
        medication_id=medication_id,
        timestamp=timestamp if timestamp is not None else _now_ms(),
        dose_amount=dose_amount,
        notes=notes,
    )
    with db_cursor() as cur:
        cur.execute(
            "INSERT INTO medication_doses (id, medication_id, timestamp, dose_amount, notes) "
            "VALUES (?,?,?,?,?)",
            (dose.id, dose.medication_id, dose.timestamp, dose.dose_amount, dose.notes),
        )
    return dose


def get_dose(dose_id: str) -> Optional[MedicationDose]:
    with db_cursor() as cur:
        cur.execute("SELECT * FROM medication_doses WHERE id=?", (dose_id,))
        row = cur.fetchone()
        return MedicationDose(**dict(row)) if row else None


def query_doses(medication_id: Optional[str] = None,
                start: Optional[int] = None,
                end: Optional[int] = None) -> list[MedicationDose]:
    clauses, params = [], []
    if medication_id is not None:
        clauses.append("medication_id=?")
        params.append(medication_id)
    if start is not None:
        clauses.append("timestamp>=?")
        params.append(start)
    if end is not None:
        clauses.append("timestamp<=?")
        params.append(end)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with db_cursor() as cur:
        cur.execute(f"SELECT * FROM medication_doses {where} ORDER BY timestamp, id", params)
        return [MedicationDose(**dict(r)) for r in cur.fetchall()]


def delete_dose(dose_id: str) -> Optional[MedicationDose]:
    """Delete a dose, returning it so callers know which medication changed."""
    dose = get_dose(dose_id)
    if dose is None:
        return None
    with db_cursor() as cur:
        cur.execute("DELETE FROM medication_doses WHERE id=?", (dose_id,))
    return dose


# --- Mood entries ---

def insert_mood_entry(mood_score: float, timestamp: Optional[int] = None,
                      anxiety_level: Optional[float] = None,
                      energy_level: Optional[float] = None,
                      focus_level: Optional[float] = None,
                      cognitive_score: Optional[float] = None,
                      attention_shift: Optional[float] = None,
                      notes: str = "") -> MoodEntry:
    entry = MoodEntry(
        id=uuid.uuid4().hex,
        timestamp=timestamp if timestamp is not None else _now_ms(),
        mood_score=mood_score,
        anxiety_level=anxiety_level,
        energy_level=energy_level,
        focus_level=focus_level,
        cognitive_score=cognitive_score,
        attention_shift=attention_shift,
        notes=notes,
    )
    with db_cursor() as cur:
        cur.execute(
            """INSERT INTO mood_entries
               (id, timestamp, mood_score, anxiety_level, energy_level, focus_level,
                cognitive_score, attention_shift, notes)
               VALUES (?,?,?,?,?,?,?,?,?)""",
            (entry.id, entry.timestamp, entry.mood_score, entry.anxiety_level,
             entry.energy_level, entry.focus_level, entry.cognitive_score,
             entry.attention_shift, entry.notes),
        )
    return entry


def query_mood_entries(start: Optional[int] = None,
                       end: Optional[int] = None) -> list[MoodEntry]:
    clauses, params = [], []
    if start is not None:
        clauses.append("timestamp>=?")
        params.append(start)
    if end is not None:
        clauses.append("timestamp<=?")
        params.append(end)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with db_cursor() as cur:
        cur.execute(f"SELECT * FROM mood_entries {where} ORDER BY timestamp", params)
        return [MoodEntry(**dict(r)) for r in cur.fetchall()]


def delete_mood_entry(entry_id: str) -> bool:
    with db_cursor() as cur:
        cur.execute("DELETE FROM mood_entries WHERE id=?", (entry_id,))
        return cur.rowcount > 0
