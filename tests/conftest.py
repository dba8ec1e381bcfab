"""
Pytest configuration and shared fixtures.
"""

import pytest
from fastapi.testclient import TestClient

from mood_pharma.api import routes
from mood_pharma.core import database
from mood_pharma.core.models import HOUR_MS, Medication, MedicationDose, SleepRecord, SleepStage
from mood_pharma.core.pk_cache import ConcentrationCache

pytest_plugins = ('pytest_asyncio',)

# Hour-aligned reference instant (2023-11-14T22:00:00Z)
NOW = (1_700_000_000_000 // HOUR_MS) * HOUR_MS


@pytest.fixture
def medication():
    """30 h half-life, 20 L/kg, F=0.8, Ka=1/h."""
    return Medication(
        id="med-a",
        name="Slowdrug",
        half_life=30.0,
        volume_of_distribution=20.0,
        bioavailability=0.8,
        absorption_rate=1.0,
    )


@pytest.fixture
def dose_at():
    counter = iter(range(1, 10_000))

    def _make(timestamp, amount=20.0, medication_id="med-a"):
        return MedicationDose(id=f"dose-{next(counter)}", medication_id=medication_id,
                              timestamp=timestamp, dose_amount=amount)
    return _make


@pytest.fixture
def cache():
    return ConcentrationCache(max_entries=50, ttl_seconds=300)


@pytest.fixture
def sleep_records():
    """Build SleepRecords from (stage, minutes) pairs laid end to end."""
    def _make(start_ms, segments):
        records, t = [], start_ms
        for stage, minutes in segments:
            records.append(SleepRecord(timestamp=t, duration=minutes * 60, stage=SleepStage(stage)))
            t += int(minutes * 60_000)
        return records
    return _make


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "test.db")
    database.init_db()
    yield database
    database.close_connection()


@pytest.fixture
def client(tmp_path, monkeypatch):
    from mood_pharma.main import create_app

    monkeypatch.setattr(database, "DB_PATH", tmp_path / "api.db")
    monkeypatch.setattr(routes, "API_KEY", "")
    app = create_app(ConcentrationCache(max_entries=50, ttl_seconds=300))
    with TestClient(app) as c:
        yield c
    database.close_connection()
