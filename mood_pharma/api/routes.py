"""
FastAPI API routes for the mood/pharma core.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from dateutil.parser import ParserError, parse as parse_date
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from mood_pharma.config import (
    API_KEY,
    CURVE_DEFAULT_POINTS,
    CURVE_MAX_POINTS,
    DEFAULT_BODY_WEIGHT_KG,
    SLEEP_TARGET_HOURS,
)
from mood_pharma.core import database as db
from mood_pharma.core.insights_engine import (
    InsightSettings,
    analyze_concentration_variability,
    analyze_optimal_dose_interval,
    calculate_temporal_adherence,
    generate_insights_report,
)
from mood_pharma.core.models import (
    DAY_MS,
    HOUR_MS,
    InsightsReport,
    SleepRecord,
    TherapeuticRange,
)
from mood_pharma.core.pk_cache import ConcentrationCache
from mood_pharma.core.pk_engine import therapeutic_status, time_to_peak_hours
from mood_pharma.core.sleep_engine import (
    analyze_sleep_trends,
    build_sleep_session,
    calculate_sleep_debt,
    suggest_optimal_bedtime,
)

log = logging.getLogger("pk.api")

router = APIRouter(prefix="/api")


# --- Auth ---

def verify_api_key(x_api_key: str = Header(default="")):
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_cache(request: Request) -> ConcentrationCache:
    return request.app.state.pk_cache


def _parse_timestamp(value: Optional[str], default: Optional[int] = None) -> int:
    """Epoch ms from an ISO string or a plain epoch-ms number."""
    if value is None or value == "":
        return default if default is not None else int(time.time() * 1000)
    if value.lstrip("-").isdigit():
        return int(value)
    try:
        return int(parse_date(value).timestamp() * 1000)
    except (ParserError, ValueError, OverflowError):
        raise HTTPException(status_code=422, detail=f"Invalid timestamp: {value!r}") from None


def _require_medication(medication_id: str):
    med = db.get_medication(medication_id)
    if med is None:
        raise HTTPException(status_code=404, detail="Medication not found")
    return med


# --- Models ---

class MedicationRequest(BaseModel):
    name: str = Field(..., min_length=1)
    drug_class: Optional[str] = None
    half_life: float = Field(..., gt=0)
    volume_of_distribution: float = Field(..., gt=0)
    bioavailability: float = Field(..., gt=0, le=1)
    absorption_rate: float = Field(..., gt=0)
    therapeutic_range: Optional[TherapeuticRange] = None
    scheduled_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class MedicationUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    drug_class: Optional[str] = None
    half_life: Optional[float] = Field(None, gt=0)
    volume_of_distribution: Optional[float] = Field(None, gt=0)
    bioavailability: Optional[float] = Field(None, gt=0, le=1)
    absorption_rate: Optional[float] = Field(None, gt=0)
    therapeutic_range: Optional[TherapeuticRange] = None
    scheduled_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class DoseRequest(BaseModel):
    medication_id: str
    dose_amount: float = Field(..., gt=0)
    timestamp: Optional[str] = None
    notes: str = ""


class MoodRequest(BaseModel):
    mood_score: float = Field(..., ge=0, le=10)
    anxiety_level: Optional[float] = Field(None, ge=0, le=10)
    energy_level: Optional[float] = Field(None, ge=0, le=10)
    focus_level: Optional[float] = Field(None, ge=0, le=10)
    cognitive_score: Optional[float] = None
    attention_shift: Optional[float] = None
    notes: str = ""
    timestamp: Optional[str] = None


class SleepSessionRequest(BaseModel):
    id: Optional[str] = None
    records: list[SleepRecord] = Field(..., min_length=1)


class SleepTrendsRequest(BaseModel):
    sessions: list[SleepSessionRequest] = []
    target_hours: float = Field(default=SLEEP_TARGET_HOURS, gt=0, le=24)


# --- Medications ---

@router.post("/medications", dependencies=[Depends(verify_api_key)])
def create_medication(req: MedicationRequest):
    """Register a medication with its PK parameters."""
    data = req.model_dump(exclude={"therapeutic_range"})
    return db.insert_medication(therapeutic_range=req.therapeutic_range, **data)


@router.get("/medications", dependencies=[Depends(verify_api_key)])
def get_medications():
    return db.list_medications()


@router.get("/medications/{medication_id}", dependencies=[Depends(verify_api_key)])
def get_medication_route(medication_id: str):
    return _require_medication(medication_id)


@router.put("/medications/{medication_id}", dependencies=[Depends(verify_api_key)])
def update_medication_route(medication_id: str, req: MedicationUpdateRequest,
                            cache: ConcentrationCache = Depends(get_cache)):
    """Partial update; PK edits invalidate the medication's cached curves."""
    fields = req.model_dump(exclude_unset=True)
    if "therapeutic_range" in fields:
        fields["therapeutic_range"] = req.therapeutic_range
    med = db.update_medication(medication_id, **fields) if fields else db.get_medication(medication_id)
    if med is None:
        raise HTTPException(status_code=404, detail="Medication not found")
    cache.invalidate(medication_id)
    return med


@router.delete("/medications/{medication_id}", dependencies=[Depends(verify_api_key)])
def delete_medication_route(medication_id: str,
                            cache: ConcentrationCache = Depends(get_cache)):
    deleted = db.delete_medication(medication_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Medication not found")
    cache.invalidate(medication_id)
    return {"deleted": medication_id, "status": "ok"}


# --- Doses ---

@router.post("/doses", dependencies=[Depends(verify_api_key)])
def log_dose(req: DoseRequest, cache: ConcentrationCache = Depends(get_cache)):
    """Log a dose intake."""
    _require_medication(req.medication_id)
    dose = db.insert_dose(req.medication_id, req.dose_amount,
                          _parse_timestamp(req.timestamp), req.notes)
    cache.invalidate(req.medication_id)
    return dose


@router.get("/doses", dependencies=[Depends(verify_api_key)])
def get_doses(
    medication_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
):
    """Query doses, optionally for one medication and a time range."""
    return db.query_doses(
        medication_id,
        _parse_timestamp(start) if start else None,
        _parse_timestamp(end) if end else None,
    )


@router.delete("/doses/{dose_id}", dependencies=[Depends(verify_api_key)])
def delete_dose_route(dose_id: str, cache: ConcentrationCache = Depends(get_cache)):
    dose = db.delete_dose(dose_id)
    if dose is None:
        raise HTTPException(status_code=404, detail="Dose not found")
    cache.invalidate(dose.medication_id)
    return {"deleted": dose_id, "status": "ok"}


# --- Mood ---

@router.post("/mood", dependencies=[Depends(verify_api_key)])
def log_mood(req: MoodRequest):
    data = req.model_dump(exclude={"timestamp"})
    return db.insert_mood_entry(timestamp=_parse_timestamp(req.timestamp), **data)


@router.get("/mood", dependencies=[Depends(verify_api_key)])
def get_mood_entries(
    start: Optional[str] = None,
    end: Optional[str] = None,
    days: Optional[int] = Query(default=None, ge=1, le=3650),
):
    if days is not None and not start:
        now = int(time.time() * 1000)
        return db.query_mood_entries(now - days * DAY_MS, now)
    return db.query_mood_entries(
        _parse_timestamp(start) if start else None,
        _parse_timestamp(end) if end else None,
    )


@router.delete("/mood/{entry_id}", dependencies=[Depends(verify_api_key)])
def delete_mood_route(entry_id: str):
    deleted = db.delete_mood_entry(entry_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Mood entry not found")
    return {"deleted": entry_id, "status": "ok"}


# --- Concentration ---

@router.get("/concentration", dependencies=[Depends(verify_api_key)])
def get_concentration(
    medication_id: str,
    at: Optional[str] = None,
    body_weight: float = Query(default=DEFAULT_BODY_WEIGHT_KG, gt=0),
    cache: ConcentrationCache = Depends(get_cache),
):
    """Plasma concentration (mg/L) of one medication at a point in time (default: now)."""
    med = _require_medication(medication_id)
    t = _parse_timestamp(at)
    doses = db.query_doses(medication_id, end=t)
    value = cache.get_concentration(med, doses, t, body_weight)
    return {
        "medication_id": medication_id,
        "time": t,
        "concentration": value,
        "unit": med.therapeutic_range.unit if med.therapeutic_range else "mg/L",
        "therapeutic_status": therapeutic_status(med, value),
        "time_to_peak_hours": time_to_peak_hours(med),
    }


@router.get("/concentration/curve", dependencies=[Depends(verify_api_key)])
async def get_concentration_curve(
    medication_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    points: int = Query(default=CURVE_DEFAULT_POINTS, ge=2, le=CURVE_MAX_POINTS),
    body_weight: float = Query(default=DEFAULT_BODY_WEIGHT_KG, gt=0),
    cache: ConcentrationCache = Depends(get_cache),
):
    """
    Concentration curve over [start, end] (default: last 48h to now).
    Concurrent identical requests share one computation.
    """
    med = _require_medication(medication_id)
    end_ms = _parse_timestamp(end)
    start_ms = _parse_timestamp(start, default=end_ms - 48 * HOUR_MS)
    doses = db.query_doses(medication_id, end=end_ms)

    curve = await cache.get_curve_async(med, doses, start_ms, end_ms, points,
                                        body_weight)
    return {
        "medication_id": medication_id,
        "start": start_ms,
        "end": end_ms,
        "points": curve,
        "therapeutic_range": med.therapeutic_range,
    }


# --- Insights ---

@router.get("/insights", dependencies=[Depends(verify_api_key)])
def get_insights(
    days: Optional[int] = Query(default=30, ge=1, le=3650),
    method: str = Query(default="pearson", pattern="^(pearson|spearman)$"),
    cache: ConcentrationCache = Depends(get_cache),
):
    """Ranked medication-mood insights and red flags for the last `days` days."""
    now = int(time.time() * 1000)
    try:
        return generate_insights_report(
            db.list_medications(), db.query_doses(), db.query_mood_entries(),
            days, now=now, cache=cache, settings=InsightSettings(method=method),
        )
    except Exception:
        log.exception("Insights report failed")
        start = now - days * DAY_MS if days else now
        return InsightsReport(status="error", generated_at=now,
                              timeframe_start=start, timeframe_end=now)


@router.get("/insights/adherence", dependencies=[Depends(verify_api_key)])
def get_adherence(days: int = Query(default=30, ge=1, le=365)):
    """Timing adherence against each medication's scheduled time."""
    now = int(time.time() * 1000)
    since = now - days * DAY_MS
    return calculate_temporal_adherence(
        db.list_medications(), db.query_doses(start=since, end=now),
        db.query_mood_entries(since, now),
    )


@router.get("/insights/concentration-stability", dependencies=[Depends(verify_api_key)])
def get_concentration_stability(days: int = Query(default=90, ge=14, le=3650)):
    """Per medication: mood vs level stability, and mood vs dose interval."""
    now = int(time.time() * 1000)
    since = now - days * DAY_MS
    doses = db.query_doses(start=since, end=now)
    moods = db.query_mood_entries(since, now)
    return [
        {
            "medication_id": med.id,
            "medication_name": med.name,
            "variability": analyze_concentration_variability(med, doses, moods),
            "dose_interval": analyze_optimal_dose_interval(med, doses, moods),
        }
        for med in db.list_medications()
    ]


# --- Sleep ---

@router.post("/sleep/session", dependencies=[Depends(verify_api_key)])
def analyze_sleep_session_route(req: SleepSessionRequest):
    """Metrics and score for one night of stage records."""
    return build_sleep_session(req.records, req.id)


@router.post("/sleep/trends", dependencies=[Depends(verify_api_key)])
def analyze_sleep_trends_route(req: SleepTrendsRequest):
    sessions = [build_sleep_session(s.records, s.id) for s in req.sessions]
    return {
        "analytics": analyze_sleep_trends(sessions),
        "sleep_debt_minutes": calculate_sleep_debt(sessions, req.target_hours),
        "bedtime": suggest_optimal_bedtime(sessions),
    }


# --- Cache ---

@router.delete("/cache", dependencies=[Depends(verify_api_key)])
def clear_cache(medication_id: Optional[str] = None,
                cache: ConcentrationCache = Depends(get_cache)):
    return {"invalidated": cache.invalidate(medication_id), "status": "ok"}


@router.get("/cache/stats", dependencies=[Depends(verify_api_key)])
def cache_stats(cache: ConcentrationCache = Depends(get_cache)):
    cache.clear_expired()
    return cache.stats()


@router.get("/status")
def status():
    """Health check endpoint."""
    return {
        "service": "mood-pharma-core",
        "status": "ok",
        "version": "1.0.0",
        "timestamp": datetime.now().isoformat(),
        "model": "one-compartment-bateman",
    }
