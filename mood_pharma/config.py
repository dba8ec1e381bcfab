"""
Mood/Pharma core configuration.
All settings via environment variables with sensible defaults.
"""

import os
from pathlib import Path


def _int_list(raw: str) -> list[int]:
    return [int(v) for v in raw.split(",") if v.strip()]


# --- Paths ---
BASE_DIR = Path(os.getenv("MOOD_PHARMA_DATA_DIR", "/data"))
DB_PATH = BASE_DIR / "mood_pharma.db"

# --- Auth ---
API_KEY = os.getenv("MOOD_PHARMA_API_KEY", "")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# --- User Anthropometrics ---
DEFAULT_BODY_WEIGHT_KG: float = float(os.getenv("DEFAULT_BODY_WEIGHT_KG", "70"))

# --- Concentration curves ---
# Values below the floor are reported as None (no rendering artifacts).
# Inherited magic constant, pending review by a domain expert.
CONCENTRATION_NOISE_FLOOR: float = float(os.getenv("CONCENTRATION_NOISE_FLOOR", "0.001"))
CURVE_DEFAULT_POINTS: int = int(os.getenv("CURVE_DEFAULT_POINTS", "100"))
CURVE_MAX_POINTS: int = int(os.getenv("CURVE_MAX_POINTS", "5000"))
# Relative tolerance for the Ka == Ke limiting form of the Bateman function
KA_KE_EPSILON: float = 1e-9

# --- Concentration cache ---
# Bump PK_CACHE_VERSION whenever the PK formula changes.
PK_CACHE_VERSION: int = 3
PK_CACHE_MAX_ENTRIES: int = int(os.getenv("PK_CACHE_MAX_ENTRIES", "500"))
PK_CACHE_TTL_SEC: float = float(os.getenv("PK_CACHE_TTL_SEC", "300"))  # 5 min

# --- Insight engine ---
# Minimum paired samples before a correlation is reported.
# Inherited magic constant, pending review by a domain expert.
INSIGHT_MIN_SAMPLES: int = int(os.getenv("INSIGHT_MIN_SAMPLES", "3"))
INSIGHT_MIN_ABS_CORRELATION: float = float(os.getenv("INSIGHT_MIN_ABS_CORRELATION", "0.1"))
INSIGHT_RED_FLAG_CORRELATION: float = float(os.getenv("INSIGHT_RED_FLAG_CORRELATION", "0.5"))
INSIGHT_TOP_N: int = int(os.getenv("INSIGHT_TOP_N", "5"))
INSIGHT_METHOD = os.getenv("INSIGHT_METHOD", "pearson")
# Whole hours: lags are offsets on the hourly series grid
ACUTE_LAG_HOURS: list[int] = _int_list(os.getenv("ACUTE_LAG_HOURS", "0,1,2,4,6"))
CHRONIC_LAG_HOURS: list[int] = _int_list(os.getenv("CHRONIC_LAG_HOURS", "24,48"))
CHRONIC_TREND_WINDOW_HOURS: float = 48.0
ACUTE_TREND_MIN_WINDOW_HOURS: float = 6.0
DOSE_LOOKBACK_MIN_DAYS: float = 7.0
DOSE_LOOKBACK_HALF_LIVES: float = 5.0

# Drug classes analysed on a days scale (trend) instead of peaks
CHRONIC_MEDICATION_CLASSES = {"SSRI", "SNRI", "Mood Stabilizer", "Antipsychotic"}

# --- Level-based red flags (last 7 days) ---
RED_FLAG_THRESHOLDS = {
    "mood_low": {"value": 4.0, "entries": 3},
    "anxiety_high": {"value": 7.0, "entries": 2},
    "energy_low": {"value": 3.0, "entries": 3},
    "volatility": {"cv": 0.4, "entries": 5},
    "cognitive_decline": {"std_devs": 2.0, "entries": 5},
    "adherence": {"min_doses_7d": 5},
}

# --- Concentration stability ---
VARIABILITY_WINDOW_DAYS: float = 7.0
# Hourly samples below this level are left out of a window's CV
VARIABILITY_MIN_CONCENTRATION: float = 0.01
VARIABILITY_MIN_WINDOW_SAMPLES: int = 24
VARIABILITY_MIN_WINDOWS: int = 4
# Dose intervals outside (min, max) hours are ignored
DOSE_INTERVAL_RANGE_HOURS = (4.0, 72.0)
# Mood is read 4-12 h after the dose that closes the interval
DOSE_INTERVAL_MOOD_WINDOW_HOURS = (4.0, 12.0)
DOSE_INTERVAL_BINS = [
    (8, 16, "8-16h (twice daily)"),
    (16, 20, "16-20h"),
    (20, 26, "20-26h (daily)"),
    (26, 36, "26-36h (daily+)"),
    (36, 60, "36-60h (irregular)"),
]

# --- Temporal adherence ---
ADHERENCE_TOLERANCE_MIN: int = int(os.getenv("ADHERENCE_TOLERANCE_MIN", "30"))

# --- Sleep ---
SLEEP_TARGET_HOURS: float = float(os.getenv("SLEEP_TARGET_HOURS", "8"))
SLEEP_TREND_DAYS: int = 14
SLEEP_DEFAULT_BEDTIME = "22:30"
