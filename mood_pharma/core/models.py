"""
Domain records consumed and produced by the PK / insight / sleep core.

Timestamps are epoch milliseconds throughout. Records coming from the data
store are trusted structurally; PK parameter ranges are checked by the PK
engine at the point of use, not here.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


# ── Medications & doses ──────────────────────────────────────────────

class TherapeuticRange(BaseModel):
    min: float
    max: float
    unit: str = "mg/L"


class Medication(BaseModel):
    id: str
    name: str
    drug_class: Optional[str] = None
    half_life: float                  # hours
    volume_of_distribution: float     # L/kg
    bioavailability: float            # fraction (0, 1]
    absorption_rate: float            # Ka, 1/h
    therapeutic_range: Optional[TherapeuticRange] = None
    scheduled_time: Optional[str] = None  # "HH:MM", for adherence
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


class MedicationDose(BaseModel):
    id: str
    medication_id: str
    timestamp: int
    dose_amount: float                # mg
    notes: str = ""


class ConcentrationPoint(BaseModel):
    time: int
    concentration: Optional[float] = None


# ── Mood ─────────────────────────────────────────────────────────────

class MoodMetric(str, Enum):
    MOOD = "mood"
    ANXIETY = "anxiety"
    ENERGY = "energy"
    FOCUS = "focus"
    COGNITION = "cognition"
    ATTENTION_SHIFT = "attention_shift"


_METRIC_FIELDS = {
    MoodMetric.MOOD: "mood_score",
    MoodMetric.ANXIETY: "anxiety_level",
    MoodMetric.ENERGY: "energy_level",
    MoodMetric.FOCUS: "focus_level",
    MoodMetric.COGNITION: "cognitive_score",
    MoodMetric.ATTENTION_SHIFT: "attention_shift",
}

METRIC_LABELS = {
    MoodMetric.MOOD: "Mood",
    MoodMetric.ANXIETY: "Anxiety",
    MoodMetric.ENERGY: "Energy",
    MoodMetric.FOCUS: "Focus",
    MoodMetric.COGNITION: "Cognition",
    MoodMetric.ATTENTION_SHIFT: "Attentional flexibility",
}

# For these metrics LOWER is better
LOWER_IS_BETTER = {MoodMetric.ANXIETY}


class MoodEntry(BaseModel):
    """A mood log. Only mood_score is mandatory; missing sub-metrics are None."""

    id: str
    timestamp: int
    mood_score: float
    anxiety_level: Optional[float] = None
    energy_level: Optional[float] = None
    focus_level: Optional[float] = None
    cognitive_score: Optional[float] = None
    attention_shift: Optional[float] = None
    notes: str = ""

    def metric(self, metric: MoodMetric) -> Optional[float]:
        return getattr(self, _METRIC_FIELDS[metric])


# ── Statistics / insights ────────────────────────────────────────────

Significance = Literal["high", "medium", "low", "none"]


class CorrelationResult(BaseModel):
    value: float = 0.0
    p_value: float = 1.0
    significance: Significance = "none"
    sample_size: int = 0
    method: Literal["pearson", "spearman"] = "pearson"
    defined: bool = False


class LagCorrelation(BaseModel):
    lag_hours: float
    result: CorrelationResult


class ActionableInsight(BaseModel):
    id: str
    medication: str
    medication_id: str
    metric: MoodMetric
    metric_label: str
    correlation: float
    p_value: float
    sample_size: int
    lag_hours: float
    method: Literal["pearson", "spearman"]
    significance: Significance
    direction: Literal["positive", "negative"]
    impact_score: float
    is_desirable: bool
    recommendation: str
    interpretation: str


class RedFlag(BaseModel):
    id: str
    type: Literal[
        "adverse_correlation", "mood_low", "anxiety_high", "energy_low",
        "volatility", "cognitive_decline", "adherence",
    ]
    severity: Literal["warning", "alert"]
    title: str
    description: str
    suggestion: str
    metric: Optional[MoodMetric] = None
    medication_id: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None
    entries_affected: int = 0


class StabilityMetrics(BaseModel):
    metric: MoodMetric
    metric_label: str
    mean: float
    standard_deviation: float
    coefficient_of_variation: float
    stability: Literal["stable", "variable", "volatile"]
    trend_7d: float
    trend_30d: float
    data_points: int


class DataQuality(BaseModel):
    mood_entries: int = 0
    doses: int = 0
    medications: int = 0
    coverage: float = 0.0   # % of days in the window with a mood entry
    sufficient: bool = False


class InsightsReport(BaseModel):
    status: Literal["ok", "insufficient_data", "error"] = "ok"
    generated_at: int
    timeframe_start: int
    timeframe_end: int
    data_quality: DataQuality = Field(default_factory=DataQuality)
    top_positive_impacts: list[ActionableInsight] = Field(default_factory=list)
    top_negative_impacts: list[ActionableInsight] = Field(default_factory=list)
    all_insights: list[ActionableInsight] = Field(default_factory=list)
    red_flags: list[RedFlag] = Field(default_factory=list)
    stability_metrics: list[StabilityMetrics] = Field(default_factory=list)


class DoseDeviation(BaseModel):
    timestamp: int
    deviation_minutes: float
    mood_after: Optional[float] = None


class TemporalAdherence(BaseModel):
    medication_id: str
    medication_name: str
    scheduled_time: str
    total_doses: int
    on_time_doses: int
    late_doses: int
    early_doses: int
    average_deviation_minutes: float
    adherence_score: float
    pattern: Literal["consistent", "variable", "irregular"]
    recent_trend: Literal["improving", "stable", "declining", "insufficient_data"]
    deviations: list[DoseDeviation] = Field(default_factory=list)
    deviation_vs_mood: Optional[CorrelationResult] = None


class TTestResult(BaseModel):
    t_statistic: float = 0.0
    p_value: float = 1.0
    effect_size: float = 0.0      # Cohen's d, pooled SD
    significant: bool = False
    defined: bool = False


class VariabilityWindow(BaseModel):
    start: int
    end: int
    concentration_mean: float
    concentration_cv: float
    mood_mean: float
    is_stable: bool = False


class ConcentrationVariability(BaseModel):
    """Mood in windows of steady vs fluctuating concentration."""

    medication_id: str
    medication_name: str
    window_days: float
    total_windows: int
    stable_windows: int
    varying_windows: int
    median_cv: float
    stable_period_mood_mean: float
    varying_period_mood_mean: float
    mood_difference: float
    cv_vs_mood: CorrelationResult
    t_test: TTestResult
    interpretation: str
    recommendation: str
    windows: list[VariabilityWindow] = Field(default_factory=list)


class DoseIntervalBin(BaseModel):
    label: str
    min_hours: float
    max_hours: float
    count: int
    mood_mean: float
    mood_sd: float


class DoseIntervalAnalysis(BaseModel):
    medication_id: str
    medication_name: str
    total_intervals: int
    interval_vs_mood: CorrelationResult
    optimal_interval_hours: float
    optimal_interval_label: str
    bins: list[DoseIntervalBin] = Field(default_factory=list)
    interpretation: str
    recommendation: str


# ── Sleep ────────────────────────────────────────────────────────────

class SleepStage(str, Enum):
    LIGHT = "light"
    DEEP = "deep"
    REM = "rem"
    AWAKE = "awake"


class SleepRecord(BaseModel):
    timestamp: int
    duration: float                   # seconds
    stage: SleepStage


class SleepMetrics(BaseModel):
    total_sleep_time: float = 0.0      # minutes
    light_sleep_time: float = 0.0
    deep_sleep_time: float = 0.0
    rem_sleep_time: float = 0.0
    awake_time: float = 0.0

    light_sleep_percentage: float = 0.0
    deep_sleep_percentage: float = 0.0
    rem_sleep_percentage: float = 0.0
    awake_percentage: float = 0.0

    sleep_efficiency: float = 0.0
    wake_after_sleep_onset: float = 0.0
    number_of_awakenings: int = 0
    average_awakening_duration: float = 0.0

    time_to_deep_sleep: Optional[float] = None
    time_to_rem: Optional[float] = None
    deep_sleep_continuity: float = 0.0
    rem_continuity: float = 0.0

    sleep_score: int = 0


class SleepSession(BaseModel):
    id: str
    date: str                          # YYYY-MM-DD (local)
    start_time: int
    end_time: int
    total_duration: float              # minutes
    records: list[SleepRecord] = Field(default_factory=list)
    metrics: SleepMetrics = Field(default_factory=SleepMetrics)


class SleepTrends(BaseModel):
    sleep_efficiency_trend: float = 0.0
    deep_sleep_trend: float = 0.0
    total_sleep_time_trend: float = 0.0


class SleepAnalytics(BaseModel):
    weekly_average: dict[str, float] = Field(default_factory=dict)
    monthly_average: dict[str, float] = Field(default_factory=dict)
    trends: SleepTrends = Field(default_factory=SleepTrends)
    recommendations: list[str] = Field(default_factory=list)


class BedtimeSuggestion(BaseModel):
    bedtime: str
    confidence: float
    reasoning: str
