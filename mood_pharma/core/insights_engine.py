"""
Insight engine: relates medication exposure to mood metrics.

Per (medication, metric) pair:
  1. Exposure series on an hourly grid over the window: instant
     concentration for acute medications, 48h moving-average trend for
     chronic ones (SSRI/SNRI/mood stabilizer/antipsychotic).
  2. Metric series on the same grid: mean of the mood entries per hour.
  3. Lag search: correlate exposure(t) with metric(t + lag) for each
     candidate lag, keep the strongest |r|.
Results pass the sample-size and |r| floors before they are ranked into
top positive (r > 0, descending) and top negative (r < 0, ascending)
impacts. Undesirable strong correlations with mood/anxiety become red flags,
next to level-based flags over the last 7 days.

Per medication, two further analyses: mood in steady vs fluctuating
concentration windows, and mood against the interval between doses.

Empty or sparse data is a normal state (new users): it yields an
"insufficient_data" report, never an exception.
"""

import logging
import math
import time
from datetime import datetime
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from mood_pharma.config import (
    ACUTE_LAG_HOURS,
    ACUTE_TREND_MIN_WINDOW_HOURS,
    ADHERENCE_TOLERANCE_MIN,
    CHRONIC_LAG_HOURS,
    CHRONIC_TREND_WINDOW_HOURS,
    CONCENTRATION_NOISE_FLOOR,
    DEFAULT_BODY_WEIGHT_KG,
    DOSE_INTERVAL_BINS,
    DOSE_INTERVAL_MOOD_WINDOW_HOURS,
    DOSE_INTERVAL_RANGE_HOURS,
    DOSE_LOOKBACK_HALF_LIVES,
    DOSE_LOOKBACK_MIN_DAYS,
    INSIGHT_METHOD,
    INSIGHT_MIN_ABS_CORRELATION,
    INSIGHT_MIN_SAMPLES,
    INSIGHT_RED_FLAG_CORRELATION,
    INSIGHT_TOP_N,
    RED_FLAG_THRESHOLDS,
    VARIABILITY_MIN_CONCENTRATION,
    VARIABILITY_MIN_WINDOW_SAMPLES,
    VARIABILITY_MIN_WINDOWS,
    VARIABILITY_WINDOW_DAYS,
)
from mood_pharma.core import pk_engine
from mood_pharma.core.models import (
    DAY_MS,
    HOUR_MS,
    LOWER_IS_BETTER,
    METRIC_LABELS,
    ActionableInsight,
    ConcentrationVariability,
    DataQuality,
    DoseDeviation,
    DoseIntervalAnalysis,
    DoseIntervalBin,
    InsightsReport,
    Medication,
    MedicationDose,
    MoodEntry,
    MoodMetric,
    RedFlag,
    StabilityMetrics,
    TemporalAdherence,
    VariabilityWindow,
)
from mood_pharma.core.pk_cache import ConcentrationCache
from mood_pharma.core.statistics_engine import (
    best_lag_correlation,
    descriptive_stats,
    pearson_correlation,
    two_sample_t_test,
)

log = logging.getLogger("pk.insights")

# Metrics whose adverse correlation with a medication is a red flag
CLINICAL_METRICS = {MoodMetric.MOOD, MoodMetric.ANXIETY}


class InsightSettings(BaseModel):
    min_samples: int = Field(default=INSIGHT_MIN_SAMPLES, ge=3)
    min_abs_correlation: float = Field(default=INSIGHT_MIN_ABS_CORRELATION, ge=0, le=1)
    red_flag_correlation: float = Field(default=INSIGHT_RED_FLAG_CORRELATION, ge=0, le=1)
    top_n: int = Field(default=INSIGHT_TOP_N, ge=1)
    acute_lag_hours: list[int] = Field(default_factory=lambda: list(ACUTE_LAG_HOURS))
    chronic_lag_hours: list[int] = Field(default_factory=lambda: list(CHRONIC_LAG_HOURS))
    method: str = Field(default=INSIGHT_METHOD, pattern="^(pearson|spearman)$")
    body_weight: float = Field(default=DEFAULT_BODY_WEIGHT_KG, gt=0)
    noise_floor: float = Field(default=CONCENTRATION_NOISE_FLOOR, ge=0)


# ── Series construction ──────────────────────────────────────────────

def hourly_grid(start: int, end: int) -> list[int]:
    first = (start // HOUR_MS) * HOUR_MS
    last = -(-end // HOUR_MS) * HOUR_MS
    return list(range(first, last + 1, HOUR_MS))


def dose_lookback_ms(medication: Medication) -> float:
    return max(DOSE_LOOKBACK_MIN_DAYS * DAY_MS,
               medication.half_life * DOSE_LOOKBACK_HALF_LIVES * HOUR_MS)


def trend_window_ms(medication: Medication) -> float:
    if pk_engine.is_chronic_medication(medication):
        hours = CHRONIC_TREND_WINDOW_HOURS
    else:
        hours = max(ACUTE_TREND_MIN_WINDOW_HOURS, 3.5 * medication.half_life)
    return hours * HOUR_MS


def exposure_series(medication: Medication, doses: Sequence[MedicationDose],
                    grid: Sequence[int], settings: InsightSettings,
                    cache: Optional[ConcentrationCache] = None) -> list[Optional[float]]:
    """Concentration on the hourly grid (trend for chronic meds), None when absent."""
    if len(grid) < 2:
        return [None] * len(grid)
    if cache is not None:
        curve = cache.get_curve(medication, doses, grid[0], grid[-1], len(grid),
                                settings.body_weight)
    else:
        curve = pk_engine.build_concentration_curve(
            medication, doses, grid[0], grid[-1], len(grid), settings.body_weight,
            noise_floor=settings.noise_floor,
        )
    values = [p.concentration for p in curve]
    if pk_engine.is_chronic_medication(medication):
        values = pk_engine.moving_average_trend(grid, values, trend_window_ms(medication))
    return values


def metric_series(entries: Sequence[MoodEntry], metric: MoodMetric,
                  grid: Sequence[int]) -> list[Optional[float]]:
    """Mean metric value per hourly bucket of the grid."""
    buckets: dict[int, list[float]] = {}
    for entry in entries:
        value = entry.metric(metric)
        if value is None or not math.isfinite(value):
            continue
        buckets.setdefault((entry.timestamp // HOUR_MS) * HOUR_MS, []).append(value)
    return [
        math.fsum(buckets[t]) / len(buckets[t]) if t in buckets else None
        for t in grid
    ]


# ── Wording ──────────────────────────────────────────────────────────

def _is_desirable(metric: MoodMetric, correlation: float) -> bool:
    if metric in LOWER_IS_BETTER:
        return correlation < 0
    return correlation > 0


def _strength_label(r: float) -> str:
    strength = abs(r)
    if strength > 0.7:
        return "strong"
    if strength > 0.4:
        return "moderate"
    return "weak"


def _recommendation(med_name: str, metric: MoodMetric, desirable: bool) -> str:
    label = METRIC_LABELS[metric].lower()
    if desirable:
        if metric in LOWER_IS_BETTER:
            return f"{med_name} is associated with lower {label}. Keep up adherence."
        return f"{med_name} is associated with better {label}. Keep monitoring to confirm the pattern."
    if metric in LOWER_IS_BETTER:
        return f"{med_name} may be increasing your {label}. Discuss it with your doctor."
    return f"{med_name} may be affecting your {label} negatively. Track it and talk to your doctor."


def _interpretation(r: float, p_value: float, n: int, lag_hours: float, method: str) -> str:
    direction = "positive" if r > 0 else "negative"
    if p_value < 0.01:
        confidence = "high confidence"
    elif p_value < 0.05:
        confidence = "moderate confidence"
    else:
        confidence = "low confidence"
    parts = [
        f"{_strength_label(r).capitalize()} {direction} correlation (r={r:.2f})",
        f"{confidence} (p={p_value:.3f})",
        f"n={n}",
    ]
    if lag_hours:
        parts.append(f"lag +{lag_hours:g}h")
    parts.append(method)
    return " · ".join(parts)


def impact_score(correlation: float, p_value: float) -> float:
    """|r| weighted by -log10(p), p floored at 1e-4."""
    return abs(correlation) * -math.log10(max(p_value, 0.0001))


# ── Medication insights ──────────────────────────────────────────────

def generate_medication_insights(
    medications: Sequence[Medication],
    doses: Sequence[MedicationDose],
    mood_entries: Sequence[MoodEntry],
    timeframe_start: int,
    timeframe_end: int,
    settings: Optional[InsightSettings] = None,
    cache: Optional[ConcentrationCache] = None,
) -> list[ActionableInsight]:
    """All defined (medication, metric) correlations, sorted by impact score."""
    settings = settings or InsightSettings()
    entries = [e for e in mood_entries if timeframe_start <= e.timestamp <= timeframe_end]
    if len(entries) < settings.min_samples:
        return []

    grid = hourly_grid(timeframe_start, timeframe_end)
    insights = []
    for medication in medications:
        lookback = timeframe_start - dose_lookback_ms(medication)
        med_doses = [d for d in doses
                     if d.medication_id == medication.id and lookback <= d.timestamp <= timeframe_end]
        if not med_doses:
            continue

        exposure = exposure_series(medication, med_doses, grid, settings, cache)
        chronic = pk_engine.is_chronic_medication(medication)
        lags = settings.chronic_lag_hours if chronic else settings.acute_lag_hours

        for metric in MoodMetric:
            series = metric_series(entries, metric, grid)
            best = best_lag_correlation(exposure, series, lags,
                                        settings.min_samples, settings.method)
            if best is None and chronic:
                best = best_lag_correlation(exposure, series, [0],
                                            settings.min_samples, settings.method)
            if best is None:
                continue
            result = best.result
            desirable = _is_desirable(metric, result.value)
            insights.append(ActionableInsight(
                id=f"{medication.id}-{metric.value}",
                medication=medication.name,
                medication_id=medication.id,
                metric=metric,
                metric_label=METRIC_LABELS[metric],
                correlation=result.value,
                p_value=result.p_value,
                sample_size=result.sample_size,
                lag_hours=best.lag_hours,
                method=result.method,
                significance=result.significance,
                direction="positive" if result.value > 0 else "negative",
                impact_score=impact_score(result.value, result.p_value),
                is_desirable=desirable,
                recommendation=_recommendation(medication.name, metric, desirable),
                interpretation=_interpretation(result.value, result.p_value,
                                               result.sample_size, best.lag_hours,
                                               result.method),
            ))

    insights.sort(key=lambda i: i.impact_score, reverse=True)
    return insights


def _passes_floors(insight: ActionableInsight, settings: InsightSettings) -> bool:
    return (insight.sample_size >= settings.min_samples
            and abs(insight.correlation) >= settings.min_abs_correlation
            and insight.correlation != 0)


# ── Red flags ────────────────────────────────────────────────────────

def correlation_red_flags(insights: Sequence[ActionableInsight],
                          settings: InsightSettings) -> list[RedFlag]:
    """Strong undesirable correlations with clinically relevant metrics."""
    flags = []
    for insight in insights:
        if insight.metric not in CLINICAL_METRICS or insight.is_desirable:
            continue
        if abs(insight.correlation) < settings.red_flag_correlation:
            continue
        if insight.metric in LOWER_IS_BETTER:
            title = f"{insight.metric_label} rising with {insight.medication}"
        else:
            title = f"{insight.metric_label} falling with {insight.medication}"
        flags.append(RedFlag(
            id=f"adverse-{insight.medication_id}-{insight.metric.value}",
            type="adverse_correlation",
            severity="alert" if abs(insight.correlation) >= 0.7 else "warning",
            title=title,
            description=insight.interpretation,
            suggestion="Discuss this pattern with your doctor before changing the dose.",
            metric=insight.metric,
            medication_id=insight.medication_id,
            value=insight.correlation,
            threshold=settings.red_flag_correlation,
            entries_affected=insight.sample_size,
        ))
    return flags


def detect_red_flags(mood_entries: Sequence[MoodEntry], doses: Sequence[MedicationDose],
                     medications: Sequence[Medication],
                     timeframe_end: int) -> list[RedFlag]:
    """Level-based warnings over the last 7 days."""
    flags: list[RedFlag] = []
    since = timeframe_end - 7 * DAY_MS
    recent = sorted(
        (e for e in mood_entries if since <= e.timestamp <= timeframe_end),
        key=lambda e: e.timestamp, reverse=True,
    )
    thresholds = RED_FLAG_THRESHOLDS

    if len(recent) >= 3:
        low_mood = [e.mood_score for e in recent if e.mood_score <= thresholds["mood_low"]["value"]]
        if len(low_mood) >= thresholds["mood_low"]["entries"]:
            flags.append(RedFlag(
                id="mood-low-persistent", type="mood_low",
                severity="alert" if len(low_mood) >= 5 else "warning",
                title="Persistently low mood",
                description=(f"Mood at or below {thresholds['mood_low']['value']:g}/10 "
                             f"in {len(low_mood)} recent entries."),
                suggestion="Consider talking to your doctor and look for contributing factors.",
                metric=MoodMetric.MOOD, value=math.fsum(low_mood) / len(low_mood),
                threshold=thresholds["mood_low"]["value"], entries_affected=len(low_mood),
            ))

        high_anx = [e.anxiety_level for e in recent
                    if e.anxiety_level is not None
                    and e.anxiety_level >= thresholds["anxiety_high"]["value"]]
        if len(high_anx) >= thresholds["anxiety_high"]["entries"]:
            flags.append(RedFlag(
                id="anxiety-high-persistent", type="anxiety_high",
                severity="alert" if len(high_anx) >= 4 else "warning",
                title="Elevated anxiety",
                description=(f"Anxiety at or above {thresholds['anxiety_high']['value']:g}/10 "
                             f"in {len(high_anx)} recent entries."),
                suggestion="Try relaxation techniques; if it persists, ask about a dose adjustment.",
                metric=MoodMetric.ANXIETY, value=math.fsum(high_anx) / len(high_anx),
                threshold=thresholds["anxiety_high"]["value"], entries_affected=len(high_anx),
            ))

        low_energy = [e.energy_level for e in recent
                      if e.energy_level is not None
                      and e.energy_level <= thresholds["energy_low"]["value"]]
        if len(low_energy) >= thresholds["energy_low"]["entries"]:
            flags.append(RedFlag(
                id="energy-low-persistent", type="energy_low", severity="warning",
                title="Persistently low energy",
                description=(f"Energy at or below {thresholds['energy_low']['value']:g}/10 "
                             f"in {len(low_energy)} recent entries."),
                suggestion="Check sleep quality and nutrition.",
                metric=MoodMetric.ENERGY, value=math.fsum(low_energy) / len(low_energy),
                threshold=thresholds["energy_low"]["value"], entries_affected=len(low_energy),
            ))

        moods = [e.mood_score for e in recent]
        if len(moods) >= thresholds["volatility"]["entries"]:
            cv = descriptive_stats(moods)["cv"]
            if cv > thresholds["volatility"]["cv"]:
                flags.append(RedFlag(
                    id="mood-volatile", type="volatility",
                    severity="alert" if cv > 0.5 else "warning",
                    title="High mood variability",
                    description=f"Mood varies strongly (CV={cv * 100:.0f}%).",
                    suggestion="Try to identify triggers for the swings.",
                    metric=MoodMetric.MOOD, value=cv,
                    threshold=thresholds["volatility"]["cv"], entries_affected=len(moods),
                ))

        cognition = [e.cognitive_score for e in recent if e.cognitive_score is not None]
        if len(cognition) >= thresholds["cognitive_decline"]["entries"]:
            recent_mean = math.fsum(cognition[:3]) / 3
            older_mean = math.fsum(cognition[-3:]) / 3
            std = descriptive_stats(cognition)["std_dev"]
            if recent_mean < older_mean - thresholds["cognitive_decline"]["std_devs"] * std:
                flags.append(RedFlag(
                    id="cognitive-decline", type="cognitive_decline", severity="warning",
                    title="Possible cognitive decline",
                    description=(f"Recent cognition ({recent_mean:.1f}) is below the "
                                 f"earlier average ({older_mean:.1f})."),
                    suggestion="Review sleep and stress; it may be a medication effect.",
                    metric=MoodMetric.COGNITION, value=recent_mean,
                    threshold=older_mean, entries_affected=3,
                ))

    min_doses = thresholds["adherence"]["min_doses_7d"]
    for med in medications:
        count = sum(1 for d in doses
                    if d.medication_id == med.id and since <= d.timestamp <= timeframe_end)
        if 0 < count < min_doses:
            flags.append(RedFlag(
                id=f"adherence-{med.id}", type="adherence",
                severity="alert" if count < 3 else "warning",
                title=f"Low adherence: {med.name}",
                description=f"Only {count} doses of {med.name} logged in the last 7 days.",
                suggestion="Regular dosing keeps the therapeutic effect consistent.",
                medication_id=med.id, value=float(count), threshold=float(min_doses),
                entries_affected=7 - count,
            ))
    return flags


# ── Stability ────────────────────────────────────────────────────────

def _mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values) if values else 0.0


def calculate_stability_metrics(mood_entries: Sequence[MoodEntry],
                                timeframe_start: int,
                                timeframe_end: int) -> list[StabilityMetrics]:
    entries = sorted(
        (e for e in mood_entries if timeframe_start <= e.timestamp <= timeframe_end),
        key=lambda e: e.timestamp,
    )
    if len(entries) < 3:
        return []
    day7 = timeframe_end - 7 * DAY_MS
    day30 = timeframe_end - 30 * DAY_MS

    out = []
    for metric in MoodMetric:
        pairs = [(e.timestamp, e.metric(metric)) for e in entries if e.metric(metric) is not None]
        if len(pairs) < 3:
            continue
        values = [v for _, v in pairs]
        stats = descriptive_stats(values)
        cv = stats["cv"]

        recent7 = [v for t, v in pairs if t >= day7]
        older7 = [v for t, v in pairs if t < day7]
        trend7 = _mean(recent7) - _mean(older7) if recent7 and older7 else 0.0

        last30 = [v for t, v in pairs if t >= day30]
        half = -(-len(last30) // 2)
        trend30 = _mean(last30[-half:]) - _mean(last30[:half]) if len(last30) >= 2 else 0.0

        if cv < 0.2:
            stability = "stable"
        elif cv < 0.4:
            stability = "variable"
        else:
            stability = "volatile"
        out.append(StabilityMetrics(
            metric=metric,
            metric_label=METRIC_LABELS[metric],
            mean=stats["mean"],
            standard_deviation=stats["std_dev"],
            coefficient_of_variation=cv,
            stability=stability,
            trend_7d=trend7,
            trend_30d=trend30,
            data_points=len(values),
        ))
    return out


# ── Temporal adherence ───────────────────────────────────────────────

def _minutes_of_day(timestamp_ms: int) -> int:
    dt = datetime.fromtimestamp(timestamp_ms / 1000)
    return dt.hour * 60 + dt.minute


def _deviation_minutes(dose_minutes: int, scheduled_minutes: int) -> int:
    diff = dose_minutes - scheduled_minutes
    if diff > 720:
        diff -= 1440
    if diff < -720:
        diff += 1440
    return diff


def calculate_temporal_adherence(medications: Sequence[Medication],
                                 doses: Sequence[MedicationDose],
                                 mood_entries: Sequence[MoodEntry],
                                 tolerance_min: int = ADHERENCE_TOLERANCE_MIN,
                                 ) -> list[TemporalAdherence]:
    """Timing adherence against each medication's scheduled time (local clock)."""
    results = []
    moods = sorted(mood_entries, key=lambda m: m.timestamp)
    for med in medications:
        if not med.scheduled_time:
            continue
        try:
            hours, minutes = (int(p) for p in med.scheduled_time.split(":"))
        except ValueError:
            log.warning("Ignoring malformed scheduled_time %r for %s", med.scheduled_time, med.id)
            continue
        scheduled = hours * 60 + minutes
        med_doses = sorted((d for d in doses if d.medication_id == med.id),
                           key=lambda d: d.timestamp)
        if len(med_doses) < 3:
            continue

        deviations = []
        on_time = late = early = 0
        for dose in med_doses:
            deviation = _deviation_minutes(_minutes_of_day(dose.timestamp), scheduled)
            if abs(deviation) <= tolerance_min:
                on_time += 1
            elif deviation > 0:
                late += 1
            else:
                early += 1
            mood_after = next(
                (m.mood_score for m in moods
                 if 0.5 * HOUR_MS < m.timestamp - dose.timestamp < 8 * HOUR_MS),
                None,
            )
            deviations.append(DoseDeviation(timestamp=dose.timestamp,
                                            deviation_minutes=deviation,
                                            mood_after=mood_after))

        avg_dev = _mean([abs(d.deviation_minutes) for d in deviations])
        if avg_dev > 60:
            pattern = "irregular"
        elif avg_dev > 30:
            pattern = "variable"
        else:
            pattern = "consistent"

        recent_trend = "insufficient_data"
        if len(deviations) >= 6:
            recent_avg = _mean([abs(d.deviation_minutes) for d in deviations[-3:]])
            older_avg = _mean([abs(d.deviation_minutes) for d in deviations[-6:-3]])
            if recent_avg < older_avg - 10:
                recent_trend = "improving"
            elif recent_avg > older_avg + 10:
                recent_trend = "declining"
            else:
                recent_trend = "stable"

        paired = [d for d in deviations if d.mood_after is not None]
        correlation = None
        if len(paired) >= 5:
            correlation = pearson_correlation(
                [abs(d.deviation_minutes) for d in paired],
                [d.mood_after for d in paired],
            )

        results.append(TemporalAdherence(
            medication_id=med.id,
            medication_name=med.name,
            scheduled_time=med.scheduled_time,
            total_doses=len(med_doses),
            on_time_doses=on_time,
            late_doses=late,
            early_doses=early,
            average_deviation_minutes=avg_dev,
            adherence_score=max(0.0, 100 - (avg_dev / 60) * 20),
            pattern=pattern,
            recent_trend=recent_trend,
            deviations=deviations,
            deviation_vs_mood=correlation,
        ))
    return results


# ── Concentration stability ──────────────────────────────────────────

def analyze_concentration_variability(
    medication: Medication,
    doses: Sequence[MedicationDose],
    mood_entries: Sequence[MoodEntry],
    window_days: float = VARIABILITY_WINDOW_DAYS,
    body_weight: float = DEFAULT_BODY_WEIGHT_KG,
) -> Optional[ConcentrationVariability]:
    """
    Is mood better while the medication's level is steady?

    Windows of `window_days`, stepped daily over the span covered by both
    doses and mood logs. Each window gets the CV of its hourly
    concentrations and its mean mood. Windows below the median CV count as
    stable; mood in stable and varying windows is compared with Welch's
    t-test. None when the data can't support the comparison.
    """
    med_doses = sorted((d for d in doses if d.medication_id == medication.id),
                       key=lambda d: d.timestamp)
    moods = sorted(mood_entries, key=lambda m: m.timestamp)
    if len(med_doses) < 3 or len(moods) < 5:
        return None

    window_ms = int(window_days * DAY_MS)
    start = max(med_doses[0].timestamp, moods[0].timestamp)
    end = min(med_doses[-1].timestamp + 7 * DAY_MS, moods[-1].timestamp)
    if end - start < 2 * window_ms:
        return None

    grid = list(range(start, end + 1, HOUR_MS))
    concentrations = pk_engine.sample_concentration_at_times(
        medication, med_doses, grid, body_weight, noise_floor=VARIABILITY_MIN_CONCENTRATION,
    )

    windows = []
    window_start = start
    while window_start + window_ms <= end:
        window_end = window_start + window_ms
        lo = (window_start - start) // HOUR_MS
        hi = (window_end - start) // HOUR_MS
        levels = [c for c in concentrations[lo:hi] if c is not None]
        window_moods = [m.mood_score for m in moods if window_start <= m.timestamp < window_end]
        if len(levels) >= VARIABILITY_MIN_WINDOW_SAMPLES and window_moods:
            level_stats = descriptive_stats(levels)
            windows.append(VariabilityWindow(
                start=window_start,
                end=window_end,
                concentration_mean=level_stats["mean"],
                concentration_cv=level_stats["cv"],
                mood_mean=_mean(window_moods),
            ))
        window_start += DAY_MS

    if len(windows) < VARIABILITY_MIN_WINDOWS:
        return None

    cvs = [w.concentration_cv for w in windows]
    median_cv = sorted(cvs)[len(cvs) // 2]
    for w in windows:
        w.is_stable = w.concentration_cv < median_cv
    stable = [w.mood_mean for w in windows if w.is_stable]
    varying = [w.mood_mean for w in windows if not w.is_stable]
    if len(stable) < 2 or len(varying) < 2:
        return None

    stable_mean = _mean(stable)
    varying_mean = _mean(varying)
    difference = stable_mean - varying_mean
    t_test = two_sample_t_test(stable, varying)

    name = medication.name
    if t_test.significant and difference > 0:
        interpretation = (f"Mood is {difference:.1f} points better while {name} levels are "
                          f"stable (p={t_test.p_value:.3f}, d={t_test.effect_size:.2f})")
        recommendation = (f"Prioritise taking {name} consistently. "
                          "Stable levels go together with better mood.")
    elif t_test.significant:
        interpretation = (f"Mood is {-difference:.1f} points better while {name} levels are "
                          f"fluctuating (p={t_test.p_value:.3f})")
        recommendation = ("Unusual pattern: the peak-to-trough swings may have an effect "
                          "of their own. Discuss it with your doctor.")
    else:
        interpretation = (f"No significant mood difference between stable and fluctuating "
                          f"{name} periods (p={t_test.p_value:.3f})")
        recommendation = "Keep tracking. More data may reveal a pattern."

    return ConcentrationVariability(
        medication_id=medication.id,
        medication_name=name,
        window_days=window_days,
        total_windows=len(windows),
        stable_windows=len(stable),
        varying_windows=len(varying),
        median_cv=median_cv,
        stable_period_mood_mean=stable_mean,
        varying_period_mood_mean=varying_mean,
        mood_difference=difference,
        cv_vs_mood=pearson_correlation(cvs, [w.mood_mean for w in windows]),
        t_test=t_test,
        interpretation=interpretation,
        recommendation=recommendation,
        windows=windows,
    )


def analyze_optimal_dose_interval(
    medication: Medication,
    doses: Sequence[MedicationDose],
    mood_entries: Sequence[MoodEntry],
) -> Optional[DoseIntervalAnalysis]:
    """
    Relates the time since the previous dose to mood 4-12 h after the next
    one, overall (Pearson) and per interval bin. The optimal bin is the one
    with the highest mean mood.
    """
    med_doses = sorted((d for d in doses if d.medication_id == medication.id),
                       key=lambda d: d.timestamp)
    if len(med_doses) < 5:
        return None

    shortest, longest = DOSE_INTERVAL_RANGE_HOURS
    intervals = [
        ((nxt.timestamp - prev.timestamp) / HOUR_MS, nxt.timestamp)
        for prev, nxt in zip(med_doses, med_doses[1:])
        if shortest < (nxt.timestamp - prev.timestamp) / HOUR_MS < longest
    ]
    if len(intervals) < 5:
        return None

    after_lo, after_hi = DOSE_INTERVAL_MOOD_WINDOW_HOURS
    pairs = []
    for hours, dose_time in intervals:
        lo = dose_time + after_lo * HOUR_MS
        hi = dose_time + after_hi * HOUR_MS
        scores = [m.mood_score for m in mood_entries if lo <= m.timestamp < hi]
        if scores:
            pairs.append((hours, _mean(scores)))
    if len(pairs) < 5:
        return None

    bins = []
    for low, high, label in DOSE_INTERVAL_BINS:
        in_bin = [mood for hours, mood in pairs if low <= hours < high]
        if len(in_bin) < 2:
            continue
        bin_stats = descriptive_stats(in_bin)
        bins.append(DoseIntervalBin(label=label, min_hours=low, max_hours=high,
                                    count=len(in_bin), mood_mean=bin_stats["mean"],
                                    mood_sd=bin_stats["std_dev"]))
    if len(bins) < 2:
        return None

    optimal = max(bins, key=lambda b: b.mood_mean)
    correlation = pearson_correlation([h for h, _ in pairs], [m for _, m in pairs])
    r = correlation.value
    best = f"{optimal.label} ({optimal.mood_mean:.1f}/10)"
    if correlation.significance == "none":
        interpretation = "No significant correlation between dose interval and mood"
        recommendation = f"Keep a regular schedule. Best mean mood at intervals of {best}."
    elif r < -0.2:
        interpretation = (f"SHORTER intervals go with better mood "
                          f"(r={r:.2f}, p={correlation.p_value:.3f})")
        recommendation = (f"Consider more frequent doses of {medication.name}. "
                          f"Intervals of {best} show the best mean mood.")
    elif r > 0.2:
        interpretation = (f"LONGER intervals go with better mood "
                          f"(r={r:.2f}, p={correlation.p_value:.3f})")
        recommendation = ("Current spacing may be adequate or could be widened. "
                          f"Best mood at intervals of {best}.")
    else:
        interpretation = f"Weak correlation between dose interval and mood (r={r:.2f})"
        recommendation = f"Intervals of {best} show the best mood. Keep tracking."

    return DoseIntervalAnalysis(
        medication_id=medication.id,
        medication_name=medication.name,
        total_intervals=len(pairs),
        interval_vs_mood=correlation,
        optimal_interval_hours=(optimal.min_hours + optimal.max_hours) / 2,
        optimal_interval_label=optimal.label,
        bins=bins,
        interpretation=interpretation,
        recommendation=recommendation,
    )


# ── Report ───────────────────────────────────────────────────────────

def generate_insights_report(
    medications: Sequence[Medication],
    doses: Sequence[MedicationDose],
    mood_entries: Sequence[MoodEntry],
    timeframe_days: Optional[float] = None,
    *,
    now: Optional[int] = None,
    cache: Optional[ConcentrationCache] = None,
    settings: Optional[InsightSettings] = None,
) -> InsightsReport:
    """
    Ranked insight report over the last `timeframe_days` (all data if None).
    """
    settings = settings or InsightSettings()
    now = int(time.time() * 1000) if now is None else now
    end = now
    if timeframe_days:
        start = int(end - timeframe_days * DAY_MS)
    else:
        stamps = [m.timestamp for m in mood_entries] + [d.timestamp for d in doses]
        stamps = [t for t in stamps if t > 0]
        start = min(stamps) if stamps else end

    window_moods = [e for e in mood_entries if start <= e.timestamp <= end]
    window_doses = [d for d in doses if start <= d.timestamp <= end]
    days = math.ceil((end - start) / DAY_MS)
    unique_days = len({e.timestamp // DAY_MS for e in window_moods})
    quality = DataQuality(
        mood_entries=len(window_moods),
        doses=len(window_doses),
        medications=len(medications),
        coverage=min(100.0, unique_days / days * 100) if days > 0 else 0.0,
        sufficient=len(window_moods) >= settings.min_samples and bool(window_doses),
    )

    report = InsightsReport(
        generated_at=now, timeframe_start=start, timeframe_end=end, data_quality=quality,
    )
    report.red_flags = detect_red_flags(mood_entries, doses, medications, end)
    report.stability_metrics = calculate_stability_metrics(mood_entries, start, end)
    if len(window_moods) < settings.min_samples:
        report.status = "insufficient_data"
        return report

    insights = [
        i for i in generate_medication_insights(
            medications, doses, mood_entries, start, end, settings, cache)
        if _passes_floors(i, settings)
    ]
    report.all_insights = insights
    report.top_positive_impacts = sorted(
        (i for i in insights if i.correlation > 0),
        key=lambda i: i.correlation, reverse=True,
    )[:settings.top_n]
    report.top_negative_impacts = sorted(
        (i for i in insights if i.correlation < 0),
        key=lambda i: i.correlation,
    )[:settings.top_n]
    report.red_flags = correlation_red_flags(insights, settings) + report.red_flags
    if not insights and not quality.sufficient:
        report.status = "insufficient_data"
    log.debug("Insights report: %d insights, %d red flags", len(insights), len(report.red_flags))
    return report
