from datetime import datetime

import pytest
from pydantic import ValidationError

from mood_pharma.core import pk_engine
from mood_pharma.core.insights_engine import (
    InsightSettings,
    analyze_concentration_variability,
    analyze_optimal_dose_interval,
    calculate_stability_metrics,
    calculate_temporal_adherence,
    detect_red_flags,
    exposure_series,
    generate_insights_report,
    generate_medication_insights,
    hourly_grid,
    metric_series,
)
from mood_pharma.core.models import (
    DAY_MS,
    HOUR_MS,
    Medication,
    MedicationDose,
    MoodEntry,
    MoodMetric,
)
from mood_pharma.core.pk_cache import ConcentrationCache

NOW = (1_700_000_000_000 // HOUR_MS) * HOUR_MS

FAST = Medication(id="fast", name="Fastdrug", half_life=6.0, volume_of_distribution=0.5,
                  bioavailability=1.0, absorption_rate=2.0)


def daily_doses(med, days=12, hour=8):
    start = NOW - days * DAY_MS
    return [
        MedicationDose(id=f"{med.id}-{d}", medication_id=med.id,
                       timestamp=start + d * DAY_MS + hour * HOUR_MS, dose_amount=100.0)
        for d in range(days)
    ]


def tracked_moods(med, doses, days=10, step_hours=2, mood=lambda c: 2 + 2 * c,
                  anxiety=lambda c: 8 - 2 * c):
    """Mood entries on hour marks whose scores follow the concentration exactly."""
    entries = []
    t = NOW - days * DAY_MS
    i = 0
    while t <= NOW:
        c = pk_engine.compute_concentration(med, doses, t)
        entries.append(MoodEntry(id=f"m{i}", timestamp=t, mood_score=mood(c),
                                 anxiety_level=anxiety(c)))
        t += step_hours * HOUR_MS
        i += 1
    return entries


def mood(ts, score, **kw):
    return MoodEntry(id=f"m-{ts}", timestamp=ts, mood_score=score, **kw)


class TestSeries:

    def test_hourly_grid_is_aligned(self):
        grid = hourly_grid(NOW + 10, NOW + 2 * HOUR_MS - 10)
        assert grid == [NOW, NOW + HOUR_MS, NOW + 2 * HOUR_MS]

    def test_metric_series_averages_per_hour(self):
        grid = [NOW, NOW + HOUR_MS]
        entries = [mood(NOW + 1, 4.0), mood(NOW + 2, 6.0)]
        assert metric_series(entries, MoodMetric.MOOD, grid) == [5.0, None]
        assert metric_series(entries, MoodMetric.FOCUS, grid) == [None, None]

    def test_exposure_series_uses_cache(self):
        doses = daily_doses(FAST)
        grid = hourly_grid(NOW - DAY_MS, NOW)
        cache = ConcentrationCache()
        via_cache = exposure_series(FAST, doses, grid, InsightSettings(), cache)
        direct = exposure_series(FAST, doses, grid, InsightSettings())
        assert via_cache == direct
        assert len(via_cache) == 25
        assert cache.stats()["computations"] == 1

    def test_chronic_medication_uses_trend(self):
        ssri = FAST.model_copy(update={"drug_class": "SSRI", "id": "ssri"})
        doses = daily_doses(ssri)
        grid = hourly_grid(NOW - 5 * DAY_MS, NOW)
        trend = exposure_series(ssri, doses, grid, InsightSettings())
        raw = [p.concentration for p in pk_engine.build_concentration_curve(
            ssri, doses, grid[0], grid[-1], len(grid))]
        assert trend != raw
        # a 48h average swings much less than the instant concentration
        tail = [v for v in trend[-24:] if v is not None]
        assert max(tail) - min(tail) < max(raw[-24:]) - min(raw[-24:])


class TestMedicationInsights:

    def test_correlated_mood_is_found_at_lag_zero(self):
        doses = daily_doses(FAST)
        moods = tracked_moods(FAST, doses)
        insights = generate_medication_insights(
            [FAST], doses, moods, NOW - 10 * DAY_MS, NOW)
        by_metric = {i.metric: i for i in insights}
        assert by_metric[MoodMetric.MOOD].correlation == pytest.approx(1.0, abs=1e-6)
        assert by_metric[MoodMetric.MOOD].lag_hours == 0
        assert by_metric[MoodMetric.MOOD].is_desirable
        assert by_metric[MoodMetric.ANXIETY].correlation == pytest.approx(-1.0, abs=1e-6)
        assert by_metric[MoodMetric.ANXIETY].is_desirable
        assert MoodMetric.ENERGY not in by_metric

    def test_sorted_by_impact(self):
        doses = daily_doses(FAST)
        insights = generate_medication_insights(
            [FAST], doses, tracked_moods(FAST, doses), NOW - 10 * DAY_MS, NOW)
        scores = [i.impact_score for i in insights]
        assert scores == sorted(scores, reverse=True)

    def test_no_doses_no_insights(self):
        moods = tracked_moods(FAST, [])
        assert generate_medication_insights([FAST], [], moods, NOW - 10 * DAY_MS, NOW) == []

    def test_too_few_entries(self):
        doses = daily_doses(FAST)
        moods = tracked_moods(FAST, doses)[:2]
        assert generate_medication_insights([FAST], doses, moods, NOW - 10 * DAY_MS, NOW) == []

    def test_configured_lag_is_reported_as_given(self):
        doses = daily_doses(FAST)
        settings = InsightSettings(acute_lag_hours=[2])
        insights = generate_medication_insights(
            [FAST], doses, tracked_moods(FAST, doses), NOW - 10 * DAY_MS, NOW, settings)
        assert {i.lag_hours for i in insights} == {2}

    @pytest.mark.parametrize("lags", [[0.5], [1.5, 2]])
    def test_fractional_lags_are_rejected(self, lags):
        with pytest.raises(ValidationError):
            InsightSettings(acute_lag_hours=lags)
        with pytest.raises(ValidationError):
            InsightSettings(chronic_lag_hours=lags)

    def test_whole_float_lags_are_accepted(self):
        assert InsightSettings(acute_lag_hours=[1.0, 4.0]).acute_lag_hours == [1, 4]


class TestReport:

    def test_ranked_positive_and_negative_impacts(self):
        doses = daily_doses(FAST)
        report = generate_insights_report([FAST], doses, tracked_moods(FAST, doses), 10, now=NOW)
        assert report.status == "ok"
        assert report.top_positive_impacts[0].metric == MoodMetric.MOOD
        assert report.top_negative_impacts[0].metric == MoodMetric.ANXIETY
        assert all(i.correlation > 0 for i in report.top_positive_impacts)
        assert all(i.correlation < 0 for i in report.top_negative_impacts)
        assert not [f for f in report.red_flags if f.type == "adverse_correlation"]
        assert report.data_quality.sufficient

    def test_adverse_correlation_raises_red_flag(self):
        doses = daily_doses(FAST)
        moods = tracked_moods(FAST, doses, mood=lambda c: 8 - 2 * c, anxiety=lambda c: 2 + 2 * c)
        report = generate_insights_report([FAST], doses, moods, 10, now=NOW)
        adverse = {f.metric for f in report.red_flags if f.type == "adverse_correlation"}
        assert adverse == {MoodMetric.MOOD, MoodMetric.ANXIETY}
        assert all(f.severity == "alert" for f in report.red_flags
                   if f.type == "adverse_correlation")

    def test_top_n_and_correlation_floor(self):
        doses = daily_doses(FAST)
        moods = tracked_moods(FAST, doses)
        settings = InsightSettings(top_n=1, min_abs_correlation=0.99)
        report = generate_insights_report([FAST], doses, moods, 10, now=NOW, settings=settings)
        assert len(report.top_positive_impacts) == 1
        assert all(abs(i.correlation) >= 0.99 for i in report.all_insights)

    def test_empty_input_is_insufficient_not_an_error(self):
        report = generate_insights_report([], [], [], 30, now=NOW)
        assert report.status == "insufficient_data"
        assert report.all_insights == []
        assert report.data_quality.mood_entries == 0

    def test_no_timeframe_uses_all_data(self):
        doses = daily_doses(FAST)
        moods = tracked_moods(FAST, doses)
        report = generate_insights_report([FAST], doses, moods, None, now=NOW)
        assert report.timeframe_start == min(d.timestamp for d in doses)

    def test_spearman_method(self):
        doses = daily_doses(FAST)
        moods = tracked_moods(FAST, doses)
        report = generate_insights_report([FAST], doses, moods, 10, now=NOW,
                                          settings=InsightSettings(method="spearman"))
        assert report.top_positive_impacts[0].method == "spearman"


class TestRedFlags:

    def test_persistent_low_mood(self):
        entries = [mood(NOW - i * HOUR_MS, 3.0) for i in range(3)]
        flags = detect_red_flags(entries, [], [], NOW)
        assert [f.type for f in flags] == ["mood_low"]
        assert flags[0].severity == "warning"

    def test_high_anxiety_and_low_energy(self):
        entries = [mood(NOW - i * HOUR_MS, 6.0, anxiety_level=8.0, energy_level=2.0)
                   for i in range(3)]
        types = {f.type for f in detect_red_flags(entries, [], [], NOW)}
        assert types == {"anxiety_high", "energy_low"}

    def test_old_entries_ignored(self):
        entries = [mood(NOW - 8 * DAY_MS - i * HOUR_MS, 2.0) for i in range(5)]
        assert detect_red_flags(entries, [], [], NOW) == []

    def test_volatility(self):
        scores = [1.0, 9.0, 2.0, 8.0, 1.0]
        entries = [mood(NOW - i * HOUR_MS, s) for i, s in enumerate(scores)]
        assert "volatility" in {f.type for f in detect_red_flags(entries, [], [], NOW)}

    def test_low_adherence(self):
        doses = daily_doses(FAST, days=12)[-3:]
        flags = detect_red_flags([], doses, [FAST], NOW)
        assert [f.type for f in flags] == ["adherence"]
        assert flags[0].value == 3

    def test_no_doses_is_not_an_adherence_flag(self):
        assert detect_red_flags([], [], [FAST], NOW) == []


class TestStabilityAndAdherence:

    def test_stability_classification(self):
        entries = [mood(NOW - i * HOUR_MS, 5.0 + (i % 2) * 0.1) for i in range(6)]
        metrics = calculate_stability_metrics(entries, NOW - DAY_MS, NOW)
        assert [m.metric for m in metrics] == [MoodMetric.MOOD]
        assert metrics[0].stability == "stable"
        assert metrics[0].data_points == 6

    def test_temporal_adherence(self):
        med = FAST.model_copy(update={"scheduled_time": "08:00"})
        times = [datetime(2024, 3, 1, 8, 10), datetime(2024, 3, 2, 9, 30),
                 datetime(2024, 3, 3, 7, 50), datetime(2024, 3, 4, 6, 0)]
        doses = [MedicationDose(id=f"d{i}", medication_id=med.id,
                                timestamp=int(t.timestamp() * 1000), dose_amount=10)
                 for i, t in enumerate(times)]
        [result] = calculate_temporal_adherence([med], doses, [])
        assert (result.on_time_doses, result.late_doses, result.early_doses) == (2, 1, 1)
        assert [d.deviation_minutes for d in result.deviations] == [10, 90, -10, -120]
        assert result.average_deviation_minutes == pytest.approx(57.5)
        assert result.pattern == "variable"
        assert result.recent_trend == "insufficient_data"

    def test_unscheduled_medications_skipped(self):
        assert calculate_temporal_adherence([FAST], daily_doses(FAST), []) == []


def steady_then_daily(days=40):
    """Four doses a day and good mood, then one dose a day and low mood."""
    start = NOW - days * DAY_MS
    half = days // 2
    doses = []
    for d in range(days):
        hours = (0, 6, 12, 18) if d < half else (8,)
        amount = 25.0 if d < half else 100.0
        doses += [MedicationDose(id=f"sd-{d}-{h}", medication_id=FAST.id,
                                 timestamp=start + d * DAY_MS + h * HOUR_MS, dose_amount=amount)
                  for h in hours]
    moods = []
    t, i = start, 0
    while t <= NOW:
        base = 8.0 if t < start + half * DAY_MS else 4.0
        moods.append(mood(t, base + 0.1 * (i % 3)))
        t += 6 * HOUR_MS
        i += 1
    return doses, moods


class TestConcentrationVariability:

    def test_better_mood_in_stable_windows(self):
        doses, moods = steady_then_daily()
        result = analyze_concentration_variability(FAST, doses, moods)
        assert result is not None
        assert result.total_windows == 34
        assert result.stable_windows + result.varying_windows == result.total_windows
        assert result.stable_windows >= 2 and result.varying_windows >= 2
        assert all(w.is_stable == (w.concentration_cv < result.median_cv) for w in result.windows)
        assert result.mood_difference > 0
        assert result.t_test.defined and result.t_test.significant
        assert result.t_test.effect_size > 0
        assert result.cv_vs_mood.value < 0
        assert "better while Fastdrug levels are stable" in result.interpretation

    def test_other_medications_doses_ignored(self):
        doses, moods = steady_then_daily()
        other = [d.model_copy(update={"medication_id": "other"}) for d in doses]
        assert analyze_concentration_variability(FAST, other, moods) is None

    def test_too_few_mood_entries(self):
        doses, moods = steady_then_daily()
        assert analyze_concentration_variability(FAST, doses, moods[:4]) is None

    def test_span_shorter_than_two_windows(self):
        doses, moods = steady_then_daily()
        recent = [m for m in moods if m.timestamp >= NOW - 10 * DAY_MS]
        assert analyze_concentration_variability(FAST, doses, recent) is None


def alternating_intervals(count=12, short_mood=8.0, long_mood=5.0):
    """Doses alternating 12 h / 24 h apart, one mood log 6 h after each dose."""
    doses, moods = [], []
    t = NOW - 20 * DAY_MS
    for i in range(count):
        gap = 12 if i % 2 == 0 else 24
        t += gap * HOUR_MS
        doses.append(MedicationDose(id=f"iv-{i}", medication_id=FAST.id,
                                    timestamp=t, dose_amount=50.0))
        moods.append(mood(t + 6 * HOUR_MS, short_mood if gap == 12 else long_mood))
    return doses, moods


class TestOptimalDoseInterval:

    def test_shorter_intervals_with_better_mood(self):
        doses, moods = alternating_intervals()
        result = analyze_optimal_dose_interval(FAST, doses, moods)
        assert result is not None
        assert result.total_intervals == 11
        assert result.optimal_interval_label == "8-16h (twice daily)"
        assert result.optimal_interval_hours == 12
        assert {b.label: b.count for b in result.bins} == {
            "8-16h (twice daily)": 5, "20-26h (daily)": 6}
        assert result.interval_vs_mood.value == pytest.approx(-1.0, abs=1e-9)
        assert result.interpretation.startswith("SHORTER intervals")

    def test_longer_intervals_with_better_mood(self):
        doses, moods = alternating_intervals(short_mood=4.0, long_mood=7.0)
        result = analyze_optimal_dose_interval(FAST, doses, moods)
        assert result.optimal_interval_label == "20-26h (daily)"
        assert result.interpretation.startswith("LONGER intervals")

    def test_too_few_doses(self):
        doses, moods = alternating_intervals(count=4)
        assert analyze_optimal_dose_interval(FAST, doses, moods) is None

    def test_single_bin_is_not_enough(self):
        doses = daily_doses(FAST, days=10)
        moods = [mood(d.timestamp + 6 * HOUR_MS, 6.0 + (i % 2)) for i, d in enumerate(doses)]
        assert analyze_optimal_dose_interval(FAST, doses, moods) is None

    def test_no_mood_after_doses(self):
        doses, _ = alternating_intervals()
        assert analyze_optimal_dose_interval(FAST, doses, []) is None
