import logging
import math

import pytest

from mood_pharma.core import pk_engine
from mood_pharma.core.models import HOUR_MS, Medication, TherapeuticRange
from mood_pharma.core.pk_engine import (
    CancellationToken,
    ComputationCancelled,
    InvalidParameterError,
    build_concentration_curve,
    compute_concentration,
    sample_times,
    single_dose_concentration,
    time_to_peak_hours,
)

T0 = 1_700_000_000_000


class TestSingleDose:

    def test_known_value_two_hours_after_dose(self, medication):
        c = single_dose_concentration(medication, 20.0, 2.0, 70.0)
        assert c == pytest.approx(0.009587, rel=1e-3)

    def test_zero_before_and_at_dose(self, medication):
        assert single_dose_concentration(medication, 20.0, -1.0) == 0.0
        assert single_dose_concentration(medication, 20.0, 0.0) == 0.0

    def test_decays_toward_zero(self, medication):
        assert single_dose_concentration(medication, 20.0, 2000.0) < 1e-12

    def test_single_peak_at_tmax(self, medication):
        tmax = time_to_peak_hours(medication)
        assert tmax == pytest.approx(3.857, rel=1e-3)
        values = [single_dose_concentration(medication, 20.0, h / 10) for h in range(1, 2000)]
        peak_index = values.index(max(values))
        # rises strictly to the peak, falls strictly after it
        assert all(a < b for a, b in zip(values[:peak_index], values[1:peak_index + 1]))
        assert all(a > b for a, b in zip(values[peak_index:-1], values[peak_index + 1:]))
        assert (peak_index + 1) / 10 == pytest.approx(tmax, abs=0.1)

    def test_coinciding_rates_use_limiting_form(self):
        ke = math.log(2) / 10
        med = Medication(id="m", name="Equal", half_life=10, volume_of_distribution=1,
                         bioavailability=1, absorption_rate=ke)
        c = single_dose_concentration(med, 70.0, 5.0, 70.0)
        assert c == pytest.approx(ke * 5 * math.exp(-ke * 5))
        assert math.isfinite(c)

    def test_nearly_coinciding_rates_stay_finite(self):
        ke = math.log(2) / 10
        med = Medication(id="m", name="Close", half_life=10, volume_of_distribution=1,
                         bioavailability=1, absorption_rate=ke * (1 + 1e-12))
        assert math.isfinite(single_dose_concentration(med, 70.0, 5.0, 70.0))


class TestValidation:

    @pytest.mark.parametrize("field,value", [
        ("half_life", 0),
        ("half_life", -1),
        ("volume_of_distribution", 0),
        ("absorption_rate", float("nan")),
        ("bioavailability", 0),
        ("bioavailability", 1.5),
    ])
    def test_rejects_bad_parameters(self, medication, field, value):
        bad = medication.model_copy(update={field: value})
        with pytest.raises(InvalidParameterError) as exc:
            compute_concentration(bad, [], T0)
        assert exc.value.field == field

    def test_rejects_bad_body_weight(self, medication):
        with pytest.raises(InvalidParameterError):
            compute_concentration(medication, [], T0, body_weight=0)

    def test_rejection_is_logged(self, medication, caplog):
        bad = medication.model_copy(update={"half_life": -2.0})
        with caplog.at_level(logging.DEBUG, logger="pk.engine"):
            with pytest.raises(InvalidParameterError):
                compute_concentration(bad, [], T0)
        assert any("med-a" in r.getMessage() and "half_life" in r.getMessage()
                   for r in caplog.records)


class TestSuperposition:

    def test_two_doses_24h_apart(self, medication, dose_at):
        doses = [dose_at(T0), dose_at(T0 + 24 * HOUR_MS)]
        t = T0 + 26 * HOUR_MS
        expected = (single_dose_concentration(medication, 20.0, 26.0)
                    + single_dose_concentration(medication, 20.0, 2.0))
        assert compute_concentration(medication, doses, t) == pytest.approx(expected, rel=1e-12)

    def test_future_doses_contribute_nothing(self, medication, dose_at):
        past = [dose_at(T0)]
        both = past + [dose_at(T0 + 48 * HOUR_MS)]
        t = T0 + 10 * HOUR_MS
        assert compute_concentration(medication, both, t) == compute_concentration(medication, past, t)

    def test_other_medications_ignored(self, medication, dose_at):
        doses = [dose_at(T0), dose_at(T0, amount=500, medication_id="other")]
        t = T0 + 3 * HOUR_MS
        assert compute_concentration(medication, doses, t) == pytest.approx(
            single_dose_concentration(medication, 20.0, 3.0))

    def test_no_doses_is_zero(self, medication):
        assert compute_concentration(medication, [], T0) == 0.0


class TestCurve:

    def test_sample_times_are_strictly_increasing(self):
        times = sample_times(0, 10, 11)
        assert times == list(range(11))
        times = sample_times(T0, T0 + 999, 7)
        assert times[0] == T0 and times[-1] == T0 + 999
        assert all(a < b for a, b in zip(times, times[1:]))

    def test_exact_point_count_and_bounds(self, medication, dose_at):
        curve = build_concentration_curve(medication, [dose_at(T0)], T0, T0 + 48 * HOUR_MS, 100)
        assert len(curve) == 100
        assert curve[0].time == T0
        assert curve[-1].time == T0 + 48 * HOUR_MS

    def test_noise_floor_reports_none(self, medication, dose_at):
        curve = build_concentration_curve(
            medication, [dose_at(T0)], T0 - HOUR_MS, T0 + 400 * HOUR_MS, 50)
        assert curve[0].concentration is None      # before the dose
        assert curve[-1].concentration is None     # far tail below 0.001 mg/L
        assert any(p.concentration is not None and p.concentration >= 0.001 for p in curve)

    def test_deterministic(self, medication, dose_at):
        doses = [dose_at(T0), dose_at(T0 + 12 * HOUR_MS)]
        a = build_concentration_curve(medication, doses, T0, T0 + 72 * HOUR_MS, 60)
        b = build_concentration_curve(medication, list(reversed(doses)), T0, T0 + 72 * HOUR_MS, 60)
        assert a == b

    @pytest.mark.parametrize("points", [0, 1, True, 2.5])
    def test_rejects_bad_point_counts(self, medication, points):
        with pytest.raises(InvalidParameterError):
            build_concentration_curve(medication, [], T0, T0 + HOUR_MS, points)

    def test_rejects_empty_or_reversed_window(self, medication):
        with pytest.raises(InvalidParameterError):
            build_concentration_curve(medication, [], T0, T0, 10)
        with pytest.raises(InvalidParameterError):
            build_concentration_curve(medication, [], T0, T0 - 1, 10)

    def test_rejects_more_points_than_milliseconds(self, medication):
        with pytest.raises(InvalidParameterError):
            build_concentration_curve(medication, [], T0, T0 + 5, 10)

    def test_cancellation(self, medication, dose_at):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ComputationCancelled):
            build_concentration_curve(medication, [dose_at(T0)], T0, T0 + HOUR_MS, 10,
                                      cancel_token=token)


class TestHelpers:

    def test_sample_at_irregular_times(self, medication, dose_at):
        doses = [dose_at(T0)]
        times = [T0 - HOUR_MS, T0 + 2 * HOUR_MS, T0 + 5 * HOUR_MS, T0 + 1000 * HOUR_MS]
        values = pk_engine.sample_concentration_at_times(medication, doses, times)
        assert values[0] is None
        assert values[1] == pytest.approx(compute_concentration(medication, doses, times[1]))
        assert values[2] == pytest.approx(compute_concentration(medication, doses, times[2]))
        assert values[3] is None

    def test_moving_average_trend(self):
        times = [0, 1, 2, 3, 4]
        values = [1.0, None, 3.0, 5.0, 7.0]
        trend = pk_engine.moving_average_trend(times, values, window_ms=2, min_points=2)
        assert trend == [None, None, 2.0, 4.0, 5.0]

    def test_chronic_classification(self, medication):
        assert not pk_engine.is_chronic_medication(medication)
        ssri = medication.model_copy(update={"drug_class": "SSRI"})
        assert pk_engine.is_chronic_medication(ssri)

    def test_therapeutic_status(self, medication):
        med = medication.model_copy(update={"therapeutic_range": TherapeuticRange(min=0.01, max=0.02)})
        assert pk_engine.therapeutic_status(med, 0.005) == "below"
        assert pk_engine.therapeutic_status(med, 0.015) == "within"
        assert pk_engine.therapeutic_status(med, 0.03) == "above"
        assert pk_engine.therapeutic_status(medication, 0.015) is None
