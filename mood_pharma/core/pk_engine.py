"""
PK engine: one-compartment pharmacokinetics with first-order absorption
and elimination (Bateman function) and linear superposition of doses.

Single dose, t = hours since intake:
  C(t) = F*D*Ka / (Vd*BW*(Ka - Ke)) * (e^(-Ke*t) - e^(-Ka*t))      Ka != Ke
  C(t) = F*D/(Vd*BW) * Ke * t * e^(-Ke*t)                          Ka == Ke
  C(t) = 0                                                         t < 0
  Ke = ln(2) / t_half

Dose set (Heaviside superposition, valid because the model is linear in D):
  C_total(t) = SUM_i C_i(t - tau_i) * H(t - tau_i)

Units: dose in mg, Vd in L/kg, body weight in kg -> concentration in mg/L.
"""

import logging
import math
import threading
from typing import Iterable, Optional, Sequence

from mood_pharma.config import (
    CHRONIC_MEDICATION_CLASSES,
    CONCENTRATION_NOISE_FLOOR,
    CURVE_DEFAULT_POINTS,
    DEFAULT_BODY_WEIGHT_KG,
    KA_KE_EPSILON,
)
from mood_pharma.core.models import (
    HOUR_MS,
    ConcentrationPoint,
    Medication,
    MedicationDose,
)

log = logging.getLogger("pk.engine")


class InvalidParameterError(ValueError):
    """A PK parameter (or curve request parameter) is out of range."""

    def __init__(self, field: str, value, reason: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class ComputationCancelled(Exception):
    """Raised when a CancellationToken fires during a computation."""


class CancellationToken:
    """Cooperative cancellation flag, safe to set from another thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ComputationCancelled("computation cancelled by caller")


# ── Validation ───────────────────────────────────────────────────────

def _require_positive(field: str, value: float) -> None:
    if value is None or not math.isfinite(value) or value <= 0:
        raise InvalidParameterError(field, value, "must be a finite number > 0")


def validate_pk_parameters(medication: Medication,
                           body_weight: float = DEFAULT_BODY_WEIGHT_KG) -> None:
    """Fail fast on parameters the Bateman function cannot use. Never clamps."""
    try:
        _require_positive("half_life", medication.half_life)
        _require_positive("volume_of_distribution", medication.volume_of_distribution)
        _require_positive("absorption_rate", medication.absorption_rate)
        _require_positive("body_weight", body_weight)
        f = medication.bioavailability
        if f is None or not math.isfinite(f) or f <= 0 or f > 1:
            raise InvalidParameterError("bioavailability", f, "must be in (0, 1]")
    except InvalidParameterError as e:
        log.debug("Rejected PK parameters for %s: %s", medication.id, e)
        raise


def elimination_rate(medication: Medication) -> float:
    """Ke = ln(2) / t_half (1/h)."""
    return math.log(2) / medication.half_life


def _rates_coincide(ka: float, ke: float) -> bool:
    return abs(ka - ke) <= KA_KE_EPSILON * max(ka, ke)


# ── Bateman core ─────────────────────────────────────────────────────

def _bateman(t_hours: float, scale: float, ka: float, ke: float) -> float:
    """
    Bateman shape times scale = F*D/(Vd*BW). Assumes validated inputs.
    """
    if t_hours < 0:
        return 0.0
    if _rates_coincide(ka, ke):
        c = scale * ke * t_hours * math.exp(-ke * t_hours)
    else:
        c = scale * ka / (ka - ke) * (math.exp(-ke * t_hours) - math.exp(-ka * t_hours))
    # round-off near t=0 and far in the tail can dip just below zero
    return c if c > 0 else 0.0


def single_dose_concentration(medication: Medication, dose_amount: float,
                              hours_since_dose: float,
                              body_weight: float = DEFAULT_BODY_WEIGHT_KG) -> float:
    """Concentration (mg/L) contributed by one dose, hours after intake."""
    validate_pk_parameters(medication, body_weight)
    scale = (medication.bioavailability * dose_amount
             / (medication.volume_of_distribution * body_weight))
    return _bateman(hours_since_dose, scale, medication.absorption_rate,
                    elimination_rate(medication))


def time_to_peak_hours(medication: Medication) -> float:
    """tmax = ln(Ka/Ke) / (Ka - Ke); 1/Ke when the rates coincide."""
    validate_pk_parameters(medication)
    ka = medication.absorption_rate
    ke = elimination_rate(medication)
    if _rates_coincide(ka, ke):
        return 1.0 / ke
    return math.log(ka / ke) / (ka - ke)


def _own_doses_sorted(medication: Medication,
                      doses: Iterable[MedicationDose]) -> list[MedicationDose]:
    own = [d for d in doses if d.medication_id == medication.id]
    own.sort(key=lambda d: (d.timestamp, d.id))
    return own


def _superposed(sorted_doses: Sequence[MedicationDose], time_ms: float,
                f_over_v: float, ka: float, ke: float) -> float:
    total = 0.0
    for dose in sorted_doses:
        if dose.timestamp > time_ms:
            break  # Heaviside: later doses contribute 0
        hours_since = (time_ms - dose.timestamp) / HOUR_MS
        total += _bateman(hours_since, f_over_v * dose.dose_amount, ka, ke)
    return total


# ── Public concentration API ─────────────────────────────────────────

def compute_concentration(medication: Medication, doses: Iterable[MedicationDose],
                          time: float,
                          body_weight: float = DEFAULT_BODY_WEIGHT_KG) -> float:
    """
    Total plasma concentration (mg/L) at epoch-ms `time`.
    Doses belonging to other medications are ignored.
    """
    validate_pk_parameters(medication, body_weight)
    f_over_v = medication.bioavailability / (medication.volume_of_distribution * body_weight)
    return _superposed(_own_doses_sorted(medication, doses), time, f_over_v,
                       medication.absorption_rate, elimination_rate(medication))


def sample_times(start_time: int, end_time: int, points: int) -> list[int]:
    """`points` evenly spaced epoch-ms times from start to end inclusive."""
    step = (end_time - start_time) / (points - 1)
    # half-up rounding; round() is half-even and can collapse neighbours
    times = [math.floor(start_time + i * step + 0.5) for i in range(points)]
    times[-1] = int(end_time)
    return times


def build_concentration_curve(
    medication: Medication,
    doses: Iterable[MedicationDose],
    start_time: int,
    end_time: int,
    points: int = CURVE_DEFAULT_POINTS,
    body_weight: float = DEFAULT_BODY_WEIGHT_KG,
    noise_floor: float = CONCENTRATION_NOISE_FLOOR,
    cancel_token: Optional[CancellationToken] = None,
) -> list[ConcentrationPoint]:
    """
    Sample the superposed concentration at `points` evenly spaced times.

    Values below `noise_floor` come back as None so charts don't draw
    near-zero tails. Deterministic for identical inputs.
    """
    validate_pk_parameters(medication, body_weight)
    if isinstance(points, bool) or not isinstance(points, int) or points < 2:
        raise InvalidParameterError("points", points, "must be an integer >= 2")
    if end_time <= start_time:
        raise InvalidParameterError("end_time", end_time, "must be after start_time")
    # strictly increasing integer-ms sample times
    if end_time - start_time < points - 1:
        raise InvalidParameterError("points", points, "exceeds the window length in ms")

    sorted_doses = _own_doses_sorted(medication, doses)
    f_over_v = medication.bioavailability / (medication.volume_of_distribution * body_weight)
    ka = medication.absorption_rate
    ke = elimination_rate(medication)

    curve = []
    for t in sample_times(start_time, end_time, points):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        c = _superposed(sorted_doses, t, f_over_v, ka, ke) if sorted_doses else 0.0
        curve.append(ConcentrationPoint(
            time=t,
            concentration=c if math.isfinite(c) and c >= noise_floor else None,
        ))
    return curve


def sample_concentration_at_times(
    medication: Medication,
    doses: Iterable[MedicationDose],
    timestamps: Sequence[int],
    body_weight: float = DEFAULT_BODY_WEIGHT_KG,
    noise_floor: float = CONCENTRATION_NOISE_FLOOR,
) -> list[Optional[float]]:
    """Concentration at arbitrary (e.g. irregular) times, None below the floor."""
    validate_pk_parameters(medication, body_weight)
    sorted_doses = _own_doses_sorted(medication, doses)
    f_over_v = medication.bioavailability / (medication.volume_of_distribution * body_weight)
    ka = medication.absorption_rate
    ke = elimination_rate(medication)
    out = []
    for t in timestamps:
        c = _superposed(sorted_doses, t, f_over_v, ka, ke)
        out.append(c if math.isfinite(c) and c >= noise_floor else None)
    return out


def moving_average_trend(timestamps: Sequence[int], values: Sequence[Optional[float]],
                         window_ms: float, min_points: int = 3) -> list[Optional[float]]:
    """
    Trailing moving average over [t - window, t] for irregular timestamps.
    Missing values are skipped; fewer than `min_points` in the window -> None.
    """
    result: list[Optional[float]] = []
    window: list[tuple[int, float]] = []
    total = 0.0
    head = 0
    for t, v in zip(timestamps, values):
        if v is not None and math.isfinite(v):
            window.append((t, v))
            total += v
        cutoff = t - window_ms
        while head < len(window) and window[head][0] < cutoff:
            total -= window[head][1]
            head += 1
        count = len(window) - head
        result.append(total / count if count >= min_points else None)
    return result


# ── Classification helpers ───────────────────────────────────────────

def is_chronic_medication(medication: Medication) -> bool:
    """SSRI/SNRI/mood stabilizers/antipsychotics act on a days scale."""
    return (medication.drug_class or "") in CHRONIC_MEDICATION_CLASSES


def therapeutic_status(medication: Medication,
                       concentration: Optional[float]) -> Optional[str]:
    """'below' | 'within' | 'above' the therapeutic range, None if unknown."""
    rng = medication.therapeutic_range
    if rng is None or concentration is None:
        return None
    if concentration < rng.min:
        return "below"
    if concentration > rng.max:
        return "above"
    return "within"
