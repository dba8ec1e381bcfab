"""
Correlation and descriptive statistics for the insight and sleep engines.

Pearson r = SUM (x - mx)(y - my) / sqrt(SUM (x - mx)^2 * SUM (y - my)^2)
p-value: two-tailed Student t with n - 2 degrees of freedom.
Group comparison: Welch's t-test (unequal variances).

Degenerate inputs (fewer than 3 pairs, zero variance, non-finite values)
never produce NaN: the result comes back with defined=False, value 0.0,
p_value 1.0.
"""

import math
import statistics
from typing import Optional, Sequence

from scipy import stats as sp_stats

from mood_pharma.core.models import CorrelationResult, LagCorrelation, TTestResult

MIN_PAIRS = 3


def _significance(p_value: float) -> str:
    if p_value < 0.001:
        return "high"
    if p_value < 0.01:
        return "medium"
    if p_value < 0.05:
        return "low"
    return "none"


def _is_number(v) -> bool:
    return v is not None and isinstance(v, (int, float)) and math.isfinite(v)


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> CorrelationResult:
    n = len(x)
    if n != len(y) or n < MIN_PAIRS:
        return CorrelationResult(sample_size=min(n, len(y)))
    if not all(_is_number(v) for v in x) or not all(_is_number(v) for v in y):
        return CorrelationResult(sample_size=n)

    mean_x = math.fsum(x) / n
    mean_y = math.fsum(y) / n
    sxy = math.fsum((a - mean_x) * (b - mean_y) for a, b in zip(x, y))
    sxx = math.fsum((a - mean_x) ** 2 for a in x)
    syy = math.fsum((b - mean_y) ** 2 for b in y)

    denom = math.sqrt(sxx * syy)
    if not math.isfinite(denom) or denom == 0:
        return CorrelationResult(sample_size=n)

    r = max(-1.0, min(1.0, sxy / denom))
    if not math.isfinite(r):
        return CorrelationResult(sample_size=n)

    if abs(r) >= 1.0:
        p_value = 0.0
    else:
        t_stat = r * math.sqrt((n - 2) / (1 - r * r))
        p_value = float(2 * sp_stats.t.sf(abs(t_stat), n - 2))
    if not math.isfinite(p_value):
        p_value = 1.0

    return CorrelationResult(
        value=r,
        p_value=p_value,
        significance=_significance(p_value),
        sample_size=n,
        method="pearson",
        defined=True,
    )


def spearman_correlation(x: Sequence[float], y: Sequence[float]) -> CorrelationResult:
    """Pearson on average ranks (ties share the mean rank)."""
    if len(x) != len(y) or len(x) < MIN_PAIRS:
        return CorrelationResult(sample_size=min(len(x), len(y)), method="spearman")
    if not all(_is_number(v) for v in x) or not all(_is_number(v) for v in y):
        return CorrelationResult(sample_size=len(x), method="spearman")
    result = pearson_correlation(
        [float(r) for r in sp_stats.rankdata(x)],
        [float(r) for r in sp_stats.rankdata(y)],
    )
    return result.model_copy(update={"method": "spearman"})


def correlate(x: Sequence[float], y: Sequence[float],
              method: str = "pearson") -> CorrelationResult:
    if method == "spearman":
        return spearman_correlation(x, y)
    return pearson_correlation(x, y)


def paired_values(x: Sequence[Optional[float]], y: Sequence[Optional[float]],
                  shift: int = 0) -> tuple[list[float], list[float]]:
    """Pairs x[i] with y[i + shift], keeping only pairs where both are numbers."""
    xs, ys = [], []
    length = min(len(x), len(y))
    for i in range(length):
        j = i + shift
        if j < 0 or j >= length:
            continue
        a, b = x[i], y[j]
        if _is_number(a) and _is_number(b):
            xs.append(float(a))
            ys.append(float(b))
    return xs, ys


def lagged_correlation(x: Sequence[Optional[float]], y: Sequence[Optional[float]],
                       lag: int, min_pairs: int = MIN_PAIRS,
                       method: str = "pearson") -> CorrelationResult:
    """
    Correlation of x(t) with y(t + lag) for series on the same uniform grid.
    Positive lag: y responds after x.
    """
    xs, ys = paired_values(x, y, lag)
    if len(xs) < max(min_pairs, MIN_PAIRS):
        return CorrelationResult(sample_size=len(xs), method=method)
    return correlate(xs, ys, method)


def best_lag_correlation(x: Sequence[Optional[float]], y: Sequence[Optional[float]],
                         lags: Sequence[int], min_pairs: int = MIN_PAIRS,
                         method: str = "pearson") -> Optional[LagCorrelation]:
    """The lag with the strongest |r| among defined results, or None."""
    best: Optional[LagCorrelation] = None
    for lag in lags:
        result = lagged_correlation(x, y, lag, min_pairs, method)
        if not result.defined:
            continue
        if best is None or abs(result.value) > abs(best.result.value):
            best = LagCorrelation(lag_hours=lag, result=result)
    return best


def descriptive_stats(values: Sequence[float]) -> dict:
    """mean, median, population std dev, min, max, coefficient of variation."""
    data = [float(v) for v in values if _is_number(v)]
    if not data:
        return {"n": 0, "mean": 0.0, "median": 0.0, "std_dev": 0.0,
                "min": 0.0, "max": 0.0, "cv": 0.0}
    mean = statistics.fmean(data)
    std = statistics.pstdev(data, mu=mean)
    return {
        "n": len(data),
        "mean": mean,
        "median": statistics.median(data),
        "std_dev": std,
        "min": min(data),
        "max": max(data),
        "cv": std / mean if mean > 0 else 0.0,
    }


def linear_trend(values: Sequence[float]) -> float:
    """Least-squares slope of values against their index."""
    data = [float(v) for v in values if _is_number(v)]
    if len(data) < 2:
        return 0.0
    if len(set(data)) == 1:
        return 0.0
    slope = sp_stats.linregress(range(len(data)), data).slope
    return float(slope) if math.isfinite(slope) else 0.0


def two_sample_t_test(a: Sequence[float], b: Sequence[float],
                      alpha: float = 0.05) -> TTestResult:
    """
    Welch's t-test of mean(a) vs mean(b), plus Cohen's d on the pooled SD
    sqrt((var_a + var_b) / 2). Each group needs 2 values and the groups
    must not both be constant; otherwise defined=False.
    """
    xs = [float(v) for v in a if _is_number(v)]
    ys = [float(v) for v in b if _is_number(v)]
    if len(xs) < 2 or len(ys) < 2:
        return TTestResult()
    var_x = statistics.variance(xs)
    var_y = statistics.variance(ys)
    if var_x == 0 and var_y == 0:
        return TTestResult()

    t_stat, p_value = sp_stats.ttest_ind(xs, ys, equal_var=False)
    t_stat, p_value = float(t_stat), float(p_value)
    if not math.isfinite(t_stat) or not math.isfinite(p_value):
        return TTestResult()
    pooled_sd = math.sqrt((var_x + var_y) / 2)
    return TTestResult(
        t_statistic=t_stat,
        p_value=p_value,
        effect_size=(statistics.fmean(xs) - statistics.fmean(ys)) / pooled_sd,
        significant=p_value < alpha,
        defined=True,
    )
