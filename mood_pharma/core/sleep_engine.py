"""
Sleep analyzer: per-session metrics, a 0-100 sleep score and
multi-session trends.

Score components:
  efficiency  30 / 25 / 20 / 15 / 10   (>=95, >=85, >=75, >=65, else)
  deep %      25 (15-25) / 20 (10-30) / 15 (>=5) / 5
  REM %       25 (20-30) / 20 (15-35) / 15 (>=10) / 5
  duration    10 (7-9h) / 8 (6-10h) / 5 (>=5h) / 2
  awakenings  10 (<=2) / 7 (<=5) / 4 (<=8) / 1
"""

import logging
import math
import time
from datetime import datetime
from typing import Iterable, Optional, Sequence

from mood_pharma.config import (
    SLEEP_DEFAULT_BEDTIME,
    SLEEP_TARGET_HOURS,
    SLEEP_TREND_DAYS,
)
from mood_pharma.core.models import (
    DAY_MS,
    BedtimeSuggestion,
    SleepAnalytics,
    SleepMetrics,
    SleepRecord,
    SleepSession,
    SleepStage,
    SleepTrends,
)
from mood_pharma.core.statistics_engine import linear_trend

log = logging.getLogger("pk.sleep")

SLEEP_STAGES = (SleepStage.LIGHT, SleepStage.DEEP, SleepStage.REM)


def _pct(part: float, whole: float) -> float:
    return part / whole * 100 if whole > 0 else 0.0


def calculate_sleep_score(efficiency: float, deep_pct: float, rem_pct: float,
                          total_sleep_min: float, awakenings: int) -> int:
    score = 0

    if efficiency >= 95:
        score += 30
    elif efficiency >= 85:
        score += 25
    elif efficiency >= 75:
        score += 20
    elif efficiency >= 65:
        score += 15
    else:
        score += 10

    if 15 <= deep_pct <= 25:
        score += 25
    elif 10 <= deep_pct <= 30:
        score += 20
    elif deep_pct >= 5:
        score += 15
    else:
        score += 5

    if 20 <= rem_pct <= 30:
        score += 25
    elif 15 <= rem_pct <= 35:
        score += 20
    elif rem_pct >= 10:
        score += 15
    else:
        score += 5

    hours = total_sleep_min / 60
    if 7 <= hours <= 9:
        score += 10
    elif 6 <= hours <= 10:
        score += 8
    elif hours >= 5:
        score += 5
    else:
        score += 2

    if awakenings <= 2:
        score += 10
    elif awakenings <= 5:
        score += 7
    elif awakenings <= 8:
        score += 4
    else:
        score += 1

    return min(score, 100)


def analyze_sleep_session(records: Iterable[SleepRecord]) -> SleepMetrics:
    """
    Metrics for one night. Records are taken in the order given; an
    awakening is an awake record that follows a non-awake one.
    """
    records = list(records)
    if not records:
        return SleepMetrics()

    minutes = {stage: 0.0 for stage in SleepStage}
    time_to_deep: Optional[float] = None
    time_to_rem: Optional[float] = None
    awakenings = 0
    awake_streak = 0.0
    deep_run = rem_run = 0.0
    longest_deep = longest_rem = 0.0
    elapsed = 0.0

    for index, record in enumerate(records):
        duration = max(record.duration, 0.0) / 60
        minutes[record.stage] += duration

        if record.stage == SleepStage.AWAKE:
            if awake_streak == 0 and index > 0:
                awakenings += 1
            awake_streak += duration
            deep_run = rem_run = 0.0
        else:
            awake_streak = 0.0
            if record.stage == SleepStage.DEEP:
                if time_to_deep is None:
                    time_to_deep = elapsed
                deep_run += duration
                longest_deep = max(longest_deep, deep_run)
                rem_run = 0.0
            elif record.stage == SleepStage.REM:
                if time_to_rem is None:
                    time_to_rem = elapsed
                rem_run += duration
                longest_rem = max(longest_rem, rem_run)
                deep_run = 0.0
            else:
                deep_run = rem_run = 0.0
        elapsed += duration

    total_sleep = math.fsum(minutes[s] for s in SLEEP_STAGES)
    awake = minutes[SleepStage.AWAKE]
    total_duration = total_sleep + awake

    efficiency = _pct(total_sleep, total_duration)
    deep_pct = _pct(minutes[SleepStage.DEEP], total_sleep)
    rem_pct = _pct(minutes[SleepStage.REM], total_sleep)

    return SleepMetrics(
        total_sleep_time=total_sleep,
        light_sleep_time=minutes[SleepStage.LIGHT],
        deep_sleep_time=minutes[SleepStage.DEEP],
        rem_sleep_time=minutes[SleepStage.REM],
        awake_time=awake,
        light_sleep_percentage=_pct(minutes[SleepStage.LIGHT], total_sleep),
        deep_sleep_percentage=deep_pct,
        rem_sleep_percentage=rem_pct,
        awake_percentage=_pct(awake, total_duration),
        sleep_efficiency=efficiency,
        wake_after_sleep_onset=awake,
        number_of_awakenings=awakenings,
        average_awakening_duration=awake / awakenings if awakenings else 0.0,
        time_to_deep_sleep=time_to_deep,
        time_to_rem=time_to_rem,
        deep_sleep_continuity=longest_deep,
        rem_continuity=longest_rem,
        sleep_score=calculate_sleep_score(efficiency, deep_pct, rem_pct, total_sleep, awakenings),
    )


def build_sleep_session(records: Iterable[SleepRecord],
                        session_id: Optional[str] = None) -> SleepSession:
    """Assemble a session from raw stage records (sorted by timestamp)."""
    records = sorted(records, key=lambda r: r.timestamp)
    if not records:
        raise ValueError("a sleep session needs at least one record")
    start = records[0].timestamp
    end = max(r.timestamp + int(r.duration * 1000) for r in records)
    date = datetime.fromtimestamp(start / 1000).strftime("%Y-%m-%d")
    return SleepSession(
        id=session_id or f"sleep-session-{date}",
        date=date,
        start_time=start,
        end_time=end,
        total_duration=(end - start) / 60000,
        records=records,
        metrics=analyze_sleep_session(records),
    )


# ── Trends ───────────────────────────────────────────────────────────

def _recent(sessions: Sequence[SleepSession], days: float, now: int) -> list[SleepSession]:
    cutoff = now - days * DAY_MS
    return [s for s in sessions if s.start_time >= cutoff]


def _average_metrics(sessions: Sequence[SleepSession]) -> dict[str, float]:
    if not sessions:
        return {}
    n = len(sessions)
    out = {
        "total_sleep_time": math.fsum(s.metrics.total_sleep_time for s in sessions) / n,
        "sleep_efficiency": math.fsum(s.metrics.sleep_efficiency for s in sessions) / n,
        "deep_sleep_percentage": math.fsum(s.metrics.deep_sleep_percentage for s in sessions) / n,
        "rem_sleep_percentage": math.fsum(s.metrics.rem_sleep_percentage for s in sessions) / n,
        "number_of_awakenings": math.fsum(s.metrics.number_of_awakenings for s in sessions) / n,
        "sleep_score": math.fsum(s.metrics.sleep_score for s in sessions) / n,
    }
    # latencies only average over nights that reached the stage
    deep = [s.metrics.time_to_deep_sleep for s in sessions if s.metrics.time_to_deep_sleep is not None]
    rem = [s.metrics.time_to_rem for s in sessions if s.metrics.time_to_rem is not None]
    if deep:
        out["time_to_deep_sleep"] = math.fsum(deep) / len(deep)
    if rem:
        out["time_to_rem"] = math.fsum(rem) / len(rem)
    return out


def _recommendations(weekly: dict[str, float]) -> list[str]:
    recs = []
    if not weekly:
        return recs
    if weekly["sleep_efficiency"] < 85:
        recs.append("Sleep efficiency is below ideal. Keep regular bed and wake times.")
    if weekly["deep_sleep_percentage"] < 15:
        recs.append("Little deep sleep. Avoid caffeine 6 hours before bed and keep the room cool.")
    if weekly["rem_sleep_percentage"] < 15:
        recs.append("Low REM sleep can indicate stress. Try relaxation techniques before bed.")
    if weekly["total_sleep_time"] < 420:
        recs.append("You sleep less than 7 hours. Try going to bed 30 minutes earlier.")
    if weekly["number_of_awakenings"] > 5:
        recs.append("Frequent awakenings. Check room temperature and avoid liquids 2 hours before bed.")
    if weekly.get("time_to_deep_sleep", 0) > 45:
        recs.append("Deep sleep takes long to start. Consider relaxation or light daytime exercise.")
    return recs


def analyze_sleep_trends(sessions: Iterable[SleepSession],
                         now: Optional[int] = None) -> SleepAnalytics:
    sessions = sorted(sessions, key=lambda s: s.start_time)
    if not sessions:
        return SleepAnalytics()
    now = int(time.time() * 1000) if now is None else now

    weekly = _average_metrics(_recent(sessions, 7, now))
    monthly = _average_metrics(_recent(sessions, 30, now))

    trends = SleepTrends()
    recent = _recent(sessions, SLEEP_TREND_DAYS, now)
    if len(recent) >= 2:
        trends = SleepTrends(
            sleep_efficiency_trend=linear_trend([s.metrics.sleep_efficiency for s in recent]),
            deep_sleep_trend=linear_trend([s.metrics.deep_sleep_percentage for s in recent]),
            total_sleep_time_trend=linear_trend([s.metrics.total_sleep_time for s in recent]),
        )

    return SleepAnalytics(
        weekly_average=weekly,
        monthly_average=monthly,
        trends=trends,
        recommendations=_recommendations(weekly),
    )


def calculate_sleep_debt(sessions: Iterable[SleepSession],
                         target_hours: float = SLEEP_TARGET_HOURS) -> float:
    """Accumulated deficit in minutes; surplus nights don't pay it back."""
    target = target_hours * 60
    return math.fsum(max(0.0, target - s.metrics.total_sleep_time) for s in sessions)


def suggest_optimal_bedtime(sessions: Sequence[SleepSession]) -> BedtimeSuggestion:
    if len(sessions) < 3:
        return BedtimeSuggestion(bedtime=SLEEP_DEFAULT_BEDTIME, confidence=0.1,
                                 reasoning="Not enough data for a personal suggestion")

    top = sorted((s for s in sessions if s.metrics.sleep_score >= 80),
                 key=lambda s: s.metrics.sleep_score, reverse=True)[:5]
    if not top:
        return BedtimeSuggestion(bedtime="22:00", confidence=0.3,
                                 reasoning="General guidance (no high-scoring nights yet)")

    # average the clock time, not the timestamps; times after midnight
    # count as late evening so 23:30 and 00:30 average to 00:00
    minutes = []
    for s in top:
        start = datetime.fromtimestamp(s.start_time / 1000)
        m = start.hour * 60 + start.minute
        minutes.append(m + 1440 if m < 12 * 60 else m)
    avg = round(math.fsum(minutes) / len(minutes)) % 1440
    bedtime = f"{avg // 60:02d}:{avg % 60:02d}"
    log.debug("Bedtime suggestion %s from %d nights", bedtime, len(top))
    return BedtimeSuggestion(
        bedtime=bedtime,
        confidence=min(0.9, len(top) / 10),
        reasoning=f"Based on your {len(top)} best-scoring nights",
    )
