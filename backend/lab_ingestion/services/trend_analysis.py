"""Longitudinal trend analysis for lab results.

Each numeric result in a new report is compared with the same test in
the patient's most recent earlier report. The comparison gives a
direction (new/unchanged/increased/decreased) and a clinical
significance (improvement or deterioration, mild or significant).

Significance rules when a reference range is available, first match wins:
    abnormal -> normal                      significant-improvement
    normal -> abnormal                      significant-deterioration
    abnormal -> abnormal, toward the range  significant (>10%) or mild improvement
    abnormal -> abnormal, away from range   significant (>10%) or mild deterioration
    normal -> normal, unchanged             unchanged
    normal -> normal, away from midpoint    mild-deterioration (>20%) or unchanged
    normal -> normal, toward midpoint       mild-improvement

Without a range only the size of the change counts: <5% unchanged,
<15% mild, otherwise significant. An increase is a deterioration except
for tests where higher is better.
"""

import asyncio
import logging
import math

from lab_ingestion.schemas.base import TrendDirection, TrendSignificance
from lab_ingestion.schemas.lab_report import LabReport, ReferenceRange, TestResult, TrendEntry
from lab_ingestion.services.lab_store import LabReportStore
from lab_ingestion.services.reference_range import find_applicable_reference_range

logger = logging.getLogger(__name__)

# HDL cholesterol, by local code and LOINC
HIGHER_IS_BETTER_TESTS = frozenset({"HDL", "2085-9"})

UNCHANGED_DIRECTION_PCT = 2.0
ABNORMAL_MAJOR_CHANGE_PCT = 10.0
NORMAL_DRIFT_PCT = 20.0
NO_RANGE_UNCHANGED_PCT = 5.0
NO_RANGE_MILD_PCT = 15.0


def percent_change(previous: float, current: float) -> float:
    """Change relative to |previous|, in percent. 0 when previous is 0."""
    if previous == 0:
        return 0.0
    return (current - previous) / abs(previous) * 100


def trend_direction(previous: float, current: float, pct: float) -> TrendDirection:
    if abs(pct) < UNCHANGED_DIRECTION_PCT:
        return TrendDirection.UNCHANGED
    return TrendDirection.INCREASED if current > previous else TrendDirection.DECREASED


def _range_midpoint(ref_range: ReferenceRange) -> float:
    # An open bound puts the midpoint at that end
    if ref_range.lower_bound is None:
        return -math.inf
    if ref_range.upper_bound is None:
        return math.inf
    return (ref_range.lower_bound + ref_range.upper_bound) / 2


def classify_with_range(
    ref_range: ReferenceRange,
    previous: float,
    current: float,
    pct: float,
    direction: TrendDirection,
) -> TrendSignificance:
    """Significance of a change judged against a reference range."""
    previous_normal = ref_range.contains(previous)
    current_normal = ref_range.contains(current)
    magnitude = abs(pct)

    if not previous_normal and current_normal:
        return TrendSignificance.SIGNIFICANT_IMPROVEMENT
    if previous_normal and not current_normal:
        return TrendSignificance.SIGNIFICANT_DETERIORATION

    if not previous_normal and not current_normal:
        was_high = ref_range.is_above(previous)
        was_low = ref_range.is_below(previous)
        if (was_high and current < previous) or (was_low and current > previous):
            if magnitude > ABNORMAL_MAJOR_CHANGE_PCT:
                return TrendSignificance.SIGNIFICANT_IMPROVEMENT
            return TrendSignificance.MILD_IMPROVEMENT
        if (was_high and current > previous) or (was_low and current < previous):
            if magnitude > ABNORMAL_MAJOR_CHANGE_PCT:
                return TrendSignificance.SIGNIFICANT_DETERIORATION
            return TrendSignificance.MILD_DETERIORATION
        return TrendSignificance.UNDETERMINED

    if direction == TrendDirection.UNCHANGED:
        return TrendSignificance.UNCHANGED

    midpoint = _range_midpoint(ref_range)
    moving_away = (current > midpoint and direction == TrendDirection.INCREASED) or (
        current < midpoint and direction == TrendDirection.DECREASED
    )
    if moving_away:
        if magnitude > NORMAL_DRIFT_PCT:
            return TrendSignificance.MILD_DETERIORATION
        return TrendSignificance.UNCHANGED
    return TrendSignificance.MILD_IMPROVEMENT


def classify_without_range(
    test_code: str | None,
    pct: float,
    direction: TrendDirection,
) -> TrendSignificance:
    """Significance of a change from its size alone."""
    magnitude = abs(pct)
    if magnitude < NO_RANGE_UNCHANGED_PCT:
        return TrendSignificance.UNCHANGED

    worse = direction == TrendDirection.INCREASED
    if (test_code or "").upper() in HIGHER_IS_BETTER_TESTS:
        worse = not worse

    if magnitude < NO_RANGE_MILD_PCT:
        return TrendSignificance.MILD_DETERIORATION if worse else TrendSignificance.MILD_IMPROVEMENT
    return TrendSignificance.SIGNIFICANT_DETERIORATION if worse else TrendSignificance.SIGNIFICANT_IMPROVEMENT


def classify_significance(
    result: TestResult,
    previous: float,
    current: float,
    pct: float,
    direction: TrendDirection,
) -> TrendSignificance:
    ref_range = find_applicable_reference_range(result)
    if ref_range is None or (ref_range.lower_bound is None and ref_range.upper_bound is None):
        return classify_without_range(result.test_code, pct, direction)
    return classify_with_range(ref_range, previous, current, pct, direction)


class TrendAnalyzer:
    """Compares a report's numeric results with the patient's history.

    History lookups for the tests of one report run concurrently. Callers
    must not analyze two reports of the same patient at once: a report's
    history has to include every earlier report of its batch.
    """

    def __init__(self, store: LabReportStore):
        self.store = store

    async def analyze(self, report: LabReport) -> None:
        """Replace report.trend_analysis with one entry per numeric result."""
        numeric_results = [r for r in report.results if r.numeric_value is not None]
        entries = await asyncio.gather(*(self._analyze_result(report, r) for r in numeric_results))
        report.trend_analysis = list(entries)

    async def _analyze_result(self, report: LabReport, result: TestResult) -> TrendEntry:
        current = result.numeric_value

        previous_report = None
        if result.test_code and report.patient_id and report.collection_date is not None:
            previous_report = await self.store.find_latest_before(
                report.patient_id, result.test_code, report.collection_date
            )

        previous_result = previous_report.find_result(result.test_code) if previous_report else None
        previous = previous_result.numeric_value if previous_result else None

        if previous is None:
            return TrendEntry(
                test_code=result.test_code,
                current_value=current,
                direction=TrendDirection.NEW,
                significance=TrendSignificance.UNDETERMINED,
            )

        pct = percent_change(previous, current)
        direction = trend_direction(previous, current, pct)
        significance = classify_significance(result, previous, current, pct, direction)

        logger.debug(
            f"Trend {result.test_code} for patient {report.patient_id}: "
            f"{previous} -> {current} ({pct:.2f}%) {significance.value}"
        )

        return TrendEntry(
            test_code=result.test_code,
            previous_value=previous,
            current_value=current,
            absolute_change=round(current - previous, 4),
            percent_change=round(pct, 2),
            direction=direction,
            significance=significance,
            previous_test_date=previous_report.collection_date,
        )
