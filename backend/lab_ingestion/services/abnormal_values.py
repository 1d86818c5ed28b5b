"""Abnormal value detection and clinical significance summaries.

Compares numeric results with their reference range and assigns
auto-generated flags:

    value < lower * 0.7          -> C (critical)
    lower * 0.7 <= value < lower -> L (moderate)
    upper < value <= upper * 1.5 -> H (moderate)
    value > upper * 1.5          -> C (critical)

Flags sent by the source lab are authoritative: a result that already
has flags is left untouched.
"""

import logging

from lab_ingestion.schemas.base import FlagCode, Severity
from lab_ingestion.schemas.lab_report import (
    AbnormalFlag,
    LabReport,
    TestResult,
    format_number,
)
from lab_ingestion.services.reference_range import find_applicable_reference_range

logger = logging.getLogger(__name__)

CRITICAL_LOW_FACTOR = 0.7
CRITICAL_HIGH_FACTOR = 1.5

ALL_NORMAL_SUMMARY = "All test results are within normal ranges."
MULTIPLE_ABNORMAL_PREFIX = "Multiple abnormal results detected: "


def classify_value(result: TestResult) -> AbnormalFlag | None:
    """Build the auto-generated flag for one result, or None if it is normal.

    Results with no reference range or a non-numeric value are not judged.
    """
    ref_range = find_applicable_reference_range(result)
    value = result.numeric_value
    if ref_range is None or value is None:
        return None

    if ref_range.is_below(value):
        critical = value < ref_range.lower_bound * CRITICAL_LOW_FACTOR
        flag = FlagCode.CRITICAL if critical else FlagCode.LOW
        position = "below"
    elif ref_range.is_above(value):
        critical = value > ref_range.upper_bound * CRITICAL_HIGH_FACTOR
        flag = FlagCode.CRITICAL if critical else FlagCode.HIGH
        position = "above"
    else:
        return None

    return AbnormalFlag(
        flag=flag,
        severity=Severity.CRITICAL if critical else Severity.MODERATE,
        description=(
            f"Value ({format_number(value)}) is {position} the reference range "
            f"({ref_range.display})"
        ),
        auto_generated=True,
    )


def evaluate_abnormal_values(report: LabReport) -> None:
    """Flag abnormal results and recompute the report's clinical significance."""
    for result in report.results:
        if result.abnormal_flags:
            continue
        flag = classify_value(result)
        if flag is not None:
            result.abnormal_flags.append(flag)

    significance = report.clinical_significance
    significance.has_critical_values = any(r.is_critical for r in report.results)
    significance.has_abnormal_values = any(r.is_abnormal for r in report.results)
    significance.summary = generate_clinical_summary(report)

    if significance.has_critical_values:
        logger.info(
            f"Critical lab values in report {report.external_reference_id} "
            f"for patient {report.patient_id}"
        )


def _direction_word(result: TestResult, flag: AbnormalFlag) -> str:
    if flag.flag == FlagCode.HIGH:
        return "high"
    if flag.flag == FlagCode.LOW:
        return "low"
    if flag.flag == FlagCode.CRITICAL:
        ref_range = find_applicable_reference_range(result)
        value = result.numeric_value
        if ref_range is not None and value is not None:
            if ref_range.is_above(value):
                return "high"
            if ref_range.is_below(value):
                return "low"
    return "abnormal"


def describe_abnormal_result(result: TestResult) -> str:
    """One clause such as "Glucose is moderately high (130 mg/dL)"."""
    flag = result.abnormal_flags[0]
    intensity = "critically" if flag.severity == Severity.CRITICAL else "moderately"
    reading = f"{result.value} {result.units}" if result.units else f"{result.value}"
    name = result.test_name or result.test_code
    return f"{name} is {intensity} {_direction_word(result, flag)} ({reading})"


def generate_clinical_summary(report: LabReport) -> str:
    """Summarize the abnormal results of a report in one sentence."""
    clauses = [describe_abnormal_result(r) for r in report.results if r.abnormal_flags]

    if not clauses:
        return ALL_NORMAL_SUMMARY
    if len(clauses) == 1:
        return clauses[0]
    return MULTIPLE_ABNORMAL_PREFIX + "; ".join(clauses)
