"""Reference range selection for test results."""

from lab_ingestion.schemas.lab_report import ReferenceRange, TestResult


def find_applicable_reference_range(result: TestResult) -> ReferenceRange | None:
    """Return the reference range used to judge a result.

    Always the first range listed, or None if the result has none.

    NOTE: patient sex and age are not consulted even when the result
    carries per-sex ranges. Severity classification and trend significance
    both depend on this choice, so changing it needs clinical signoff.
    """
    if not result.reference_ranges:
        return None
    return result.reference_ranges[0]
