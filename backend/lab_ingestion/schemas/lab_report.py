"""LabReport, TestResult and related schemas.

These are the canonical in-memory shapes every parser produces and every
service consumes. The SQL store converts to and from them at its boundary.
"""

import math
import re
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

from lab_ingestion.schemas.base import (
    FlagCode,
    IntegrationSource,
    ReviewStatus,
    Severity,
    TrendDirection,
    TrendSignificance,
)

# Leading decimal number, as read by lab systems that prefix units or text
_NUMERIC_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def parse_numeric(value: str | None) -> float | None:
    """Parse the leading number of a result value.

    "130" and "130 mg/dL" give 130.0; "<5", "positive" and "" give None.
    """
    if value is None:
        return None
    match = _NUMERIC_PREFIX.match(value)
    if not match:
        return None
    return float(match.group(1))


def format_number(value: float) -> str:
    """Render a float without a trailing ".0" for whole numbers."""
    if math.isfinite(value) and value == int(value):
        return str(int(value))
    return str(value)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to UTC, reading naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ReferenceRange(BaseModel):
    """Normal interval for a test. A missing bound is open-ended."""

    gender: str = Field(default="all", description="Sex the range applies to")
    lower_bound: float | None = Field(None, description="Lower limit of normal")
    upper_bound: float | None = Field(None, description="Upper limit of normal")
    units: str | None = Field(None, description="Units of the bounds")

    def is_below(self, value: float) -> bool:
        return self.lower_bound is not None and value < self.lower_bound

    def is_above(self, value: float) -> bool:
        return self.upper_bound is not None and value > self.upper_bound

    def contains(self, value: float) -> bool:
        """Check if a value lies inside the range, bounds inclusive."""
        return not self.is_below(value) and not self.is_above(value)

    @property
    def display(self) -> str:
        """Human-readable form, e.g. "70 - 100 mg/dL"."""
        if self.lower_bound is not None and self.upper_bound is not None:
            text = f"{format_number(self.lower_bound)} - {format_number(self.upper_bound)}"
        elif self.lower_bound is not None:
            text = f">= {format_number(self.lower_bound)}"
        elif self.upper_bound is not None:
            text = f"<= {format_number(self.upper_bound)}"
        else:
            text = "unbounded"
        return f"{text} {self.units}" if self.units else text


class AbnormalFlag(BaseModel):
    """Coded abnormality indicator on a test result."""

    flag: FlagCode = Field(..., description="Flag code (H, L, C, A, N)")
    severity: Severity = Field(default=Severity.MODERATE, description="Severity tier")
    description: str | None = Field(None, description="Explanation of the flag")
    auto_generated: bool = Field(
        default=False, description="True when computed locally rather than sent by the source"
    )


class TestResult(BaseModel):
    """A single analyte measurement within a lab report."""

    test_code: str | None = Field(None, description="Analyte code (local or LOINC)")
    test_name: str | None = Field(None, description="Analyte display name")
    value: str | None = Field(None, description="Result value as reported")
    units: str | None = Field(None, description="Units of the value")
    status: str = Field(default="final", description="Result status")
    reference_ranges: list[ReferenceRange] = Field(default_factory=list)
    abnormal_flags: list[AbnormalFlag] = Field(default_factory=list)
    notes: str | None = Field(None, description="Free-text comments")

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: object) -> object:
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, int | float):
            return format_number(float(value))
        return value

    @property
    def numeric_value(self) -> float | None:
        """Numeric reading of the value, or None when it is not a number."""
        return parse_numeric(self.value)

    @property
    def is_abnormal(self) -> bool:
        return bool(self.abnormal_flags)

    @property
    def is_critical(self) -> bool:
        return any(flag.flag == FlagCode.CRITICAL for flag in self.abnormal_flags)


class TrendEntry(BaseModel):
    """Comparison of one result against the patient's previous value."""

    test_code: str | None = Field(None, description="Analyte code")
    previous_value: float | None = Field(None, description="Most recent prior value")
    current_value: float = Field(..., description="Value in this report")
    absolute_change: float | None = Field(None, description="current - previous")
    percent_change: float | None = Field(None, description="Change relative to |previous|")
    direction: TrendDirection = Field(..., description="Direction of change")
    significance: TrendSignificance = Field(..., description="Clinical reading of the change")
    previous_test_date: datetime | None = Field(None, description="Collection date of prior value")


class ClinicalSignificance(BaseModel):
    """Report-level roll-up of abnormal findings plus review state."""

    has_critical_values: bool = False
    has_abnormal_values: bool = False
    summary: str | None = None
    review_status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: str | None = None
    review_date: datetime | None = None

    model_config = {"validate_assignment": True}

    @field_validator("review_date")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class LabReport(BaseModel):
    """One ingested external lab document (a panel or order)."""

    id: str | None = Field(None, description="Store-assigned identifier")
    patient_id: str | None = Field(None, description="Subject of the report")
    ordered_by_provider_id: str | None = Field(None, description="Clinician of record")
    external_reference_id: str | None = Field(None, description="Identifier in the source lab system")
    lab_id: str | None = Field(None, description="Source that produced the report")
    collection_date: datetime | None = Field(None, description="Specimen collection time")
    report_date: datetime | None = Field(None, description="Time the lab issued the report")
    panel_code: str | None = None
    panel_name: str | None = None
    lab_facility_name: str | None = None
    integration_source: IntegrationSource = Field(default=IntegrationSource.MANUAL)
    results: list[TestResult] = Field(default_factory=list)
    trend_analysis: list[TrendEntry] = Field(default_factory=list)
    clinical_significance: ClinicalSignificance = Field(default_factory=ClinicalSignificance)
    raw_data: str | None = Field(None, description="Original payload, verbatim")
    imported_at: datetime | None = Field(None, description="Set by the store on save")

    model_config = {"from_attributes": True, "validate_assignment": True}

    @field_validator("collection_date", "report_date", "imported_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def natural_key(self) -> tuple[str | None, str | None, str | None]:
        """The (patient, lab, external reference) triple that identifies a report."""
        return self.patient_id, self.lab_id, self.external_reference_id

    def find_result(self, test_code: str) -> TestResult | None:
        """Return the first result for a test code."""
        for result in self.results:
            if result.test_code == test_code:
                return result
        return None

    def find_trend(self, test_code: str) -> TrendEntry | None:
        for entry in self.trend_analysis:
            if entry.test_code == test_code:
                return entry
        return None


# ============================================================================
# Import results
# ============================================================================


class ImportItemError(BaseModel):
    """Failure recorded for one report of a batch."""

    external_reference_id: str | None = None
    error: str


class BatchImportResult(BaseModel):
    """Outcome of one batch import."""

    saved: list[LabReport] = Field(default_factory=list)
    errors: list[ImportItemError] = Field(default_factory=list)
    total: int = Field(0, description="Reports parsed from the payload")
    processed: int = Field(0, description="Reports saved by this call")
    duplicates: int = Field(0, description="Reports skipped as already imported")

    @property
    def is_partial(self) -> bool:
        return bool(self.errors) and self.processed > 0


# ============================================================================
# Query surface
# ============================================================================


class LabReportFilter(BaseModel):
    """Filters for patient result history."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    test_code: str | None = None
    abnormal_only: bool = False
    critical_only: bool = False

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class PaginatedLabReports(BaseModel):
    results: list[LabReport]
    pagination: Pagination


class TestHistoryEntry(BaseModel):
    """One point in a single test's history."""

    date: datetime | None
    value: str | None
    units: str | None
    test_name: str | None
    abnormal_flags: list[AbnormalFlag] = Field(default_factory=list)
    reference_ranges: list[ReferenceRange] = Field(default_factory=list)
    lab_id: str | None
    lab_name: str | None
    trend: TrendEntry | None = None
    result_id: str | None = Field(None, description="Identifier of the containing report")


class LabResultCounts(BaseModel):
    total: int = 0
    abnormal: int = 0
    critical: int = 0
    pending_review: int = 0
