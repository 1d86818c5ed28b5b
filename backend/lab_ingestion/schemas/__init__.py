"""Pydantic schemas for the lab ingestion engine."""

from lab_ingestion.schemas.base import (
    FlagCode,
    IntegrationSource,
    LabDataFormat,
    ReviewStatus,
    Severity,
    TrendDirection,
    TrendSignificance,
)
from lab_ingestion.schemas.lab_report import (
    AbnormalFlag,
    BatchImportResult,
    ClinicalSignificance,
    ImportItemError,
    LabReport,
    LabReportFilter,
    LabResultCounts,
    PaginatedLabReports,
    Pagination,
    ReferenceRange,
    TestHistoryEntry,
    TestResult,
    TrendEntry,
)

__all__ = [
    # Enums
    "FlagCode",
    "IntegrationSource",
    "LabDataFormat",
    "ReviewStatus",
    "Severity",
    "TrendDirection",
    "TrendSignificance",
    # Lab reports
    "AbnormalFlag",
    "ClinicalSignificance",
    "LabReport",
    "ReferenceRange",
    "TestResult",
    "TrendEntry",
    # Import results
    "BatchImportResult",
    "ImportItemError",
    # Queries
    "LabReportFilter",
    "LabResultCounts",
    "PaginatedLabReports",
    "Pagination",
    "TestHistoryEntry",
]
