"""Services for the lab ingestion engine.

Services implement the import pipeline and read access:
- reference_range: picks the range a result is judged against
- abnormal_values: flags out-of-range values and summarizes a report
- trend_analysis: compares results with the patient's previous values
- lab_import: orchestrates parse, dedupe, analysis and save for a batch
- lab_queries: patient history, test history, counts and review
- lab_store / lab_store_db: storage interfaces, in-memory and SQL
"""

from lab_ingestion.services.abnormal_values import (
    evaluate_abnormal_values,
    generate_clinical_summary,
)
from lab_ingestion.services.lab_import import LabImportRequest, LabImportService
from lab_ingestion.services.lab_queries import LabResultQueryService
from lab_ingestion.services.lab_store import (
    InMemoryLabReportStore,
    InMemoryPatientDirectory,
    LabReportStore,
    PatientDirectory,
)
from lab_ingestion.services.lab_store_db import SQLLabReportStore, SQLPatientDirectory
from lab_ingestion.services.reference_range import find_applicable_reference_range
from lab_ingestion.services.trend_analysis import TrendAnalyzer

__all__ = [
    # Evaluation
    "find_applicable_reference_range",
    "evaluate_abnormal_values",
    "generate_clinical_summary",
    "TrendAnalyzer",
    # Import
    "LabImportRequest",
    "LabImportService",
    # Queries
    "LabResultQueryService",
    # Storage
    "LabReportStore",
    "PatientDirectory",
    "InMemoryLabReportStore",
    "InMemoryPatientDirectory",
    "SQLLabReportStore",
    "SQLPatientDirectory",
]
