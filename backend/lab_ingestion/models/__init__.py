"""SQLAlchemy ORM models for the lab ingestion engine.

All models inherit from Base which provides:
- id: UUID primary key
- created_at: Timestamp

Models:
- LabReportRecord, LabResultRecord
- Patient
"""

from lab_ingestion.core.database import Base
from lab_ingestion.models.lab_report import LabReportRecord, LabResultRecord
from lab_ingestion.models.patient import Patient

__all__ = [
    "Base",
    "LabReportRecord",
    "LabResultRecord",
    "Patient",
]
