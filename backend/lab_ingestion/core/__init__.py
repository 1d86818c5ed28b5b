"""Core application configuration and utilities."""

from lab_ingestion.core.audit import AuditAction, AuditEvent, log_audit, log_data_access, log_lab_import
from lab_ingestion.core.config import settings
from lab_ingestion.core.database import Base, get_engine, get_session_maker
from lab_ingestion.core.errors import (
    DuplicateLabReportError,
    LabIngestionError,
    LabParseError,
    LabReportNotFoundError,
    PatientNotFoundError,
    UnsupportedFormatError,
)

__all__ = [
    # Config
    "settings",
    # Database
    "Base",
    "get_engine",
    "get_session_maker",
    # Audit
    "AuditAction",
    "AuditEvent",
    "log_audit",
    "log_data_access",
    "log_lab_import",
    # Errors
    "LabIngestionError",
    "PatientNotFoundError",
    "UnsupportedFormatError",
    "LabParseError",
    "DuplicateLabReportError",
    "LabReportNotFoundError",
]
