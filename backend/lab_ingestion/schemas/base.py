"""Base enums for the lab ingestion engine."""

from enum import Enum


class IntegrationSource(str, Enum):
    """Channel a lab report arrived through."""

    HL7 = "hl7"
    FHIR = "fhir"
    MANUAL = "manual"
    API = "api"


class LabDataFormat(str, Enum):
    """Wire format of an incoming lab payload."""

    HL7 = "hl7"
    FHIR = "fhir"
    MANUAL = "manual"


class FlagCode(str, Enum):
    """Abnormal flag codes (HL7 table 0078 subset)."""

    HIGH = "H"
    LOW = "L"
    CRITICAL = "C"
    ABNORMAL = "A"
    NORMAL = "N"


class Severity(str, Enum):
    """Severity tier attached to an abnormal flag."""

    MODERATE = "moderate"
    CRITICAL = "critical"


class TrendDirection(str, Enum):
    """Direction of change against the previous result."""

    NEW = "new"  # No usable prior result
    UNCHANGED = "unchanged"
    INCREASED = "increased"
    DECREASED = "decreased"


class TrendSignificance(str, Enum):
    """Clinical reading of a trend."""

    SIGNIFICANT_IMPROVEMENT = "significant-improvement"
    MILD_IMPROVEMENT = "mild-improvement"
    UNCHANGED = "unchanged"
    MILD_DETERIORATION = "mild-deterioration"
    SIGNIFICANT_DETERIORATION = "significant-deterioration"
    UNDETERMINED = "undetermined"


class ReviewStatus(str, Enum):
    """Clinician review state of a lab report."""

    PENDING = "pending"
    REVIEWED = "reviewed"
    ACTION_REQUIRED = "action-required"
    NO_ACTION_NEEDED = "no-action-needed"
