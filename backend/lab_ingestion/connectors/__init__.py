"""Lab payload connectors.

Each supported wire format has exactly one connector:

    LabConnector (abstract base)
        ├── HL7v2LabConnector - HL7 v2.x ORU segment text
        ├── FHIRLabConnector - FHIR R4 Bundle of DiagnosticReport/Observation
        └── ManualLabConnector - already canonical LabReport objects

Usage:
    from lab_ingestion.connectors import get_connector

    reports = get_connector("hl7").parse(payload, "quest", received_at=now)
"""

from typing import assert_never

from lab_ingestion.connectors.base import LabConnector
from lab_ingestion.connectors.fhir_connector import FHIRLabConnector
from lab_ingestion.connectors.hl7v2_connector import HL7v2LabConnector
from lab_ingestion.connectors.manual_connector import ManualLabConnector
from lab_ingestion.core.errors import UnsupportedFormatError
from lab_ingestion.schemas.base import LabDataFormat


def coerce_format(data_format: LabDataFormat | str) -> LabDataFormat:
    """Convert a format tag to LabDataFormat.

    Raises:
        UnsupportedFormatError: If the tag names no known format.
    """
    try:
        return LabDataFormat(data_format)
    except ValueError as e:
        raise UnsupportedFormatError(data_format) from e


def get_connector(data_format: LabDataFormat | str) -> LabConnector:
    """Return the connector for a payload format.

    Raises:
        UnsupportedFormatError: If the tag names no known format.
    """
    fmt = coerce_format(data_format)
    match fmt:
        case LabDataFormat.HL7:
            return HL7v2LabConnector()
        case LabDataFormat.FHIR:
            return FHIRLabConnector()
        case LabDataFormat.MANUAL:
            return ManualLabConnector()
        case _:
            assert_never(fmt)


__all__ = [
    "LabConnector",
    "HL7v2LabConnector",
    "FHIRLabConnector",
    "ManualLabConnector",
    "coerce_format",
    "get_connector",
]
