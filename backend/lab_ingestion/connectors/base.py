"""Base class for lab payload connectors.

A connector turns one raw payload in a single wire format into an
ordered list of canonical LabReport records. Connectors are pure:
no I/O, no clock reads, no shared state. The only notion of "now" they
see is the received_at argument supplied by the caller, so the same
payload with the same received_at always yields equal output.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from lab_ingestion.schemas.base import IntegrationSource, LabDataFormat
from lab_ingestion.schemas.lab_report import LabReport

UNKNOWN_LAB = "Unknown Lab"
UNKNOWN_TEST = "Unknown Test"


class LabConnector(ABC):
    """Abstract base class for lab payload connectors.

    Example implementation:
        class MyConnector(LabConnector):
            @property
            def data_format(self) -> LabDataFormat:
                return LabDataFormat.MANUAL

            def parse(self, raw, source_label, *, received_at=None):
                return [LabReport(lab_id=source_label, ...)]
    """

    @property
    @abstractmethod
    def data_format(self) -> LabDataFormat:
        """Return the wire format this connector reads."""
        pass  # pragma: no cover

    @property
    def integration_source(self) -> IntegrationSource:
        """Integration source stamped on reports from this connector."""
        return IntegrationSource(self.data_format.value)

    @abstractmethod
    def parse(
        self,
        raw: Any,
        source_label: str,
        *,
        received_at: datetime | None = None,
    ) -> list[LabReport]:
        """Parse one payload into lab reports.

        Args:
            raw: The payload as received (text, bytes or structured object).
            source_label: Identifies the sending lab; becomes LabReport.lab_id.
            received_at: When the payload was received. Used for ids and
                dates the payload itself does not carry.

        Returns:
            Reports in payload order.

        Raises:
            LabParseError: If the payload is structurally invalid.
        """
        pass  # pragma: no cover
