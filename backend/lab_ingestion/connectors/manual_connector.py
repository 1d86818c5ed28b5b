"""Connector for manually entered (already canonical) lab reports."""

import json
import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from lab_ingestion.connectors.base import LabConnector
from lab_ingestion.core.errors import LabParseError
from lab_ingestion.schemas.base import IntegrationSource, LabDataFormat
from lab_ingestion.schemas.lab_report import LabReport

logger = logging.getLogger(__name__)


class ManualLabConnector(LabConnector):
    """Pass-through connector for canonical LabReport objects.

    Accepts a LabReport, a dict in LabReport shape, or a list of either
    (JSON text is decoded first). A single object is wrapped in a list.
    Input objects are copied, never mutated.
    """

    @property
    def data_format(self) -> LabDataFormat:
        return LabDataFormat.MANUAL

    def parse(
        self,
        raw: Any,
        source_label: str,
        *,
        received_at: datetime | None = None,
    ) -> list[LabReport]:
        if isinstance(raw, bytes | str):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise LabParseError(f"Invalid manual lab data: {e}") from e

        items = raw if isinstance(raw, list) else [raw]

        reports = []
        for index, item in enumerate(items):
            if isinstance(item, LabReport):
                report = item.model_copy(deep=True)
            else:
                try:
                    report = LabReport.model_validate(item)
                except ValidationError as e:
                    raise LabParseError(f"Invalid manual lab report at index {index}: {e}") from e

            if report.lab_id is None:
                report.lab_id = source_label
            if report.collection_date is None:
                report.collection_date = received_at
            report.integration_source = IntegrationSource.MANUAL
            reports.append(report)

        return reports
