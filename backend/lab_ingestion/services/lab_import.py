"""Lab result import orchestration.

Drives one payload through parse -> duplicate check -> trend analysis ->
abnormal value evaluation -> save, one report at a time.

Batch-level failures (unknown patient, unsupported format, unparseable
payload) raise before anything is saved. Failures on a single report
are logged and recorded in the batch result; the remaining reports are
still imported and earlier saves stay saved.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from lab_ingestion.connectors import coerce_format, get_connector
from lab_ingestion.core.audit import log_lab_import
from lab_ingestion.core.errors import DuplicateLabReportError, PatientNotFoundError
from lab_ingestion.schemas.base import IntegrationSource, LabDataFormat
from lab_ingestion.schemas.lab_report import BatchImportResult, ImportItemError, LabReport
from lab_ingestion.services.abnormal_values import evaluate_abnormal_values
from lab_ingestion.services.lab_store import LabReportStore, PatientDirectory
from lab_ingestion.services.trend_analysis import TrendAnalyzer

logger = logging.getLogger(__name__)


def serialize_payload(raw_data: Any) -> str:
    """Render a payload as text for LabReport.raw_data."""
    if isinstance(raw_data, str):
        return raw_data
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    if isinstance(raw_data, LabReport):
        return raw_data.model_dump_json()
    if isinstance(raw_data, list):
        return json.dumps(
            [item.model_dump(mode="json") if isinstance(item, LabReport) else item for item in raw_data],
            default=str,
        )
    return json.dumps(raw_data, default=str)


@dataclass
class LabImportRequest:
    """Arguments for one batch import."""

    raw_data: Any
    patient_id: str
    ordering_provider_id: str
    source_label: str
    data_format: LabDataFormat | str


class LabImportService:
    """Imports lab payloads into a LabReportStore.

    Usage:
        service = LabImportService(store, patients)
        result = await service.import_batch(
            raw_data=hl7_text,
            patient_id="P001",
            ordering_provider_id="DR42",
            source_label="quest",
            data_format="hl7",
        )
    """

    def __init__(
        self,
        store: LabReportStore,
        patients: PatientDirectory,
        trend_analyzer: TrendAnalyzer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the import service.

        Args:
            store: Where reports are read from and saved to.
            patients: Used to reject batches for unknown patients.
            trend_analyzer: Defaults to a TrendAnalyzer over the same store.
            clock: Source of the batch receive time. Defaults to UTC now.
        """
        self.store = store
        self.patients = patients
        self.trend_analyzer = trend_analyzer or TrendAnalyzer(store)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def import_batch(
        self,
        raw_data: Any,
        patient_id: str,
        ordering_provider_id: str,
        source_label: str,
        data_format: LabDataFormat | str,
    ) -> BatchImportResult:
        """Parse a payload and import every report in it.

        Raises:
            PatientNotFoundError: If the patient is unknown.
            UnsupportedFormatError: If data_format is not hl7, fhir or manual.
            LabParseError: If the payload cannot be parsed.
        """
        if not await self.patients.exists(patient_id):
            raise PatientNotFoundError(patient_id)

        fmt = coerce_format(data_format)
        reports = get_connector(fmt).parse(raw_data, source_label, received_at=self._clock())
        raw_text = serialize_payload(raw_data)

        logger.info(
            f"Importing {len(reports)} lab report(s) from {source_label} "
            f"({fmt.value}) for patient {patient_id}"
        )

        result = BatchImportResult(total=len(reports))
        for report in reports:
            await self._import_report(
                report,
                result,
                patient_id=patient_id,
                ordering_provider_id=ordering_provider_id,
                source_label=source_label,
                integration_source=IntegrationSource(fmt.value),
                raw_text=raw_text,
            )

        result.processed = len(result.saved)
        logger.info(
            f"Lab import for patient {patient_id} finished: total={result.total}, "
            f"processed={result.processed}, duplicates={result.duplicates}, "
            f"errors={len(result.errors)}"
        )
        return result

    async def _import_report(
        self,
        report: LabReport,
        result: BatchImportResult,
        *,
        patient_id: str,
        ordering_provider_id: str,
        source_label: str,
        integration_source: IntegrationSource,
        raw_text: str,
    ) -> None:
        lab_id = report.lab_id or source_label
        external_id = report.external_reference_id

        try:
            if await self.store.find_one(patient_id, lab_id, external_id) is not None:
                logger.info(f"Lab report {external_id} from {lab_id} already imported, skipping")
                result.duplicates += 1
                return

            report.patient_id = patient_id
            report.ordered_by_provider_id = ordering_provider_id
            report.lab_id = lab_id
            report.integration_source = integration_source
            report.raw_data = raw_text

            await self.trend_analyzer.analyze(report)
            evaluate_abnormal_values(report)

            saved = await self.store.save(report)
        except DuplicateLabReportError:
            # Lost a race with another import of the same report
            if await self.store.find_one(patient_id, lab_id, external_id) is not None:
                logger.info(f"Lab report {external_id} from {lab_id} saved concurrently, skipping")
                result.duplicates += 1
                return
            self._record_error(result, patient_id, source_label, external_id, "Duplicate lab report")
            return
        except Exception as e:
            logger.error(f"Error processing lab report {external_id}: {e}")
            self._record_error(result, patient_id, source_label, external_id, str(e))
            return

        result.saved.append(saved)
        log_lab_import(
            patient_id=patient_id,
            report_id=saved.id,
            source_label=source_label,
            user_id=ordering_provider_id,
        )

    def _record_error(
        self,
        result: BatchImportResult,
        patient_id: str,
        source_label: str,
        external_id: str | None,
        message: str,
    ) -> None:
        result.errors.append(ImportItemError(external_reference_id=external_id, error=message))
        log_lab_import(
            patient_id=patient_id,
            report_id=external_id,
            source_label=source_label,
            success=False,
            error=message,
        )

    async def import_batches(
        self,
        requests: list[LabImportRequest],
    ) -> list[BatchImportResult | Exception]:
        """Import several batches, running different patients concurrently.

        Batches for the same patient run one after another in request order,
        so each sees the history saved by the ones before it.

        Returns:
            One entry per request, in request order: the batch result, or
            the batch-level exception it raised.
        """
        outcomes: list[BatchImportResult | Exception | None] = [None] * len(requests)

        by_patient: dict[str, list[int]] = {}
        for index, request in enumerate(requests):
            by_patient.setdefault(request.patient_id, []).append(index)

        async def run_patient(indexes: list[int]) -> None:
            for index in indexes:
                request = requests[index]
                try:
                    outcomes[index] = await self.import_batch(
                        raw_data=request.raw_data,
                        patient_id=request.patient_id,
                        ordering_provider_id=request.ordering_provider_id,
                        source_label=request.source_label,
                        data_format=request.data_format,
                    )
                except Exception as e:
                    logger.error(f"Lab import batch {index} for patient {request.patient_id} failed: {e}")
                    outcomes[index] = e

        await asyncio.gather(*(run_patient(indexes) for indexes in by_patient.values()))
        return outcomes
