"""Background lab import job functions."""

import asyncio
import logging
from typing import Any

from rq.job import Job

from lab_ingestion.connectors import coerce_format
from lab_ingestion.core.config import settings
from lab_ingestion.core.database import close_db, get_session_maker
from lab_ingestion.core.queue import enqueue_job, lab_import_queue_name
from lab_ingestion.schemas.base import LabDataFormat
from lab_ingestion.schemas.lab_report import BatchImportResult
from lab_ingestion.services.lab_import import LabImportService
from lab_ingestion.services.lab_store_db import SQLLabReportStore, SQLPatientDirectory

logger = logging.getLogger(__name__)


async def _run_import(
    raw_data: Any,
    patient_id: str,
    ordering_provider_id: str,
    source_label: str,
    data_format: str,
) -> BatchImportResult:
    session_maker = get_session_maker()
    service = LabImportService(
        store=SQLLabReportStore(session_maker),
        patients=SQLPatientDirectory(session_maker),
    )
    try:
        return await service.import_batch(
            raw_data=raw_data,
            patient_id=patient_id,
            ordering_provider_id=ordering_provider_id,
            source_label=source_label,
            data_format=data_format,
        )
    finally:
        # The engine is bound to this job's event loop
        await close_db()


def import_lab_results(
    raw_data: Any,
    patient_id: str,
    ordering_provider_id: str,
    source_label: str,
    data_format: str,
) -> dict:
    """Import one lab payload for a patient.

    This function is executed by an RQ worker listening on the patient's
    import queue shard. It parses the payload, analyzes and saves each
    report, and returns a JSON-safe summary.

    Args:
        raw_data: HL7 text, FHIR Bundle (dict or JSON) or manual report objects.
        patient_id: Patient the results belong to.
        ordering_provider_id: Clinician of record.
        source_label: Identifier of the sending lab.
        data_format: "hl7", "fhir" or "manual".

    Returns:
        Dictionary with import counts, saved report ids and per-report errors.
    """
    logger.info(
        f"Starting lab import for patient_id={patient_id}, "
        f"source={source_label}, format={data_format}"
    )

    try:
        result = asyncio.run(
            _run_import(raw_data, patient_id, ordering_provider_id, source_label, data_format)
        )
    except Exception as e:
        logger.exception(f"Error importing lab results for patient {patient_id}: {e}")
        return {"success": False, "patient_id": patient_id, "error": str(e)}

    logger.info(
        f"Lab import completed for patient_id={patient_id}, "
        f"processed={result.processed}/{result.total}"
    )

    return {
        "success": True,
        "patient_id": patient_id,
        "total": result.total,
        "processed": result.processed,
        "duplicates": result.duplicates,
        "saved_report_ids": [report.id for report in result.saved],
        "errors": [error.model_dump(mode="json") for error in result.errors],
    }


def enqueue_lab_import(
    raw_data: Any,
    patient_id: str,
    ordering_provider_id: str,
    source_label: str,
    data_format: LabDataFormat | str,
    job_id: str | None = None,
) -> Job:
    """Queue a lab import on the patient's shard.

    All batches for one patient land on the same queue, so a single
    worker per shard keeps each patient's history strictly ordered.
    """
    queue_name = lab_import_queue_name(patient_id)
    fmt = coerce_format(data_format).value
    logger.info(f"Enqueueing lab import for patient {patient_id} on {queue_name}")
    return enqueue_job(
        import_lab_results,
        raw_data,
        patient_id,
        ordering_provider_id,
        source_label,
        fmt,
        queue_name=queue_name,
        job_timeout=settings.lab_import_job_timeout,
        job_id=job_id,
    )
