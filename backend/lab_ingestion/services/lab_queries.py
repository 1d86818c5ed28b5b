"""Read access to stored lab reports.

Thin projections over a LabReportStore for downstream consumers:
paginated patient history, single-test history, report lookup, counts,
and recording clinician review.
"""

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime

from lab_ingestion.core.audit import AuditAction, log_data_access
from lab_ingestion.core.errors import LabReportNotFoundError
from lab_ingestion.schemas.base import ReviewStatus
from lab_ingestion.schemas.lab_report import (
    LabReport,
    LabReportFilter,
    LabResultCounts,
    PaginatedLabReports,
    Pagination,
    TestHistoryEntry,
)
from lab_ingestion.services.lab_store import LabReportStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_HISTORY_LIMIT = 10


class LabResultQueryService:
    """Query surface over stored lab reports.

    Usage:
        queries = LabResultQueryService(store)
        page = await queries.get_patient_results("P001", LabReportFilter(abnormal_only=True))
        history = await queries.get_test_history("P001", "GLU")
    """

    def __init__(self, store: LabReportStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_patient_results(
        self,
        patient_id: str,
        filters: LabReportFilter | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> PaginatedLabReports:
        """Get a page of a patient's reports, newest collection date first.

        Args:
            patient_id: Patient whose reports to list.
            filters: Optional date range, test code and abnormal/critical filters.
            page: 1-based page number.
            limit: Page size.

        Returns:
            The page of reports plus pagination totals.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        items, total = await self.store.query(patient_id, filters or LabReportFilter(), page, limit)
        log_data_access("lab_report", patient_id=patient_id)

        return PaginatedLabReports(
            results=[self._without_raw_data(r) for r in items],
            pagination=Pagination(
                total=total,
                page=page,
                limit=limit,
                pages=math.ceil(total / limit),
            ),
        )

    async def get_test_history(
        self,
        patient_id: str,
        test_code: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
        sort_direction: str = "desc",
    ) -> list[TestHistoryEntry]:
        """Get one test's history: per report, the matching result and its trend.

        Args:
            patient_id: Patient whose history to read.
            test_code: Test to follow across reports.
            start_date: Earliest collection date to include.
            end_date: Latest collection date to include.
            limit: Maximum number of reports.
            sort_direction: "desc" (newest first) or "asc".
        """
        if sort_direction not in ("asc", "desc"):
            raise ValueError(f"sort_direction must be 'asc' or 'desc', got {sort_direction!r}")

        filters = LabReportFilter(start_date=start_date, end_date=end_date, test_code=test_code)
        reports, _ = await self.store.query(
            patient_id, filters, page=1, limit=limit, descending=sort_direction == "desc"
        )
        log_data_access("lab_test_history", resource_id=test_code, patient_id=patient_id)

        history = []
        for report in reports:
            result = report.find_result(test_code)
            if result is None:
                continue
            history.append(
                TestHistoryEntry(
                    date=report.collection_date,
                    value=result.value,
                    units=result.units,
                    test_name=result.test_name,
                    abnormal_flags=result.abnormal_flags,
                    reference_ranges=result.reference_ranges,
                    lab_id=report.lab_id,
                    lab_name=report.lab_facility_name,
                    trend=report.find_trend(test_code),
                    result_id=report.id,
                )
            )
        return history

    async def get_report(self, report_id: str, include_raw_data: bool = False) -> LabReport:
        """Get one report. The raw payload is only returned on request.

        Raises:
            LabReportNotFoundError: If no report has this id.
        """
        report = await self.store.get(report_id)
        if report is None:
            raise LabReportNotFoundError(report_id)

        log_data_access("lab_report", resource_id=report_id, patient_id=report.patient_id)
        return report if include_raw_data else self._without_raw_data(report)

    async def get_result_counts(self, patient_id: str) -> LabResultCounts:
        """Count a patient's reports: total, abnormal, critical and pending review."""
        counts = await self.store.count(patient_id)
        log_data_access("lab_report_counts", patient_id=patient_id)
        return counts

    async def update_review_status(
        self,
        report_id: str,
        review_status: ReviewStatus | str,
        reviewed_by: str | None = None,
    ) -> LabReport:
        """Record a clinician's review of a report.

        Raises:
            ValueError: If review_status is not a known status.
            LabReportNotFoundError: If no report has this id.
        """
        status = ReviewStatus(review_status)
        report = await self.store.update_review(report_id, status, reviewed_by, self._clock())
        if report is None:
            raise LabReportNotFoundError(report_id)

        logger.info(f"Lab report {report_id} marked {status.value} by {reviewed_by}")
        log_data_access(
            "lab_report",
            resource_id=report_id,
            patient_id=report.patient_id,
            user_id=reviewed_by,
            action=AuditAction.UPDATE,
        )
        return self._without_raw_data(report)

    @staticmethod
    def _without_raw_data(report: LabReport) -> LabReport:
        return report.model_copy(update={"raw_data": None})
