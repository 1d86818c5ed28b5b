"""Storage interfaces for lab reports and patients.

LabReportStore and PatientDirectory are the only collaborators the
import and query services talk to. This module also provides in-memory
implementations for tests and embedding; the SQL versions live in
lab_store_db.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from lab_ingestion.core.errors import DuplicateLabReportError
from lab_ingestion.schemas.base import ReviewStatus
from lab_ingestion.schemas.lab_report import LabReport, LabReportFilter, LabResultCounts

_EARLIEST = datetime.min.replace(tzinfo=UTC)


class ImportClock:
    """Hands out strictly increasing import timestamps.

    imported_at is the secondary sort key for reports sharing a
    collection date, so two saves must never get the same value.
    """

    def __init__(self) -> None:
        self._last: datetime | None = None

    def now(self) -> datetime:
        current = datetime.now(UTC)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


class LabReportStore(ABC):
    """Interface for lab report persistence.

    Implementations must enforce uniqueness of
    (patient_id, lab_id, external_reference_id) and order history by
    collection_date, then imported_at, then id.
    """

    @abstractmethod
    async def find_one(
        self,
        patient_id: str,
        lab_id: str | None,
        external_reference_id: str | None,
    ) -> LabReport | None:
        """Find a report by its natural key."""
        pass  # pragma: no cover

    @abstractmethod
    async def find_latest_before(
        self,
        patient_id: str,
        test_code: str,
        before: datetime,
    ) -> LabReport | None:
        """Find the newest report for a patient containing a test, collected strictly before a time."""
        pass  # pragma: no cover

    @abstractmethod
    async def save(self, report: LabReport) -> LabReport:
        """Persist a new report.

        Returns:
            The stored report with id and imported_at assigned.

        Raises:
            DuplicateLabReportError: If the natural key is already stored.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def query(
        self,
        patient_id: str,
        filters: LabReportFilter,
        page: int = 1,
        limit: int = 20,
        descending: bool = True,
    ) -> tuple[list[LabReport], int]:
        """Return one page of a patient's reports and the total match count."""
        pass  # pragma: no cover

    @abstractmethod
    async def get(self, report_id: str) -> LabReport | None:
        """Fetch a report by id."""
        pass  # pragma: no cover

    @abstractmethod
    async def count(self, patient_id: str) -> LabResultCounts:
        """Count a patient's reports by significance and review state."""
        pass  # pragma: no cover

    @abstractmethod
    async def update_review(
        self,
        report_id: str,
        review_status: ReviewStatus,
        reviewed_by: str | None,
        review_date: datetime,
    ) -> LabReport | None:
        """Record a clinician review. Returns None if the report does not exist."""
        pass  # pragma: no cover


class PatientDirectory(ABC):
    """Interface for checking that a patient exists."""

    @abstractmethod
    async def exists(self, patient_id: str) -> bool:
        pass  # pragma: no cover


# ============================================================================
# In-memory implementations
# ============================================================================


def _history_key(report: LabReport) -> tuple[datetime, datetime, str]:
    return (
        report.collection_date or _EARLIEST,
        report.imported_at or _EARLIEST,
        report.id or "",
    )


def matches_filter(report: LabReport, filters: LabReportFilter) -> bool:
    """Check a report against query filters."""
    if filters.start_date is not None and (
        report.collection_date is None or report.collection_date < filters.start_date
    ):
        return False
    if filters.end_date is not None and (
        report.collection_date is None or report.collection_date > filters.end_date
    ):
        return False
    if filters.test_code is not None and report.find_result(filters.test_code) is None:
        return False
    if filters.abnormal_only and not report.clinical_significance.has_abnormal_values:
        return False
    if filters.critical_only and not report.clinical_significance.has_critical_values:
        return False
    return True


class InMemoryLabReportStore(LabReportStore):
    """Lab report store backed by a dict.

    Reports are copied on the way in and out, so callers never share
    state with stored history.
    """

    def __init__(self) -> None:
        self._reports: dict[str, LabReport] = {}
        self._clock = ImportClock()

    def __len__(self) -> int:
        return len(self._reports)

    async def find_one(
        self,
        patient_id: str,
        lab_id: str | None,
        external_reference_id: str | None,
    ) -> LabReport | None:
        key = (patient_id, lab_id, external_reference_id)
        for report in self._reports.values():
            if report.natural_key == key:
                return report.model_copy(deep=True)
        return None

    async def find_latest_before(
        self,
        patient_id: str,
        test_code: str,
        before: datetime,
    ) -> LabReport | None:
        candidates = [
            r
            for r in self._reports.values()
            if r.patient_id == patient_id
            and r.collection_date is not None
            and r.collection_date < before
            and r.find_result(test_code) is not None
        ]
        if not candidates:
            return None
        return max(candidates, key=_history_key).model_copy(deep=True)

    async def save(self, report: LabReport) -> LabReport:
        if await self.find_one(*report.natural_key) is not None:
            raise DuplicateLabReportError(*report.natural_key)

        stored = report.model_copy(deep=True)
        stored.id = str(uuid4())
        stored.imported_at = self._clock.now()
        self._reports[stored.id] = stored
        return stored.model_copy(deep=True)

    async def query(
        self,
        patient_id: str,
        filters: LabReportFilter,
        page: int = 1,
        limit: int = 20,
        descending: bool = True,
    ) -> tuple[list[LabReport], int]:
        matches = [
            r for r in self._reports.values() if r.patient_id == patient_id and matches_filter(r, filters)
        ]
        # Undated reports sort last in both directions
        dated = sorted((r for r in matches if r.collection_date), key=_history_key, reverse=descending)
        undated = sorted((r for r in matches if not r.collection_date), key=_history_key, reverse=descending)
        ordered = dated + undated
        offset = (page - 1) * limit
        items = [r.model_copy(deep=True) for r in ordered[offset:offset + limit]]
        return items, len(matches)

    async def get(self, report_id: str) -> LabReport | None:
        report = self._reports.get(report_id)
        return report.model_copy(deep=True) if report is not None else None

    async def count(self, patient_id: str) -> LabResultCounts:
        reports = [r for r in self._reports.values() if r.patient_id == patient_id]
        return LabResultCounts(
            total=len(reports),
            abnormal=sum(1 for r in reports if r.clinical_significance.has_abnormal_values),
            critical=sum(1 for r in reports if r.clinical_significance.has_critical_values),
            pending_review=sum(
                1 for r in reports if r.clinical_significance.review_status == ReviewStatus.PENDING
            ),
        )

    async def update_review(
        self,
        report_id: str,
        review_status: ReviewStatus,
        reviewed_by: str | None,
        review_date: datetime,
    ) -> LabReport | None:
        report = self._reports.get(report_id)
        if report is None:
            return None
        report.clinical_significance.review_status = review_status
        report.clinical_significance.reviewed_by = reviewed_by
        report.clinical_significance.review_date = review_date
        return report.model_copy(deep=True)


class InMemoryPatientDirectory(PatientDirectory):
    """Patient directory backed by a set of ids."""

    def __init__(self, patient_ids: set[str] | None = None):
        self._patient_ids = set(patient_ids or ())

    def add(self, patient_id: str) -> None:
        self._patient_ids.add(patient_id)

    async def exists(self, patient_id: str) -> bool:
        return patient_id in self._patient_ids
