"""Database-backed lab report store and patient directory.

Each operation runs in its own session from the session factory, so
concurrent history lookups never share a session and every save commits
on its own (a failed item never rolls back its siblings).

Usage:
    store = SQLLabReportStore(get_session_maker())
    saved = await store.save(report)
"""

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Select

from lab_ingestion.core.errors import DuplicateLabReportError
from lab_ingestion.models.lab_report import LabReportRecord, LabResultRecord
from lab_ingestion.models.patient import Patient
from lab_ingestion.schemas.base import ReviewStatus
from lab_ingestion.schemas.lab_report import (
    AbnormalFlag,
    ClinicalSignificance,
    LabReport,
    LabReportFilter,
    LabResultCounts,
    ReferenceRange,
    TestResult,
    TrendEntry,
)
from lab_ingestion.services.lab_store import ImportClock, LabReportStore, PatientDirectory

logger = logging.getLogger(__name__)


def record_to_schema(record: LabReportRecord) -> LabReport:
    """Convert a stored report (with its results loaded) to a LabReport."""
    return LabReport(
        id=record.id,
        patient_id=record.patient_id,
        ordered_by_provider_id=record.ordered_by_provider_id,
        external_reference_id=record.external_reference_id,
        lab_id=record.lab_id,
        collection_date=record.collection_date,
        report_date=record.report_date,
        panel_code=record.panel_code,
        panel_name=record.panel_name,
        lab_facility_name=record.lab_facility_name,
        integration_source=record.integration_source,
        results=[
            TestResult(
                test_code=row.test_code,
                test_name=row.test_name,
                value=row.value,
                units=row.units,
                status=row.status,
                reference_ranges=[ReferenceRange.model_validate(r) for r in row.reference_ranges or []],
                abnormal_flags=[AbnormalFlag.model_validate(f) for f in row.abnormal_flags or []],
                notes=row.notes,
            )
            for row in record.results
        ],
        trend_analysis=[TrendEntry.model_validate(t) for t in record.trend_analysis or []],
        clinical_significance=ClinicalSignificance(
            has_critical_values=record.has_critical_values,
            has_abnormal_values=record.has_abnormal_values,
            summary=record.significance_summary,
            review_status=record.review_status,
            reviewed_by=record.reviewed_by,
            review_date=record.review_date,
        ),
        raw_data=record.raw_data,
        imported_at=record.imported_at,
    )


def schema_to_record(report: LabReport, imported_at: datetime) -> LabReportRecord:
    """Build ORM rows for a new report."""
    significance = report.clinical_significance
    return LabReportRecord(
        id=str(uuid4()),
        patient_id=report.patient_id,
        ordered_by_provider_id=report.ordered_by_provider_id,
        external_reference_id=report.external_reference_id,
        lab_id=report.lab_id,
        collection_date=report.collection_date,
        report_date=report.report_date,
        panel_code=report.panel_code,
        panel_name=report.panel_name,
        lab_facility_name=report.lab_facility_name,
        integration_source=report.integration_source,
        has_critical_values=significance.has_critical_values,
        has_abnormal_values=significance.has_abnormal_values,
        significance_summary=significance.summary,
        review_status=significance.review_status,
        reviewed_by=significance.reviewed_by,
        review_date=significance.review_date,
        trend_analysis=[t.model_dump(mode="json") for t in report.trend_analysis],
        raw_data=report.raw_data,
        imported_at=imported_at,
        results=[
            LabResultRecord(
                position=position,
                test_code=result.test_code,
                test_name=result.test_name,
                value=result.value,
                units=result.units,
                status=result.status,
                notes=result.notes,
                reference_ranges=[r.model_dump(mode="json") for r in result.reference_ranges],
                abnormal_flags=[f.model_dump(mode="json") for f in result.abnormal_flags],
            )
            for position, result in enumerate(report.results)
        ],
    )


def _apply_filters(stmt: Select, patient_id: str, filters: LabReportFilter) -> Select:
    stmt = stmt.where(LabReportRecord.patient_id == patient_id)
    if filters.start_date is not None:
        stmt = stmt.where(LabReportRecord.collection_date >= filters.start_date)
    if filters.end_date is not None:
        stmt = stmt.where(LabReportRecord.collection_date <= filters.end_date)
    if filters.test_code is not None:
        stmt = stmt.where(
            LabReportRecord.results.any(LabResultRecord.test_code == filters.test_code)
        )
    if filters.abnormal_only:
        stmt = stmt.where(LabReportRecord.has_abnormal_values.is_(True))
    if filters.critical_only:
        stmt = stmt.where(LabReportRecord.has_critical_values.is_(True))
    return stmt


def _history_order(descending: bool = True) -> tuple:
    columns = (
        LabReportRecord.collection_date,
        LabReportRecord.imported_at,
        LabReportRecord.id,
    )
    if descending:
        ordered = [c.desc() for c in columns]
    else:
        ordered = [c.asc() for c in columns]
    # Undated reports sort last in both directions
    ordered[0] = ordered[0].nulls_last()
    return tuple(ordered)


class SQLLabReportStore(LabReportStore):
    """Lab report store backed by SQLAlchemy async sessions."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            session_maker: Factory for the sessions each operation opens.
        """
        self._session_maker = session_maker
        self._clock = ImportClock()

    async def find_one(
        self,
        patient_id: str,
        lab_id: str | None,
        external_reference_id: str | None,
    ) -> LabReport | None:
        stmt = select(LabReportRecord).where(
            LabReportRecord.patient_id == patient_id,
            LabReportRecord.lab_id.is_(None) if lab_id is None else LabReportRecord.lab_id == lab_id,
            LabReportRecord.external_reference_id.is_(None)
            if external_reference_id is None
            else LabReportRecord.external_reference_id == external_reference_id,
        )
        async with self._session_maker() as session:
            record = (await session.execute(stmt.limit(1))).scalar_one_or_none()
            return record_to_schema(record) if record is not None else None

    async def find_latest_before(
        self,
        patient_id: str,
        test_code: str,
        before: datetime,
    ) -> LabReport | None:
        stmt = (
            select(LabReportRecord)
            .where(
                LabReportRecord.patient_id == patient_id,
                LabReportRecord.collection_date < before,
                LabReportRecord.results.any(LabResultRecord.test_code == test_code),
            )
            .order_by(*_history_order())
            .limit(1)
        )
        async with self._session_maker() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record_to_schema(record) if record is not None else None

    async def save(self, report: LabReport) -> LabReport:
        imported_at = self._clock.now()
        record = schema_to_record(report, imported_at)
        report_id = record.id
        async with self._session_maker() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info(f"Unique key violation saving report {report.external_reference_id}: {e.orig}")
                raise DuplicateLabReportError(*report.natural_key) from e

        stored = report.model_copy(deep=True)
        stored.id = report_id
        stored.imported_at = imported_at
        return stored

    async def query(
        self,
        patient_id: str,
        filters: LabReportFilter,
        page: int = 1,
        limit: int = 20,
        descending: bool = True,
    ) -> tuple[list[LabReport], int]:
        count_stmt = _apply_filters(select(func.count(LabReportRecord.id)), patient_id, filters)
        page_stmt = (
            _apply_filters(select(LabReportRecord), patient_id, filters)
            .order_by(*_history_order(descending))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        async with self._session_maker() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            records = (await session.execute(page_stmt)).scalars().all()
            return [record_to_schema(r) for r in records], total

    async def get(self, report_id: str) -> LabReport | None:
        async with self._session_maker() as session:
            record = await session.get(LabReportRecord, report_id)
            return record_to_schema(record) if record is not None else None

    async def count(self, patient_id: str) -> LabResultCounts:
        stmt = select(
            func.count(LabReportRecord.id),
            func.count(LabReportRecord.id).filter(LabReportRecord.has_abnormal_values.is_(True)),
            func.count(LabReportRecord.id).filter(LabReportRecord.has_critical_values.is_(True)),
            func.count(LabReportRecord.id).filter(LabReportRecord.review_status == ReviewStatus.PENDING),
        ).where(LabReportRecord.patient_id == patient_id)
        async with self._session_maker() as session:
            total, abnormal, critical, pending = (await session.execute(stmt)).one()
        return LabResultCounts(total=total, abnormal=abnormal, critical=critical, pending_review=pending)

    async def update_review(
        self,
        report_id: str,
        review_status: ReviewStatus,
        reviewed_by: str | None,
        review_date: datetime,
    ) -> LabReport | None:
        async with self._session_maker() as session:
            record = await session.get(LabReportRecord, report_id)
            if record is None:
                return None
            record.review_status = review_status
            record.reviewed_by = reviewed_by
            record.review_date = review_date
            updated = record_to_schema(record)
            await session.commit()
        return updated


class SQLPatientDirectory(PatientDirectory):
    """Patient directory backed by the patients table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def exists(self, patient_id: str) -> bool:
        stmt = select(Patient.id).where(Patient.patient_id == patient_id).limit(1)
        async with self._session_maker() as session:
            return (await session.execute(stmt)).first() is not None
