"""SQLAlchemy models for ingested lab reports and their test results."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lab_ingestion.core.database import Base
from lab_ingestion.schemas.base import IntegrationSource, ReviewStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class LabReportRecord(Base):
    """One stored lab report.

    (patient_id, lab_id, external_reference_id) is unique: importing the
    same source document twice keeps the first copy.
    """

    __tablename__ = "lab_reports"
    __table_args__ = (
        UniqueConstraint(
            "patient_id",
            "lab_id",
            "external_reference_id",
            name="uq_lab_reports_natural_key",
        ),
        Index("ix_lab_reports_patient_collection", "patient_id", "collection_date"),
    )

    patient_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    ordered_by_provider_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lab_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    collection_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    report_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    panel_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    panel_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    lab_facility_name: Mapped[str | None] = mapped_column(String(500), nullable=True)

    integration_source: Mapped[IntegrationSource] = mapped_column(
        SAEnum(
            IntegrationSource,
            name="integration_source",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    # Clinical significance roll-up
    has_critical_values: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_abnormal_values: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    significance_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Review workflow
    review_status: Mapped[ReviewStatus] = mapped_column(
        SAEnum(
            ReviewStatus,
            name="review_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ReviewStatus.PENDING,
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    review_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # List of TrendEntry dicts
    trend_analysis: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    raw_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Secondary sort key for reports sharing a collection date
    imported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    results: Mapped[list["LabResultRecord"]] = relationship(
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="LabResultRecord.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<LabReportRecord(id={self.id}, patient_id={self.patient_id}, "
            f"lab_id={self.lab_id}, external_reference_id={self.external_reference_id})>"
        )


class LabResultRecord(Base):
    """One test result row belonging to a stored lab report."""

    __tablename__ = "lab_results"

    report_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("lab_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    test_code: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    test_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    units: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="final")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lists of ReferenceRange / AbnormalFlag dicts
    reference_ranges: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    abnormal_flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    report: Mapped["LabReportRecord"] = relationship(back_populates="results")

    def __repr__(self) -> str:
        return f"<LabResultRecord(id={self.id}, test_code={self.test_code}, value={self.value})>"
