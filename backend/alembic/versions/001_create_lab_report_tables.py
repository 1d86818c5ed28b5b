"""Create patients, lab_reports and lab_results tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "patients",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("patient_id", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_patients_patient_id", "patients", ["patient_id"], unique=True)

    op.create_table(
        "lab_reports",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("patient_id", sa.String(length=255), nullable=False),
        sa.Column("ordered_by_provider_id", sa.String(length=255), nullable=False),
        sa.Column("external_reference_id", sa.String(length=255), nullable=True),
        sa.Column("lab_id", sa.String(length=255), nullable=True),
        sa.Column("collection_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("report_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("panel_code", sa.String(length=100), nullable=True),
        sa.Column("panel_name", sa.String(length=500), nullable=True),
        sa.Column("lab_facility_name", sa.String(length=500), nullable=True),
        sa.Column("integration_source", sa.String(length=6), nullable=False),
        sa.Column("has_critical_values", sa.Boolean(), nullable=False),
        sa.Column("has_abnormal_values", sa.Boolean(), nullable=False),
        sa.Column("significance_summary", sa.Text(), nullable=True),
        sa.Column("review_status", sa.String(length=16), nullable=False),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("review_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trend_analysis", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("raw_data", sa.Text(), nullable=True),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "patient_id",
            "lab_id",
            "external_reference_id",
            name="uq_lab_reports_natural_key",
        ),
    )
    op.create_index("ix_lab_reports_patient_id", "lab_reports", ["patient_id"])
    op.create_index(
        "ix_lab_reports_patient_collection",
        "lab_reports",
        ["patient_id", "collection_date"],
    )

    op.create_table(
        "lab_results",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("report_id", sa.UUID(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("test_code", sa.String(length=100), nullable=True),
        sa.Column("test_name", sa.String(length=500), nullable=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("units", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reference_ranges", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("abnormal_flags", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(["report_id"], ["lab_reports.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lab_results_report_id", "lab_results", ["report_id"])
    op.create_index("ix_lab_results_test_code", "lab_results", ["test_code"])


def downgrade() -> None:
    op.drop_index("ix_lab_results_test_code", table_name="lab_results")
    op.drop_index("ix_lab_results_report_id", table_name="lab_results")
    op.drop_table("lab_results")
    op.drop_index("ix_lab_reports_patient_collection", table_name="lab_reports")
    op.drop_index("ix_lab_reports_patient_id", table_name="lab_reports")
    op.drop_table("lab_reports")
    op.drop_index("ix_patients_patient_id", table_name="patients")
    op.drop_table("patients")
