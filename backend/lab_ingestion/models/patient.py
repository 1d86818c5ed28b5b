"""SQLAlchemy model for the patient registry."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from lab_ingestion.core.database import Base


class Patient(Base):
    """Known patient. Lab imports are rejected for ids not listed here."""

    __tablename__ = "patients"

    patient_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, patient_id={self.patient_id})>"
