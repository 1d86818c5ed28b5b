"""Audit logging for lab data access and imports.

Every read, import and review of patient lab data goes through
log_audit so it lands on the dedicated "audit" logger. That logger
should be routed to an append-only store in production.
"""

import logging
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

# Separate audit logger for security-critical events
audit_logger = logging.getLogger("audit")


class AuditAction(str, Enum):
    """Types of auditable actions."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    ERROR = "error"


class AuditEvent(BaseModel):
    """Audit event record."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    action: AuditAction = Field(..., description="Type of action performed")
    resource_type: str = Field(..., description="Type of resource accessed")
    resource_id: str | None = Field(None, description="ID of specific resource")
    patient_id: str | None = Field(None, description="Patient ID if applicable")
    user_id: str | None = Field(None, description="User who performed action")
    details: dict | None = Field(None, description="Additional context")
    success: bool = Field(True, description="Whether action succeeded")


def log_audit(
    action: AuditAction,
    resource_type: str,
    resource_id: str | None = None,
    patient_id: str | None = None,
    user_id: str | None = None,
    details: dict | None = None,
    success: bool = True,
) -> AuditEvent:
    """Log an audit event.

    Args:
        action: Type of action being audited
        resource_type: The type of resource being accessed
        resource_id: Specific resource identifier
        patient_id: Patient ID if this is patient data
        user_id: User performing the action
        details: Additional context
        success: Whether the action succeeded

    Returns:
        The created AuditEvent
    """
    event = AuditEvent(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        patient_id=patient_id,
        user_id=user_id,
        details=details,
        success=success,
    )

    log_level = logging.INFO if success else logging.WARNING
    audit_logger.log(
        log_level,
        f"AUDIT: {action.value} {resource_type}"
        f"{f'/{resource_id}' if resource_id else ''}"
        f"{f' patient={patient_id}' if patient_id else ''}"
        f" success={success}",
        extra={"audit_event": event.model_dump()},
    )

    return event


def log_lab_import(
    patient_id: str,
    report_id: str | None,
    source_label: str,
    user_id: str | None = None,
    success: bool = True,
    error: str | None = None,
) -> AuditEvent:
    """Log the import of one lab report."""
    details: dict = {"source": source_label}
    if error:
        details["error"] = error
    return log_audit(
        action=AuditAction.CREATE if success else AuditAction.ERROR,
        resource_type="lab_report",
        resource_id=report_id,
        patient_id=patient_id,
        user_id=user_id,
        details=details,
        success=success,
    )


def log_data_access(
    resource_type: str,
    resource_id: str | None = None,
    patient_id: str | None = None,
    user_id: str | None = None,
    action: AuditAction = AuditAction.READ,
) -> AuditEvent:
    """Log a data access event.

    Args:
        resource_type: Type of data being accessed
        resource_id: Specific resource ID
        patient_id: Patient the data belongs to
        user_id: User accessing the data
        action: Type of access (default: READ)

    Returns:
        The created AuditEvent
    """
    return log_audit(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        patient_id=patient_id,
        user_id=user_id,
    )
