"""Exceptions raised by the lab ingestion engine."""


class LabIngestionError(Exception):
    """Base class for lab ingestion failures."""


class PatientNotFoundError(LabIngestionError, LookupError):
    """The batch names a patient the directory does not know."""

    def __init__(self, patient_id: str):
        self.patient_id = patient_id
        super().__init__(f"Patient not found: {patient_id}")


class UnsupportedFormatError(LabIngestionError, ValueError):
    """The payload format tag is not one the engine can parse."""

    def __init__(self, data_format: object):
        self.data_format = data_format
        super().__init__(f"Unsupported lab data format: {data_format}")


class LabParseError(LabIngestionError, ValueError):
    """The payload is structurally invalid for its declared format."""


class DuplicateLabReportError(LabIngestionError):
    """A report with the same (patient, lab, external reference) already exists."""

    def __init__(self, patient_id: str | None, lab_id: str | None, external_reference_id: str | None):
        self.patient_id = patient_id
        self.lab_id = lab_id
        self.external_reference_id = external_reference_id
        super().__init__(
            f"Lab report already exists: patient={patient_id} lab={lab_id} "
            f"external_reference_id={external_reference_id}"
        )


class LabReportNotFoundError(LabIngestionError, LookupError):
    """No stored report has the requested id."""

    def __init__(self, report_id: str):
        self.report_id = report_id
        super().__init__(f"Lab report not found: {report_id}")
