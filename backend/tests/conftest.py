"""Pytest configuration and fixtures for backend tests."""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from lab_ingestion.schemas.lab_report import LabReport, ReferenceRange, TestResult
from lab_ingestion.services.lab_import import LabImportService
from lab_ingestion.services.lab_queries import LabResultQueryService
from lab_ingestion.services.lab_store import InMemoryLabReportStore, InMemoryPatientDirectory

RECEIVED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def build_hl7_message(
    order_id: str = "ORD1",
    test_code: str = "GLU",
    test_name: str = "Glucose",
    value: str = "130",
    units: str = "mg/dL",
    ref_range: str = "70-100",
    flag: str = "",
    collected: str = "20240115083000",
    control_id: str = "MSG0001",
    facility: str = "Quest Diagnostics",
) -> str:
    """Build a single-result ORU message."""
    return "\r".join(
        [
            f"MSH|^~\\&|LIS|{facility}|EHR|Clinic|20240115093000||ORU^R01|{control_id}|P|2.5.1",
            "PID|1||P001",
            f"OBR|1|PLC-{order_id}|{order_id}|PANEL^Basic Panel|||{collected}",
            f"OBX|1|NM|{test_code}^{test_name}||{value}|{units}|{ref_range}|{flag}|||F",
        ]
    )


def build_fhir_bundle(
    interpretation: str | None = "HH",
    value: float = 6.8,
    low: float | None = 3.5,
    high: float | None = 5.1,
) -> dict:
    """Build a Bundle with one DiagnosticReport referencing one potassium Observation."""
    observation = {
        "resourceType": "Observation",
        "id": "obs-1",
        "status": "final",
        "code": {
            "coding": [{"system": "http://loinc.org", "code": "2823-3", "display": "Potassium"}],
            "text": "Potassium",
        },
        "effectiveDateTime": "2024-01-15T08:30:00Z",
        "valueQuantity": {"value": value, "unit": "mmol/L"},
        "referenceRange": [
            {
                "low": {"value": low, "unit": "mmol/L"} if low is not None else None,
                "high": {"value": high, "unit": "mmol/L"} if high is not None else None,
            }
        ],
    }
    if interpretation:
        observation["interpretation"] = [
            {"coding": [{"code": interpretation}], "text": "Critical high"}
        ]

    return {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [
            {
                "resource": {
                    "resourceType": "DiagnosticReport",
                    "id": "DR-1",
                    "status": "final",
                    "code": {
                        "coding": [{"code": "24320-4", "display": "Basic metabolic panel"}],
                        "text": "BMP",
                    },
                    "effectiveDateTime": "2024-01-15T08:30:00Z",
                    "issued": "2024-01-15T12:00:00Z",
                    "performer": [{"display": "City Lab"}],
                    "result": [{"reference": "Observation/obs-1"}],
                }
            },
            {"resource": observation},
        ],
    }


def build_report(
    patient_id: str = "P001",
    external_reference_id: str = "ORD1",
    lab_id: str = "quest",
    collected: datetime | None = datetime(2024, 1, 1, 8, 0, tzinfo=UTC),
    results: list[tuple[str, str]] | None = None,
    ref_range: tuple[float | None, float | None] | None = (70, 100),
) -> LabReport:
    """Build a LabReport with (test_code, value) results sharing one range."""
    ranges = []
    if ref_range is not None:
        ranges = [ReferenceRange(lower_bound=ref_range[0], upper_bound=ref_range[1], units="mg/dL")]
    return LabReport(
        patient_id=patient_id,
        ordered_by_provider_id="DR1",
        external_reference_id=external_reference_id,
        lab_id=lab_id,
        collection_date=collected,
        results=[
            TestResult(
                test_code=code,
                test_name=code.title(),
                value=value,
                units="mg/dL",
                reference_ranges=list(ranges),
            )
            for code, value in (results or [("GLU", "130")])
        ],
    )


@pytest.fixture
def store() -> InMemoryLabReportStore:
    """Create an empty in-memory lab report store."""
    return InMemoryLabReportStore()


@pytest.fixture
def patients() -> InMemoryPatientDirectory:
    """Create a patient directory with two known patients."""
    return InMemoryPatientDirectory({"P001", "P002"})


@pytest.fixture
def import_service(
    store: InMemoryLabReportStore,
    patients: InMemoryPatientDirectory,
) -> LabImportService:
    """Create an import service with a fixed receive time."""
    return LabImportService(store, patients, clock=lambda: RECEIVED_AT)


@pytest.fixture
def query_service(store: InMemoryLabReportStore) -> LabResultQueryService:
    """Create a query service over the shared store."""
    return LabResultQueryService(store, clock=lambda: RECEIVED_AT)


@pytest.fixture
def hl7_message() -> Callable[..., str]:
    return build_hl7_message


@pytest.fixture
def fhir_bundle() -> Callable[..., dict]:
    return build_fhir_bundle


@pytest.fixture
def make_report() -> Callable[..., LabReport]:
    return build_report
