"""Tests for the FHIR R4 lab connector."""

import json
from datetime import UTC, datetime

import pytest

from lab_ingestion.connectors.fhir_connector import (
    FHIRLabConnector,
    extract_coding,
    extract_reference_id,
    parse_fhir_datetime,
)
from lab_ingestion.core.errors import LabParseError
from lab_ingestion.schemas.base import FlagCode, IntegrationSource, Severity

from conftest import RECEIVED_AT, build_fhir_bundle


def observation(obs_id: str, code: str, value: float, effective: str | None, **extra) -> dict:
    resource = {
        "resourceType": "Observation",
        "id": obs_id,
        "status": "final",
        "code": {"coding": [{"code": code, "display": code.title()}]},
        "valueQuantity": {"value": value, "unit": "mg/dL"},
    }
    if effective:
        resource["effectiveDateTime"] = effective
    resource.update(extra)
    return resource


def observations_bundle(*resources: dict) -> dict:
    return {"resourceType": "Bundle", "entry": [{"resource": r} for r in resources]}


@pytest.fixture
def connector() -> FHIRLabConnector:
    """Create a FHIR connector."""
    return FHIRLabConnector()


class TestFHIRHelpers:
    """Tests for FHIR value helpers."""

    def test_parse_full_datetime(self) -> None:
        """Test instants with a Z suffix are timezone aware."""
        assert parse_fhir_datetime("2024-01-15T08:30:00Z") == datetime(2024, 1, 15, 8, 30, tzinfo=UTC)

    def test_parse_partial_dates(self) -> None:
        """Test date, year-month and year precision."""
        assert parse_fhir_datetime("2024-01-15") == datetime(2024, 1, 15)
        assert parse_fhir_datetime("2024-01") == datetime(2024, 1, 1)
        assert parse_fhir_datetime("2024") == datetime(2024, 1, 1)

    def test_parse_invalid(self) -> None:
        """Test unparseable values give None."""
        assert parse_fhir_datetime(None) is None
        assert parse_fhir_datetime("last tuesday") is None

    def test_extract_reference_id(self) -> None:
        """Test relative, absolute and urn references."""
        assert extract_reference_id("Observation/123") == "123"
        assert extract_reference_id("http://fhir.example.org/Observation/abc") == "abc"
        assert extract_reference_id("urn:uuid:5f2c") == "5f2c"
        assert extract_reference_id("plain") == "plain"
        assert extract_reference_id(None) is None

    def test_extract_coding(self) -> None:
        """Test the first coding is used."""
        concept = {"coding": [{"code": "2823-3", "display": "Potassium"}, {"code": "K"}]}
        assert extract_coding(concept) == ("2823-3", "Potassium")
        assert extract_coding({"text": "no codings"}) == (None, None)
        assert extract_coding(None) == (None, None)


class TestFHIRDiagnosticReports:
    """Tests for bundles carrying DiagnosticReport resources."""

    def test_report_fields(self, connector: FHIRLabConnector) -> None:
        """Test DiagnosticReport fields map onto the LabReport."""
        reports = connector.parse(build_fhir_bundle(), "city", received_at=RECEIVED_AT)

        assert len(reports) == 1
        report = reports[0]
        assert report.external_reference_id == "DR-1"
        assert report.lab_id == "city"
        assert report.lab_facility_name == "City Lab"
        assert report.panel_code == "24320-4"
        assert report.panel_name == "BMP"
        assert report.integration_source == IntegrationSource.FHIR
        assert report.collection_date == datetime(2024, 1, 15, 8, 30, tzinfo=UTC)
        assert report.report_date == datetime(2024, 1, 15, 12, 0, tzinfo=UTC)

    def test_observation_fields(self, connector: FHIRLabConnector) -> None:
        """Test the referenced Observation becomes a TestResult."""
        result = connector.parse(build_fhir_bundle(), "city")[0].results[0]

        assert result.test_code == "2823-3"
        assert result.test_name == "Potassium"
        assert result.value == "6.8"
        assert result.units == "mmol/L"
        assert result.status == "final"
        assert result.reference_ranges[0].lower_bound == 3.5
        assert result.reference_ranges[0].upper_bound == 5.1
        assert result.reference_ranges[0].units == "mmol/L"
        assert result.reference_ranges[0].gender == "all"

    def test_critical_interpretation(self, connector: FHIRLabConnector) -> None:
        """Test HH maps to a critical source flag."""
        flag = connector.parse(build_fhir_bundle("HH"), "city")[0].results[0].abnormal_flags[0]

        assert flag.flag == FlagCode.CRITICAL
        assert flag.severity == Severity.CRITICAL
        assert flag.description == "Critical high"
        assert flag.auto_generated is False

    @pytest.mark.parametrize(
        ("code", "expected"),
        [("H", FlagCode.HIGH), ("L", FlagCode.LOW), ("A", FlagCode.ABNORMAL), ("LL", FlagCode.CRITICAL), ("N", FlagCode.NORMAL), ("XYZ", FlagCode.NORMAL)],
    )
    def test_interpretation_codes(self, connector: FHIRLabConnector, code: str, expected: FlagCode) -> None:
        """Test each interpretation code's flag."""
        flag = connector.parse(build_fhir_bundle(code), "city")[0].results[0].abnormal_flags[0]
        assert flag.flag == expected

    def test_no_interpretation(self, connector: FHIRLabConnector) -> None:
        """Test observations without interpretation carry no flags."""
        result = connector.parse(build_fhir_bundle(None), "city")[0].results[0]
        assert result.abnormal_flags == []

    def test_open_ended_range(self, connector: FHIRLabConnector) -> None:
        """Test a range with only a high bound."""
        rr = connector.parse(build_fhir_bundle(low=None), "city")[0].results[0].reference_ranges[0]
        assert rr.lower_bound is None
        assert rr.upper_bound == 5.1

    def test_range_applies_to_sex(self, connector: FHIRLabConnector) -> None:
        """Test appliesTo sex codes set the range gender."""
        bundle = build_fhir_bundle()
        obs = bundle["entry"][1]["resource"]
        obs["referenceRange"][0]["appliesTo"] = [{"coding": [{"code": "female"}]}]

        rr = connector.parse(bundle, "city")[0].results[0].reference_ranges[0]
        assert rr.gender == "female"

    def test_json_text_input(self, connector: FHIRLabConnector) -> None:
        """Test a serialized bundle parses the same as the dict."""
        bundle = build_fhir_bundle()
        assert connector.parse(json.dumps(bundle), "city") == connector.parse(bundle, "city")

    def test_unresolved_reference_is_skipped(self, connector: FHIRLabConnector) -> None:
        """Test a DiagnosticReport result pointing nowhere is dropped."""
        bundle = build_fhir_bundle()
        bundle["entry"][0]["resource"]["result"].append({"reference": "Observation/missing"})

        report = connector.parse(bundle, "city")[0]
        assert [r.test_code for r in report.results] == ["2823-3"]

    def test_full_url_reference(self, connector: FHIRLabConnector) -> None:
        """Test results referenced by entry fullUrl."""
        bundle = build_fhir_bundle()
        bundle["entry"][1]["fullUrl"] = "urn:uuid:7d1e"
        del bundle["entry"][1]["resource"]["id"]
        bundle["entry"][0]["resource"]["result"] = [{"reference": "urn:uuid:7d1e"}]

        report = connector.parse(bundle, "city")[0]
        assert len(report.results) == 1

    def test_value_string_and_concept(self, connector: FHIRLabConnector) -> None:
        """Test non-quantity values."""
        bundle = observations_bundle(
            observation("a", "UCOLOR", 0, "2024-01-15", valueString="Yellow"),
            observation("b", "UCULT", 0, "2024-01-15", valueCodeableConcept={"text": "Negative"}),
        )
        for entry in bundle["entry"]:
            del entry["resource"]["valueQuantity"]

        results = connector.parse(bundle, "city")[0].results
        assert [r.value for r in results] == ["Yellow", "Negative"]
        assert results[0].numeric_value is None

    def test_observation_notes(self, connector: FHIRLabConnector) -> None:
        """Test Observation.note texts are joined into notes."""
        bundle = observations_bundle(
            observation("a", "K", 5.0, "2024-01-15", note=[{"text": "Hemolyzed"}, {"text": "Redraw"}]),
        )
        assert connector.parse(bundle, "city")[0].results[0].notes == "Hemolyzed Redraw"


class TestFHIRObservationGrouping:
    """Tests for bundles with Observations but no DiagnosticReport."""

    def test_grouped_by_effective_date(self, connector: FHIRLabConnector) -> None:
        """Test one report per collection day, with a received-time suffix."""
        bundle = observations_bundle(
            observation("a", "GLU", 95, "2024-01-15T08:00:00Z"),
            observation("b", "NA", 140, "2024-01-15T07:30:00Z"),
            observation("c", "GLU", 99, "2024-02-01T08:00:00Z"),
        )
        reports = connector.parse(bundle, "city", received_at=RECEIVED_AT)
        ms = int(RECEIVED_AT.timestamp() * 1000)

        assert [r.external_reference_id for r in reports] == [
            f"city-2024-01-15-{ms}",
            f"city-2024-02-01-{ms}",
        ]
        assert [r.test_code for r in reports[0].results] == ["GLU", "NA"]
        # Earliest effective time in the group
        assert reports[0].collection_date == datetime(2024, 1, 15, 7, 30, tzinfo=UTC)

    def test_grouped_by_local_calendar_date(self, connector: FHIRLabConnector) -> None:
        """Test offsets do not move an observation to another day's report."""
        bundle = observations_bundle(
            observation("a", "GLU", 95, "2024-01-15T20:00:00-05:00"),
            observation("b", "NA", 140, "2024-01-15T08:00:00-05:00"),
        )
        reports = connector.parse(bundle, "city")

        assert [r.external_reference_id for r in reports] == ["city-2024-01-15"]
        assert [r.test_code for r in reports[0].results] == ["GLU", "NA"]
        assert reports[0].collection_date == datetime(2024, 1, 15, 13, 0, tzinfo=UTC)

    def test_no_received_at_suffix(self, connector: FHIRLabConnector) -> None:
        """Test the id has no suffix when no receive time is given."""
        bundle = observations_bundle(observation("a", "GLU", 95, "2024-01-15T08:00:00Z"))
        assert connector.parse(bundle, "city")[0].external_reference_id == "city-2024-01-15"

    def test_undated_observations(self, connector: FHIRLabConnector) -> None:
        """Test observations without a date fall back to the receive time."""
        bundle = observations_bundle(observation("a", "GLU", 95, None))
        report = connector.parse(bundle, "city", received_at=RECEIVED_AT)[0]

        assert report.external_reference_id.startswith("city-unknown-")
        assert report.collection_date == RECEIVED_AT

    def test_empty_bundle(self, connector: FHIRLabConnector) -> None:
        """Test a bundle with no lab resources yields no reports."""
        bundle = {"resourceType": "Bundle", "entry": [{"resource": {"resourceType": "Patient"}}]}
        assert connector.parse(bundle, "city") == []

    def test_parse_is_deterministic(self, connector: FHIRLabConnector) -> None:
        """Test identical input and receive time give equal output."""
        bundle = observations_bundle(observation("a", "GLU", 95, "2024-01-15T08:00:00Z"))
        assert connector.parse(bundle, "city", received_at=RECEIVED_AT) == connector.parse(
            bundle, "city", received_at=RECEIVED_AT
        )


class TestFHIRInvalidInput:
    """Tests for structurally invalid payloads."""

    def test_invalid_json(self, connector: FHIRLabConnector) -> None:
        """Test malformed JSON text."""
        with pytest.raises(LabParseError, match="Invalid FHIR data format"):
            connector.parse("{not json", "city")

    def test_not_a_bundle(self, connector: FHIRLabConnector) -> None:
        """Test a resource other than Bundle."""
        with pytest.raises(LabParseError, match="Invalid FHIR data format"):
            connector.parse({"resourceType": "Observation"}, "city")

    def test_entry_not_a_list(self, connector: FHIRLabConnector) -> None:
        """Test Bundle.entry with the wrong type."""
        with pytest.raises(LabParseError):
            connector.parse({"resourceType": "Bundle", "entry": {}}, "city")

    @pytest.mark.parametrize(
        "extra",
        [
            {"referenceRange": [{"low": 70, "high": 100}]},
            {"valueQuantity": "95 mg/dL"},
            {"valueQuantity": {"value": "high", "unit": "mg/dL"}},
        ],
    )
    def test_malformed_observation(self, connector: FHIRLabConnector, extra: dict) -> None:
        """Test wrongly shaped Observation fields raise LabParseError."""
        bundle = observations_bundle(observation("a", "GLU", 95, "2024-01-15", **extra))
        with pytest.raises(LabParseError, match="Invalid FHIR Observation a"):
            connector.parse(bundle, "city")

    def test_malformed_diagnostic_report(self, connector: FHIRLabConnector) -> None:
        """Test a wrongly shaped DiagnosticReport field raises LabParseError."""
        bundle = {
            "resourceType": "Bundle",
            "entry": [{"resource": {"resourceType": "DiagnosticReport", "id": "DR1", "code": "CBC"}}],
        }
        with pytest.raises(LabParseError, match="Invalid FHIR data format"):
            connector.parse(bundle, "city")

    def test_parse_error_is_value_error(self, connector: FHIRLabConnector) -> None:
        """Test callers can catch parse errors as ValueError."""
        with pytest.raises(ValueError):
            connector.parse("[]", "city")
