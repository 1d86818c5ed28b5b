"""Tests for the lab import service."""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lab_ingestion.core.errors import (
    DuplicateLabReportError,
    LabParseError,
    PatientNotFoundError,
    UnsupportedFormatError,
)
from lab_ingestion.schemas.base import (
    FlagCode,
    IntegrationSource,
    Severity,
    TrendDirection,
    TrendSignificance,
)
from lab_ingestion.services.lab_import import LabImportRequest, LabImportService, serialize_payload
from lab_ingestion.services.lab_store import InMemoryLabReportStore, InMemoryPatientDirectory

from conftest import RECEIVED_AT, build_fhir_bundle, build_hl7_message, build_report


def two_orders(first_value: str = "150", second_value: str = "110") -> str:
    return "\r".join(
        [
            build_hl7_message(order_id="ORD1", value=first_value, collected="20240110080000", control_id="M1"),
            build_hl7_message(order_id="ORD2", value=second_value, collected="20240201080000", control_id="M2"),
        ]
    )


async def import_hl7(service: LabImportService, payload: str, patient_id: str = "P001"):
    return await service.import_batch(
        raw_data=payload,
        patient_id=patient_id,
        ordering_provider_id="DR42",
        source_label="quest",
        data_format="hl7",
    )


class TestImportScenarios:
    """End-to-end import scenarios over the in-memory store."""

    @pytest.mark.asyncio
    async def test_hl7_high_value(self, import_service: LabImportService, store: InMemoryLabReportStore) -> None:
        """Test a single high glucose is saved with a moderate H flag."""
        result = await import_hl7(import_service, build_hl7_message(value="130"))

        assert result.total == 1
        assert result.processed == 1
        assert result.duplicates == 0
        assert result.errors == []
        assert len(store) == 1

        report = result.saved[0]
        flag = report.results[0].abnormal_flags[0]
        assert flag.flag == FlagCode.HIGH
        assert flag.severity == Severity.MODERATE
        assert flag.auto_generated is True
        assert report.clinical_significance.has_abnormal_values is True
        assert report.clinical_significance.has_critical_values is False

    @pytest.mark.asyncio
    async def test_caller_fields_are_stamped(self, import_service: LabImportService) -> None:
        """Test patient, provider, lab, source and raw payload are set on the saved report."""
        payload = build_hl7_message()
        report = (await import_hl7(import_service, payload)).saved[0]

        assert report.id is not None
        assert report.imported_at is not None
        assert report.patient_id == "P001"
        assert report.ordered_by_provider_id == "DR42"
        assert report.lab_id == "quest"
        assert report.external_reference_id == "ORD1"
        assert report.integration_source == IntegrationSource.HL7
        assert report.raw_data == payload

    @pytest.mark.asyncio
    async def test_critical_low_value(self, import_service: LabImportService) -> None:
        """Test a glucose of 20 is critical (below 70 * 0.7)."""
        report = (await import_hl7(import_service, build_hl7_message(value="20"))).saved[0]

        flag = report.results[0].abnormal_flags[0]
        assert flag.flag == FlagCode.CRITICAL
        assert flag.severity == Severity.CRITICAL
        assert report.clinical_significance.has_critical_values is True

    @pytest.mark.asyncio
    async def test_trend_against_earlier_import(self, import_service: LabImportService) -> None:
        """Test 150 -> 110 is a significant improvement while still high."""
        await import_hl7(
            import_service, build_hl7_message(order_id="ORD1", value="150", collected="20240110080000")
        )
        result = await import_hl7(
            import_service, build_hl7_message(order_id="ORD2", value="110", collected="20240201080000")
        )

        trend = result.saved[0].find_trend("GLU")
        assert trend.previous_value == 150
        assert trend.direction == TrendDirection.DECREASED
        assert trend.percent_change == pytest.approx(-26.67)
        assert trend.significance == TrendSignificance.SIGNIFICANT_IMPROVEMENT

    @pytest.mark.asyncio
    async def test_first_result_is_new(self, import_service: LabImportService) -> None:
        """Test a patient's first glucose has no trend baseline."""
        trend = (await import_hl7(import_service, build_hl7_message())).saved[0].find_trend("GLU")

        assert trend.direction == TrendDirection.NEW
        assert trend.significance == TrendSignificance.UNDETERMINED

    @pytest.mark.asyncio
    async def test_reimport_is_idempotent(self, import_service: LabImportService, store: InMemoryLabReportStore) -> None:
        """Test importing the same payload twice stores one report."""
        payload = build_hl7_message()
        first = await import_hl7(import_service, payload)
        second = await import_hl7(import_service, payload)

        assert first.processed == 1
        assert second.total == 1
        assert second.processed == 0
        assert second.duplicates == 1
        assert second.errors == []
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_fhir_critical_interpretation(self, import_service: LabImportService) -> None:
        """Test an HH interpretation arrives as a critical C flag."""
        bundle = build_fhir_bundle(interpretation="HH")
        result = await import_service.import_batch(
            raw_data=bundle,
            patient_id="P001",
            ordering_provider_id="DR42",
            source_label="city",
            data_format="fhir",
        )

        report = result.saved[0]
        flag = report.results[0].abnormal_flags[0]
        assert flag.flag == FlagCode.CRITICAL
        assert flag.severity == Severity.CRITICAL
        assert report.clinical_significance.has_critical_values is True
        assert report.clinical_significance.summary == "Potassium is critically high (6.8 mmol/L)"
        assert report.integration_source == IntegrationSource.FHIR
        assert json.loads(report.raw_data) == bundle


class TestImportBatch:
    """Tests for batch handling and failures."""

    @pytest.mark.asyncio
    async def test_history_within_one_batch(self, import_service: LabImportService) -> None:
        """Test a later report in the batch sees the earlier one as history."""
        result = await import_hl7(import_service, two_orders())

        assert result.processed == 2
        first, second = result.saved
        assert first.find_trend("GLU").direction == TrendDirection.NEW
        assert second.find_trend("GLU").previous_value == 150
        assert second.find_trend("GLU").significance == TrendSignificance.SIGNIFICANT_IMPROVEMENT

    @pytest.mark.asyncio
    async def test_duplicate_within_one_batch(self, import_service: LabImportService) -> None:
        """Test a payload repeating a report saves it once."""
        payload = "\r".join([build_hl7_message(control_id="M1"), build_hl7_message(control_id="M2")])
        result = await import_hl7(import_service, payload)

        assert result.total == 2
        assert result.processed == 1
        assert result.duplicates == 1

    @pytest.mark.asyncio
    async def test_unknown_patient(self, import_service: LabImportService, store: InMemoryLabReportStore) -> None:
        """Test batches for unknown patients are rejected before parsing."""
        with pytest.raises(PatientNotFoundError) as exc_info:
            await import_hl7(import_service, build_hl7_message(), patient_id="P999")

        assert exc_info.value.patient_id == "P999"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unsupported_format(self, import_service: LabImportService) -> None:
        """Test unknown format tags are rejected."""
        with pytest.raises(UnsupportedFormatError):
            await import_service.import_batch(
                raw_data="a,b,c",
                patient_id="P001",
                ordering_provider_id="DR42",
                source_label="quest",
                data_format="csv",
            )

    @pytest.mark.asyncio
    async def test_unparseable_payload(self, import_service: LabImportService, store: InMemoryLabReportStore) -> None:
        """Test a structurally invalid payload saves nothing."""
        with pytest.raises(LabParseError):
            await import_service.import_batch(
                raw_data="{not json",
                patient_id="P001",
                ordering_provider_id="DR42",
                source_label="city",
                data_format="fhir",
            )
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_partial_failure(self, store: InMemoryLabReportStore, patients: InMemoryPatientDirectory) -> None:
        """Test a failing report is recorded while its siblings are saved."""
        analyzer = AsyncMock()
        analyzer.analyze.side_effect = [None, RuntimeError("trend lookup failed")]
        service = LabImportService(store, patients, trend_analyzer=analyzer, clock=lambda: RECEIVED_AT)

        result = await import_hl7(service, two_orders())

        assert result.total == 2
        assert result.processed == 1
        assert result.is_partial is True
        assert result.errors[0].external_reference_id == "ORD2"
        assert result.errors[0].error == "trend lookup failed"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_lost_save_race_counts_as_duplicate(
        self, import_service: LabImportService, store: InMemoryLabReportStore
    ) -> None:
        """Test a unique-key conflict on save is a duplicate when the report now exists."""
        existing = build_report()
        with (
            patch.object(store, "find_one", AsyncMock(side_effect=[None, existing])),
            patch.object(store, "save", AsyncMock(side_effect=DuplicateLabReportError("P001", "quest", "ORD1"))),
        ):
            result = await import_hl7(import_service, build_hl7_message())

        assert result.duplicates == 1
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_unresolved_save_conflict_is_an_error(
        self, import_service: LabImportService, store: InMemoryLabReportStore
    ) -> None:
        """Test a unique-key conflict with no visible report is recorded as an error."""
        with (
            patch.object(store, "find_one", AsyncMock(return_value=None)),
            patch.object(store, "save", AsyncMock(side_effect=DuplicateLabReportError("P001", "quest", "ORD1"))),
        ):
            result = await import_hl7(import_service, build_hl7_message())

        assert result.processed == 0
        assert result.errors[0].error == "Duplicate lab report"

    @pytest.mark.asyncio
    async def test_manual_import_does_not_mutate_input(self, import_service: LabImportService) -> None:
        """Test manual reports are copied before being stamped."""
        original = build_report(patient_id=None, lab_id=None)
        result = await import_service.import_batch(
            raw_data=original,
            patient_id="P002",
            ordering_provider_id="DR7",
            source_label="clinic",
            data_format="manual",
        )

        saved = result.saved[0]
        assert saved.patient_id == "P002"
        assert saved.lab_id == "clinic"
        assert saved.integration_source == IntegrationSource.MANUAL
        assert original.patient_id is None
        assert original.results[0].abnormal_flags == []

    @pytest.mark.asyncio
    @patch("lab_ingestion.services.lab_import.log_lab_import")
    async def test_imports_are_audited(self, mock_log: MagicMock, import_service: LabImportService) -> None:
        """Test each saved report writes an audit event."""
        result = await import_hl7(import_service, build_hl7_message())

        mock_log.assert_called_once_with(
            patient_id="P001",
            report_id=result.saved[0].id,
            source_label="quest",
            user_id="DR42",
        )


class TestImportBatches:
    """Tests for importing several batches at once."""

    @pytest.mark.asyncio
    async def test_results_in_request_order(self, import_service: LabImportService) -> None:
        """Test per-request outcomes, including batch-level failures."""
        requests = [
            LabImportRequest(build_hl7_message(order_id="A1", value="150", collected="20240110"), "P001", "DR1", "quest", "hl7"),
            LabImportRequest(build_hl7_message(order_id="B1"), "P002", "DR1", "quest", "hl7"),
            LabImportRequest(build_hl7_message(order_id="X1"), "P999", "DR1", "quest", "hl7"),
            LabImportRequest(build_hl7_message(order_id="A2", value="110", collected="20240201"), "P001", "DR1", "quest", "hl7"),
        ]

        outcomes = await import_service.import_batches(requests)

        assert outcomes[0].saved[0].external_reference_id == "A1"
        assert outcomes[1].saved[0].patient_id == "P002"
        assert isinstance(outcomes[2], PatientNotFoundError)
        # Same-patient batches run in order, so A2 sees A1
        assert outcomes[3].saved[0].find_trend("GLU").previous_value == 150


class TestSerializePayload:
    """Tests for raw payload rendering."""

    def test_text_is_verbatim(self) -> None:
        """Test strings pass through and bytes are decoded."""
        assert serialize_payload("MSH|x") == "MSH|x"
        assert serialize_payload(b"MSH|x") == "MSH|x"

    def test_structured_payloads(self) -> None:
        """Test dicts and reports become JSON."""
        assert json.loads(serialize_payload({"a": 1})) == {"a": 1}
        report = build_report(collected=datetime(2024, 1, 1, tzinfo=UTC))
        assert json.loads(serialize_payload([report]))[0]["external_reference_id"] == "ORD1"
