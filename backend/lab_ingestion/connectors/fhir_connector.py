"""FHIR R4 lab bundle connector.

Reads a Bundle of DiagnosticReport and Observation resources and maps it
to LabReport records.

FHIR Resource Mapping:
    DiagnosticReport -> LabReport (one per report)
    Observation      -> TestResult (resolved through DiagnosticReport.result)

When the bundle carries Observations but no DiagnosticReport, the
Observations are grouped by effective date and one LabReport is built
per date.
"""

import json
import logging
from datetime import datetime
from typing import Any

from lab_ingestion.connectors.base import UNKNOWN_LAB, UNKNOWN_TEST, LabConnector
from lab_ingestion.core.errors import LabParseError
from lab_ingestion.schemas.base import FlagCode, IntegrationSource, LabDataFormat, Severity
from lab_ingestion.schemas.lab_report import (
    AbnormalFlag,
    LabReport,
    ReferenceRange,
    TestResult,
    as_utc,
    format_number,
)

logger = logging.getLogger(__name__)

# Observation.interpretation codes (v3 ObservationInterpretation) -> flag
INTERPRETATION_FLAGS = {
    "H": FlagCode.HIGH,
    "L": FlagCode.LOW,
    "A": FlagCode.ABNORMAL,
    "HH": FlagCode.CRITICAL,
    "LL": FlagCode.CRITICAL,
}

CRITICAL_INTERPRETATIONS = {"HH", "LL"}

SEX_CODES = {"male", "female"}

UNKNOWN_DATE = "unknown"


def parse_fhir_datetime(value: str | None) -> datetime | None:
    """Parse a FHIR dateTime/instant (full, date-only, year-month or year)."""
    if not value:
        return None

    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass

    for fmt in ("%Y-%m", "%Y"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    logger.debug(f"Unparseable FHIR dateTime: {value}")
    return None


def extract_reference_id(reference: str | None) -> str | None:
    """Extract ID from a FHIR reference ('Observation/123' or 'urn:uuid:123' -> '123')."""
    if not reference:
        return None
    if reference.startswith("urn:uuid:"):
        return reference[len("urn:uuid:"):]
    if "/" in reference:
        return reference.rstrip("/").split("/")[-1]
    return reference


def extract_coding(codeable_concept: dict[str, Any] | None) -> tuple[str | None, str | None]:
    """Extract (code, display) from the first coding of a CodeableConcept."""
    if not codeable_concept:
        return None, None
    codings = codeable_concept.get("coding") or []
    if codings and isinstance(codings[0], dict):
        return codings[0].get("code"), codings[0].get("display")
    return None, None


class FHIRLabConnector(LabConnector):
    """Connector for FHIR R4 Bundles of lab results."""

    @property
    def data_format(self) -> LabDataFormat:
        return LabDataFormat.FHIR

    def parse(
        self,
        raw: Any,
        source_label: str,
        *,
        received_at: datetime | None = None,
    ) -> list[LabReport]:
        """Parse a FHIR Bundle into lab reports."""
        bundle = self._load_bundle(raw)

        diagnostic_reports: list[dict[str, Any]] = []
        observations: list[dict[str, Any]] = []
        observations_by_ref: dict[str, dict[str, Any]] = {}

        for entry in bundle["entry"]:
            if not isinstance(entry, dict):
                continue
            resource = entry.get("resource")
            if not isinstance(resource, dict):
                continue

            resource_type = resource.get("resourceType")
            if resource_type == "DiagnosticReport":
                diagnostic_reports.append(resource)
            elif resource_type == "Observation":
                observations.append(resource)
                if resource.get("id"):
                    observations_by_ref[str(resource["id"])] = resource
                if entry.get("fullUrl"):
                    observations_by_ref[entry["fullUrl"]] = resource

        try:
            if diagnostic_reports:
                reports = [
                    self._report_from_diagnostic_report(dr, observations_by_ref, source_label, received_at)
                    for dr in diagnostic_reports
                ]
            elif observations:
                reports = self._reports_from_observations(observations, source_label, received_at)
            else:
                reports = []
        except LabParseError:
            raise
        except (AttributeError, TypeError, ValueError) as e:
            raise LabParseError(f"Invalid FHIR data format: {e}") from e

        logger.debug(f"Parsed {len(reports)} FHIR report(s) from {source_label}")
        return reports

    # -------------------------------------------------------------------------
    # Bundle level
    # -------------------------------------------------------------------------

    def _load_bundle(self, raw: Any) -> dict[str, Any]:
        if isinstance(raw, bytes | str):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise LabParseError(f"Invalid FHIR data format: {e}") from e

        if not isinstance(raw, dict) or raw.get("resourceType") != "Bundle":
            raise LabParseError("Invalid FHIR data format: expected a Bundle resource")
        if not isinstance(raw.get("entry"), list):
            raise LabParseError("Invalid FHIR data format: Bundle.entry must be a list")
        return raw

    def _report_from_diagnostic_report(
        self,
        dr: dict[str, Any],
        observations_by_ref: dict[str, dict[str, Any]],
        source_label: str,
        received_at: datetime | None,
    ) -> LabReport:
        panel_code, panel_display = extract_coding(dr.get("code"))
        effective = dr.get("effectiveDateTime") or (dr.get("effectivePeriod") or {}).get("start")

        report = LabReport(
            external_reference_id=dr.get("id"),
            lab_id=source_label,
            lab_facility_name=self._performer_name(dr),
            collection_date=parse_fhir_datetime(effective) or received_at,
            report_date=parse_fhir_datetime(dr.get("issued")) or received_at,
            panel_code=panel_code,
            panel_name=(dr.get("code") or {}).get("text") or panel_display,
            integration_source=IntegrationSource.FHIR,
        )

        for ref in dr.get("result") or []:
            reference = ref.get("reference") if isinstance(ref, dict) else None
            observation = self._resolve(reference, observations_by_ref)
            if observation is None:
                logger.warning(f"DiagnosticReport {dr.get('id')}: unresolved result reference {reference}")
                continue
            report.results.append(self._convert_observation(observation))

        return report

    def _reports_from_observations(
        self,
        observations: list[dict[str, Any]],
        source_label: str,
        received_at: datetime | None,
    ) -> list[LabReport]:
        groups: dict[str, list[dict[str, Any]]] = {}
        for observation in observations:
            groups.setdefault(self._date_key(observation), []).append(observation)

        suffix = f"-{int(as_utc(received_at).timestamp() * 1000)}" if received_at else ""
        reports = []
        for date_key, members in groups.items():
            first = members[0]
            effective_dates = [
                d for d in (parse_fhir_datetime(o.get("effectiveDateTime")) for o in members) if d
            ]
            report = LabReport(
                external_reference_id=f"{source_label}-{date_key}{suffix}",
                lab_id=source_label,
                lab_facility_name=self._performer_name(first),
                collection_date=min(effective_dates, key=as_utc) if effective_dates else received_at,
                report_date=parse_fhir_datetime(first.get("issued")) or received_at,
                integration_source=IntegrationSource.FHIR,
                results=[self._convert_observation(o) for o in members],
            )
            reports.append(report)
        return reports

    def _resolve(
        self,
        reference: str | None,
        observations_by_ref: dict[str, dict[str, Any]],
    ) -> dict[str, Any] | None:
        if not reference:
            return None
        if reference in observations_by_ref:
            return observations_by_ref[reference]
        ref_id = extract_reference_id(reference)
        return observations_by_ref.get(ref_id) if ref_id else None

    def _performer_name(self, resource: dict[str, Any]) -> str:
        performers = resource.get("performer") or []
        if performers and isinstance(performers[0], dict) and performers[0].get("display"):
            return performers[0]["display"]
        return UNKNOWN_LAB

    def _date_key(self, observation: dict[str, Any]) -> str:
        # Calendar date as written, before any offset is applied
        effective = observation.get("effectiveDateTime")
        if not isinstance(effective, str) or not effective.strip():
            return UNKNOWN_DATE
        return effective.strip().split("T")[0]

    # -------------------------------------------------------------------------
    # Observation level
    # -------------------------------------------------------------------------

    def _convert_observation(self, observation: dict[str, Any]) -> TestResult:
        try:
            return self._result_from_observation(observation)
        except (AttributeError, TypeError, ValueError) as e:
            raise LabParseError(f"Invalid FHIR Observation {observation.get('id')}: {e}") from e

    def _result_from_observation(self, observation: dict[str, Any]) -> TestResult:
        code, display = extract_coding(observation.get("code"))
        quantity = observation.get("valueQuantity") or {}

        notes = [n.get("text") for n in observation.get("note") or [] if isinstance(n, dict) and n.get("text")]

        return TestResult(
            test_code=code,
            test_name=(observation.get("code") or {}).get("text") or display or UNKNOWN_TEST,
            value=self._value(observation),
            units=quantity.get("unit"),
            status=observation.get("status") or "final",
            reference_ranges=[
                self._reference_range(rr, quantity.get("unit"))
                for rr in observation.get("referenceRange") or []
                if isinstance(rr, dict)
            ],
            abnormal_flags=[
                self._flag(interp)
                for interp in observation.get("interpretation") or []
                if isinstance(interp, dict)
            ],
            notes=" ".join(notes) or None,
        )

    def _value(self, observation: dict[str, Any]) -> str | None:
        quantity = observation.get("valueQuantity") or {}
        if quantity.get("value") is not None:
            return format_number(float(quantity["value"]))
        if observation.get("valueString") is not None:
            return str(observation["valueString"])
        if observation.get("valueInteger") is not None:
            return str(observation["valueInteger"])
        concept = observation.get("valueCodeableConcept")
        if concept:
            return concept.get("text") or extract_coding(concept)[1]
        return None

    def _reference_range(self, rr: dict[str, Any], default_units: str | None) -> ReferenceRange:
        low = rr.get("low") or {}
        high = rr.get("high") or {}

        gender = "all"
        for applies in rr.get("appliesTo") or []:
            code, _ = extract_coding(applies)
            if code and code.lower() in SEX_CODES:
                gender = code.lower()
                break

        return ReferenceRange(
            gender=gender,
            lower_bound=low.get("value"),
            upper_bound=high.get("value"),
            units=low.get("unit") or high.get("unit") or default_units,
        )

    def _flag(self, interpretation: dict[str, Any]) -> AbnormalFlag:
        code, display = extract_coding(interpretation)
        code = (code or "").upper()
        return AbnormalFlag(
            flag=INTERPRETATION_FLAGS.get(code, FlagCode.NORMAL),
            severity=Severity.CRITICAL if code in CRITICAL_INTERPRETATIONS else Severity.MODERATE,
            description=interpretation.get("text") or display,
            auto_generated=False,
        )

