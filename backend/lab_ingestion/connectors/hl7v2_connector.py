"""HL7 v2.x lab result connector.

Parses ORU-style HL7 v2 text into LabReport records. Segments are read
strictly in order, so one payload may carry several messages.

Segments used:
    MSH - Message Header: opens a new report (MSH-4 facility, MSH-7 time, MSH-10 control id)
    OBR - Observation Request: order number, panel and collection time
    OBX - Observation Result: one TestResult per segment
    NTE - Notes: appended to the most recent OBX result
    FTS - File Trailer: closes the open report

Usage:
    connector = HL7v2LabConnector()
    reports = connector.parse(message_text, "quest", received_at=now)
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lab_ingestion.connectors.base import UNKNOWN_LAB, UNKNOWN_TEST, LabConnector
from lab_ingestion.core.errors import LabParseError
from lab_ingestion.schemas.base import FlagCode, IntegrationSource, LabDataFormat, Severity
from lab_ingestion.schemas.lab_report import AbnormalFlag, LabReport, ReferenceRange, TestResult

logger = logging.getLogger(__name__)

# OBX-11 result status (HL7 table 0085)
RESULT_STATUS = {
    "F": "final",
    "P": "preliminary",
    "C": "corrected",
    "X": "cancelled",
}

# YYYY[MM[DD[HH[MM[SS[.S[S[S[S]]]]]]]]][+/-ZZZZ]
_HL7_TIMESTAMP = re.compile(r"^(\d{4,14})(?:\.(\d{1,6}))?([+-]\d{4})?$")

_TIMESTAMP_FORMATS = {
    4: "%Y",
    6: "%Y%m",
    8: "%Y%m%d",
    10: "%Y%m%d%H",
    12: "%Y%m%d%H%M",
    14: "%Y%m%d%H%M%S",
}


def parse_hl7_datetime(value: str | None) -> datetime | None:
    """Parse an HL7 TS value (e.g. 20240115083000 or 20240115+0500)."""
    if not value:
        return None

    match = _HL7_TIMESTAMP.match(value.strip())
    if not match:
        return None

    digits, fraction, offset = match.groups()
    fmt = _TIMESTAMP_FORMATS.get(len(digits))
    if fmt is None:
        return None

    try:
        if offset:
            parsed = datetime.strptime(digits + offset, fmt + "%z")
        else:
            parsed = datetime.strptime(digits, fmt)
    except ValueError:
        return None

    if fraction:
        parsed = parsed.replace(microsecond=int(fraction.ljust(6, "0")))
    return parsed


class HL7v2Segment:
    """One parsed HL7 v2 segment.

    Field numbers follow HL7 numbering: for MSH the field separator itself
    is field 1, so MSH-4 is the sending facility.
    """

    def __init__(self, line: str, field_sep: str = "|", component_sep: str = "^"):
        self.raw = line
        self.component_sep = component_sep
        fields = line.split(field_sep)
        self.segment_id = fields[0].strip().upper()
        if self.segment_id == "MSH":
            fields = [fields[0], field_sep] + fields[1:]
        self.fields = fields

    def get_field(self, field_num: int, component: int = 0) -> str | None:
        """Get a field value.

        Args:
            field_num: Field number (1-based)
            component: Component within field (1-based, 0=full field)

        Returns:
            Field value or None when empty or absent
        """
        if field_num >= len(self.fields):
            return None

        value = self.fields[field_num]
        if not value:
            return None

        if component > 0:
            components = value.split(self.component_sep)
            if component <= len(components):
                return components[component - 1] or None
            return None

        return value


@dataclass
class _OpenReport:
    """Report being accumulated between MSH and FTS (or the next MSH)."""

    report: LabReport
    control_id: str | None = None
    message_date: datetime | None = None
    lines: list[str] = field(default_factory=list)


class HL7v2LabConnector(LabConnector):
    """Connector for HL7 v2.x ORU lab messages."""

    def __init__(self, field_sep: str = "|", component_sep: str = "^"):
        self.field_sep = field_sep
        self.component_sep = component_sep

    @property
    def data_format(self) -> LabDataFormat:
        return LabDataFormat.HL7

    def parse(
        self,
        raw: Any,
        source_label: str,
        *,
        received_at: datetime | None = None,
    ) -> list[LabReport]:
        """Parse HL7 v2 text into lab reports, one per MSH."""
        text = self._decode(raw)
        lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")

        reports: list[LabReport] = []
        current: _OpenReport | None = None
        component_sep = self.component_sep

        for line in lines:
            line = line.strip()
            if not line:
                continue

            if line.upper().startswith("MSH") and len(line) > 4:
                # MSH-2 declares the encoding characters for this message
                component_sep = line[4] if line[4] != self.field_sep else self.component_sep

            segment = HL7v2Segment(line, self.field_sep, component_sep)

            if segment.segment_id == "MSH":
                if current is not None:
                    reports.append(self._close(current, source_label, received_at))
                current = self._open(segment, source_label)
                current.lines.append(line)
                continue

            if current is None:
                logger.warning(f"Ignoring {segment.segment_id} segment before first MSH")
                continue

            current.lines.append(line)

            if segment.segment_id == "OBR":
                self._apply_order(current, segment)
            elif segment.segment_id == "OBX":
                current.report.results.append(self._parse_result(segment))
            elif segment.segment_id == "NTE":
                self._append_note(current, segment)
            elif segment.segment_id == "FTS":
                reports.append(self._close(current, source_label, received_at))
                current = None

        if current is not None:
            reports.append(self._close(current, source_label, received_at))

        logger.debug(f"Parsed {len(reports)} HL7 report(s) from {source_label}")
        return reports

    # -------------------------------------------------------------------------
    # Segment handlers
    # -------------------------------------------------------------------------

    def _decode(self, raw: Any) -> str:
        if isinstance(raw, bytes):
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise LabParseError(f"HL7 payload is not valid UTF-8: {e}") from e
        if not isinstance(raw, str):
            raise LabParseError(f"HL7 payload must be text, got {type(raw).__name__}")
        return raw

    def _open(self, msh: HL7v2Segment, source_label: str) -> _OpenReport:
        report = LabReport(
            lab_id=source_label,
            lab_facility_name=msh.get_field(4, 1) or msh.get_field(4) or UNKNOWN_LAB,
            integration_source=IntegrationSource.HL7,
        )
        return _OpenReport(
            report=report,
            control_id=msh.get_field(10),
            message_date=parse_hl7_datetime(msh.get_field(7, 1)),
        )

    def _apply_order(self, current: _OpenReport, obr: HL7v2Segment) -> None:
        report = current.report
        # OBR-3 filler order number, OBR-2 placer order number
        external_id = obr.get_field(3, 1) or obr.get_field(2, 1)
        if external_id:
            report.external_reference_id = external_id
        report.panel_code = obr.get_field(4, 1)
        report.panel_name = obr.get_field(4, 2)
        report.collection_date = parse_hl7_datetime(obr.get_field(7, 1))
        report.report_date = parse_hl7_datetime(obr.get_field(22, 1))

    def _parse_result(self, obx: HL7v2Segment) -> TestResult:
        units = obx.get_field(6, 1)
        status_code = (obx.get_field(11) or "F").upper()

        result = TestResult(
            test_code=obx.get_field(3, 1),
            test_name=obx.get_field(3, 2) or UNKNOWN_TEST,
            value=obx.get_field(5),
            units=units,
            status=RESULT_STATUS.get(status_code, "final"),
        )

        # OBX-7: naive "low-high"
        ref_range = self._parse_range(obx.get_field(7), units)
        if ref_range is not None:
            result.reference_ranges.append(ref_range)

        # OBX-8: abnormal flag sent by the lab
        flag_code = obx.get_field(8)
        if flag_code:
            result.abnormal_flags.append(self._parse_flag(flag_code.strip().upper()))

        return result

    def _parse_range(self, value: str | None, units: str | None) -> ReferenceRange | None:
        if not value:
            return None
        parts = value.split("-")
        if len(parts) != 2:
            return None
        try:
            lower = float(parts[0])
            upper = float(parts[1])
        except ValueError:
            return None
        return ReferenceRange(lower_bound=lower, upper_bound=upper, units=units)

    def _parse_flag(self, code: str) -> AbnormalFlag:
        try:
            flag = FlagCode(code)
        except ValueError:
            flag = FlagCode.ABNORMAL
        severity = Severity.CRITICAL if flag == FlagCode.CRITICAL else Severity.MODERATE
        return AbnormalFlag(flag=flag, severity=severity, auto_generated=False)

    def _append_note(self, current: _OpenReport, nte: HL7v2Segment) -> None:
        text = nte.get_field(3)
        if not text:
            return
        if not current.report.results:
            logger.debug("Ignoring NTE segment with no preceding OBX")
            return
        result = current.report.results[-1]
        result.notes = f"{result.notes} {text}" if result.notes else text

    def _close(
        self,
        current: _OpenReport,
        source_label: str,
        received_at: datetime | None,
    ) -> LabReport:
        report = current.report
        if not report.external_reference_id:
            report.external_reference_id = current.control_id or self._fallback_id(
                current, source_label
            )
        if report.report_date is None:
            report.report_date = current.message_date or received_at
        if report.collection_date is None:
            report.collection_date = received_at
        return report

    def _fallback_id(self, current: _OpenReport, source_label: str) -> str:
        digest = hashlib.sha1("\n".join(current.lines).encode("utf-8")).hexdigest()
        return f"{source_label}-{digest[:12]}"
