"""Unit tests for lqa.services.parity_report (xlsx parsing, persisted reports, missing checks)."""
from __future__ import annotations

import io
import re
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import openpyxl
import pytest

from lqa.services.parity_report import (
    generate_parity_report,
    generate_tracking_reference,
    load_internal_findings,
    parse_external_report,
    report_missing_check,
)
from lqa.worker.errors import AuditWriteError, ValidationError

TENANT = str(uuid4())
HEADER = ["File", "Segment", "Source", "Target", "Category", "Severity", "Authority"]


def _xlsx(rows, header=HEADER) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(header)
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    return db


# ---------------------------------------------------------------------------
# parse_external_report
# ---------------------------------------------------------------------------

def test_parse_report_reads_rows_and_groups_by_file():
    data = _xlsx([
        ["ui.xliff", 3, "Save", "Sauver", "Key Term Mismatch", "Major", "QA"],
        ["ui.xliff", 5, "Open", "Ouvrir  ", "Double Space", "Minor", None],
        ["help.xliff", 1, "Help", "", "Untranslated", "Critical", "QA"],
    ])
    report = parse_external_report(data)
    assert len(report.findings) == 3
    assert sorted(report.file_groups) == ["help.xliff", "ui.xliff"]
    first = report.findings[0]
    assert first.segment_number == 3
    assert first.normalized_category == "terminology"
    assert first.authority == "QA"
    assert report.findings[1].authority is None


def test_parse_report_skips_li_rows():
    data = _xlsx([
        ["ui.xliff", 1, "a", "b", "Spell Check", "Minor", "LI"],
        ["ui.xliff", 2, "c", "d", "Spell Check", "Minor", "QA"],
    ])
    report = parse_external_report(data)
    assert [f.segment_number for f in report.findings] == [2]


def test_parse_report_columns_located_by_name():
    header = ["Severity", "Category", "Segment", "File"]
    report = parse_external_report(_xlsx([["Minor", "Tag Mismatch", 4, "a.xliff"]], header=header))
    f = report.findings[0]
    assert (f.file_name, f.segment_number, f.category) == ("a.xliff", 4, "Tag Mismatch")
    assert f.source_text == "" and f.target_text == ""


def test_parse_report_rejects_non_workbook():
    with pytest.raises(ValidationError):
        parse_external_report(b"this is not a zip file")


# ---------------------------------------------------------------------------
# load_internal_findings
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_internal_findings_exclude_rejected():
    rows = [
        (SimpleNamespace(id=uuid4(), category="fluency", severity="minor", review_status="open",
                         source_excerpt="a", target_excerpt="b", description="d"), "ui.xliff", 1),
        (SimpleNamespace(id=uuid4(), category="fluency", severity="minor", review_status="rejected",
                         source_excerpt=None, target_excerpt=None, description=None), "ui.xliff", 2),
    ]
    with patch("lqa.worker.db.load_findings_with_location", new_callable=AsyncMock, return_value=rows):
        findings = await load_internal_findings(AsyncMock(), TENANT, uuid4())
    assert [f.segment_number for f in findings] == [1]


# ---------------------------------------------------------------------------
# generate_parity_report
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_parity_report_persists_counts_and_audits():
    project_id = uuid4()
    db = _mock_db()
    audit = MagicMock(write=AsyncMock())
    rows = [
        (SimpleNamespace(id=uuid4(), category="spacing", severity="minor", review_status="open",
                         source_excerpt="Open", target_excerpt="Ouvrir  ", description="Double space"), "ui.xliff", 5),
        (SimpleNamespace(id=uuid4(), category="accuracy", severity="major", review_status="open",
                         source_excerpt="x", target_excerpt="y", description="z"), "ui.xliff", 9),
    ]
    data = _xlsx([
        ["ui.xliff", 5, "Open", "Ouvrir  ", "Double Space", "Minor", "QA"],
        ["ui.xliff", 12, "Close", "Fermer", "Repeated Word", "Minor", "QA"],
    ])
    with patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=SimpleNamespace(id=project_id)), \
         patch("lqa.worker.db.load_findings_with_location", new_callable=AsyncMock, return_value=rows):
        report, result = await generate_parity_report(db, TENANT, project_id, data, audit=audit, user_id="u1")

    assert (report.both_found_count, report.tool_only_count, report.external_only_count) == (1, 1, 1)
    assert report.tool_finding_count == 2
    assert report.external_finding_count == 2
    assert report.generated_by == "u1"
    assert report.comparison_data["bothFoundCount"] == 1
    db.add.assert_called_once_with(report)
    assert audit.write.await_args[0][1].action == "parity_report.generated"


@pytest.mark.asyncio
async def test_generate_parity_report_unknown_project():
    with patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=None):
        with pytest.raises(ValidationError):
            await generate_parity_report(_mock_db(), TENANT, uuid4(), b"", audit=MagicMock())


@pytest.mark.asyncio
async def test_generate_parity_report_audit_failure_propagates():
    audit = MagicMock(write=AsyncMock(side_effect=AuditWriteError("down")))
    with patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=SimpleNamespace()), \
         patch("lqa.worker.db.load_findings_with_location", new_callable=AsyncMock, return_value=[]):
        with pytest.raises(AuditWriteError):
            await generate_parity_report(_mock_db(), TENANT, uuid4(), _xlsx([]), audit=audit)


# ---------------------------------------------------------------------------
# Missing checks
# ---------------------------------------------------------------------------

def test_tracking_reference_format():
    ref = generate_tracking_reference(datetime(2026, 3, 9))
    assert re.fullmatch(r"MCR-20260309-[A-Z0-9]{6}", ref)


def test_tracking_references_are_random():
    refs = {generate_tracking_reference() for _ in range(50)}
    assert len(refs) > 1


@pytest.mark.asyncio
async def test_report_missing_check_creates_row():
    db = _mock_db()
    audit = MagicMock(write=AsyncMock())
    with patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=SimpleNamespace()):
        report = await report_missing_check(
            db, TENANT, uuid4(),
            file_reference=" ui.xliff ",
            segment_number=4,
            expected_description="Wrong term",
            expected_category="terminology",
            audit=audit,
            user_id="reviewer",
        )
    assert report.file_reference == "ui.xliff"
    assert report.status == "pending"
    assert re.fullmatch(r"MCR-\d{8}-[A-Z0-9]{6}", report.tracking_reference)
    assert audit.write.await_args[0][1].action == "missing_check.reported"


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"file_reference": "", "segment_number": 1, "expected_description": "x", "expected_category": "y"},
    {"file_reference": "a", "segment_number": 0, "expected_description": "x", "expected_category": "y"},
    {"file_reference": "a", "segment_number": 1, "expected_description": " ", "expected_category": "y"},
])
async def test_report_missing_check_validates_input(kwargs):
    with pytest.raises(ValidationError):
        await report_missing_check(_mock_db(), TENANT, uuid4(), audit=MagicMock(), **kwargs)
