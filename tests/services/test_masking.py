from __future__ import annotations

import pytest

from ResearchEx.services.masking import REDACTED, RecordMasker, SensitiveDataMasker


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("900101-1234567", "900101-*******"),
        ("9001011234567", "900101-*******"),
        ("call 010-1234-5678", "call ***-***-5678"),
        ("office 02-345-6789", "office ***-***-6789"),
        ("mail gildong@example.org", "mail g***@example.org"),
        ("diagnosis J45.909", "diagnosis J45.909"),
    ],
)
def test_mask_hides_personal_data(raw: str, expected: str) -> None:
    assert SensitiveDataMasker.mask(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_mask_passes_through_empty_values(raw: str | None) -> None:
    assert SensitiveDataMasker.mask(raw) == (raw or "")


def test_record_masker_redacts_identifier_fields_and_nested_values() -> None:
    masker = RecordMasker(["Patient_Name", "resident_id"])
    record = {
        "patient_name": "Hong Gildong",
        "resident_id": "900101-1234567",
        "age": 34,
        "contacts": [{"phone": "010-1234-5678"}, "gildong@example.org"],
        "visit": {"note": "Call 010-9876-5432", "patient_name": "Hong Gildong"},
        "guardian": None,
    }

    masked = masker.mask_record(record)

    assert masked == {
        "patient_name": REDACTED,
        "resident_id": REDACTED,
        "age": 34,
        "contacts": [{"phone": "***-***-5678"}, "g***@example.org"],
        "visit": {"note": "Call ***-***-5432", "patient_name": REDACTED},
        "guardian": None,
    }
    assert record["patient_name"] == "Hong Gildong"


def test_mask_records_handles_empty_batches() -> None:
    assert RecordMasker([]).mask_records([]) == []
