"""Personal-data masking used by the de-identification step and by log rendering."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

_RESIDENT_ID = re.compile(r"\b(\d{6})-?(\d{7})\b")
_PHONE_NUMBER = re.compile(r"\b(01\d|02|0\d{2})-?(\d{3,4})-?(\d{4})\b")
_EMAIL = re.compile(r"([\w.%-])([\w.%+-]*)(@[^\s]+)")

REDACTED = "***"


class SensitiveDataMasker:
    """Masks resident registration numbers, phone numbers and e-mail addresses."""

    @staticmethod
    def mask(raw: str | None) -> str:
        if not raw or not raw.strip():
            return raw or ""
        masked = _RESIDENT_ID.sub(r"\1-*******", raw)
        masked = _PHONE_NUMBER.sub(r"***-***-\3", masked)
        return _EMAIL.sub(r"\1***\3", masked)


class RecordMasker:
    """De-identifies clinical records.

    Fields named in ``identifier_fields`` are replaced wholesale; every other
    string value (nested mappings and lists included) is pattern-masked.
    """

    def __init__(self, identifier_fields: Iterable[str]) -> None:
        self._identifier_fields = {name.lower() for name in identifier_fields}

    def mask_record(self, record: Mapping[str, Any]) -> dict[str, Any]:
        return {key: self._mask_field(key, value) for key, value in record.items()}

    def mask_records(self, records: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        return [self.mask_record(record) for record in records]

    def _mask_field(self, key: str, value: Any) -> Any:
        if key.lower() in self._identifier_fields and value is not None:
            return REDACTED
        return self._mask_value(value)

    def _mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return SensitiveDataMasker.mask(value)
        if isinstance(value, Mapping):
            return {str(k): self._mask_field(str(k), v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._mask_value(item) for item in value]
        return value


__all__ = ["REDACTED", "RecordMasker", "SensitiveDataMasker"]
