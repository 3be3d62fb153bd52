"""Research index documents."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class IndexDocument(BaseModel):
    """Searchable projection of one completed de-identification job."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    tenant_id: str
    run_id: str
    payload_location: str
    indexed_at: datetime

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> IndexDocument:
        return cls.model_validate_json(payload)

    def summary(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "tenant_id": self.tenant_id,
            "run_id": self.run_id,
            "payload_location": self.payload_location,
        }


__all__ = ["IndexDocument"]
