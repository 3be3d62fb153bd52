"""Domain services invoked by the pipeline heavy steps."""

from .masking import REDACTED, RecordMasker, SensitiveDataMasker

__all__ = ["REDACTED", "RecordMasker", "SensitiveDataMasker"]
