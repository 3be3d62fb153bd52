"""Event-sourced pipeline for clinical batch ingestion, de-identification and indexing."""

__version__ = "0.1.0"
