"""
Data Ingestion Module
"""
from .outbox import IngestionOutbox
from .pipeline import (
    IngestionPipeline,
    IngestResult,
    close_pipeline,
    get_pipeline,
    init_pipeline,
)

__all__ = [
    "IngestionOutbox",
    "IngestionPipeline",
    "IngestResult",
    "close_pipeline",
    "get_pipeline",
    "init_pipeline",
]
