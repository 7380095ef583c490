"""Record write/read pipeline and its wiring."""

from healthvault.modules.records.pipeline import (
    HealthRecordPipeline,
    PipelineStage,
    create_in_memory_ledger,
    create_local_key_servers,
    create_pipeline,
)
from healthvault.modules.records.schemas import (
    HealthRecordPayload,
    ProcessedRecord,
    RetrievedRecord,
)

__all__ = [
    "HealthRecordPipeline",
    "PipelineStage",
    "create_in_memory_ledger",
    "create_local_key_servers",
    "create_pipeline",
    "HealthRecordPayload",
    "ProcessedRecord",
    "RetrievedRecord",
]
