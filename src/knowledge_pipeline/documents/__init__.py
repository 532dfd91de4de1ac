"""Document assembly from chat messages."""

from knowledge_pipeline.documents.assembler import DocumentAssembler, document_confidence
from knowledge_pipeline.documents.metadata import DocumentMetadataGenerator
from knowledge_pipeline.documents.models import (
    AssemblyOptions,
    BatchAssemblyResult,
    DocumentMetadata,
    DocumentStatus,
)

__all__ = [
    "DocumentAssembler",
    "DocumentMetadataGenerator",
    "AssemblyOptions",
    "BatchAssemblyResult",
    "DocumentMetadata",
    "DocumentStatus",
    "document_confidence",
]
