"""
Data model shared by the extraction, mapping, validation, rewrite and
inspection layers.  Everything here is a pydantic model so results can be
dumped to JSON for the machine-readable report mode.
"""

from .identity import (
    DirectoryUser,
    ExtractedIdentity,
    Found,
    LookupResult,
    MappingEntry,
    NotFound,
    Provenance,
    ProvenanceKind,
    UserReference,
    ValidationOutcome,
    ValidationReport,
    ValidationStatus,
)
from .summary import ENTITY_KEYS, DiffResult, DocumentSummary, EntityDiff

__all__ = [
    "DirectoryUser",
    "ExtractedIdentity",
    "Found",
    "LookupResult",
    "MappingEntry",
    "NotFound",
    "Provenance",
    "ProvenanceKind",
    "UserReference",
    "ValidationOutcome",
    "ValidationReport",
    "ValidationStatus",
    "ENTITY_KEYS",
    "DiffResult",
    "DocumentSummary",
    "EntityDiff",
]
