"""Evidence store adapters: reference lookups for uploaded verification proof."""

from .base import EVIDENCE_KINDS, EvidenceStore
from .memory import InMemoryEvidenceStore
from .registry import SQLiteEvidenceRegistry

__all__ = [
    "EVIDENCE_KINDS",
    "EvidenceStore",
    "InMemoryEvidenceStore",
    "SQLiteEvidenceRegistry",
]
