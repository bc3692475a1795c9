"""In-process evidence store for smoke checks and local runs."""

from __future__ import annotations

from .base import EVIDENCE_KINDS


class InMemoryEvidenceStore:
    def __init__(self, references: dict[str, str] | None = None) -> None:
        self._kinds: dict[str, str] = {}
        for reference, kind in (references or {}).items():
            self.add(reference, kind)

    def add(self, reference: str, kind: str) -> None:
        normalized = str(kind).strip().lower()
        if normalized not in EVIDENCE_KINDS:
            raise ValueError(f"Unsupported evidence kind: {kind}")
        self._kinds[str(reference)] = normalized

    async def exists(self, reference: str) -> bool:
        return str(reference) in self._kinds

    async def kind(self, reference: str) -> str | None:
        return self._kinds.get(str(reference))
