"""Base contract for evidence store adapters."""

from __future__ import annotations

from typing import Final, Protocol


EVIDENCE_SELFIE: Final = "selfie"
EVIDENCE_DOCUMENT: Final = "document"
EVIDENCE_PHONE_TOKEN: Final = "phone_token"
EVIDENCE_KINDS: Final[set[str]] = {EVIDENCE_SELFIE, EVIDENCE_DOCUMENT, EVIDENCE_PHONE_TOKEN}


class EvidenceStore(Protocol):
    """Existence and kind lookups; content is never read."""

    async def exists(self, reference: str) -> bool:
        """Return True when the reference points at stored evidence."""

    async def kind(self, reference: str) -> str | None:
        """Return the evidence kind of the reference, or None if unknown."""
