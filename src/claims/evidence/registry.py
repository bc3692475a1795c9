"""Evidence references registered by the upload collaborator in the claims DB."""

from __future__ import annotations

from database import open_db, utc_now_iso

from .base import EVIDENCE_KINDS


class SQLiteEvidenceRegistry:
    """Reads `evidence_refs`; the uploader writes rows through `register`."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def register(self, reference: str, kind: str, *, uploaded_by: str | None = None) -> None:
        normalized = str(kind).strip().lower()
        if normalized not in EVIDENCE_KINDS:
            raise ValueError(f"Unsupported evidence kind: {kind}")
        async with open_db(self.db_path) as db:
            await db.execute(
                """INSERT INTO evidence_refs(ref, kind, uploaded_by, created_at)
                   VALUES(?, ?, ?, ?)
                   ON CONFLICT(ref) DO UPDATE SET kind = excluded.kind""",
                (str(reference), normalized, uploaded_by, utc_now_iso()),
            )

    async def exists(self, reference: str) -> bool:
        return await self.kind(reference) is not None

    async def kind(self, reference: str) -> str | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                "SELECT kind FROM evidence_refs WHERE ref = ?",
                (str(reference),),
            ) as cur:
                row = await cur.fetchone()
                return str(row["kind"]) if row else None
