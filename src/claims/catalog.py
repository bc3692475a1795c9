"""Catalog collaborator: who controls an establishment or employee profile."""

from __future__ import annotations

from typing import Protocol

import aiosqlite

from claims.errors import NotFound, ValidationError
from claims.models import RESOURCE_EMPLOYEE_PROFILE, RESOURCE_KINDS, ClaimableResource
from claims.repository import ClaimRepository


class Catalog(Protocol):
    """The only catalog reads/writes the claim core performs."""

    async def get_controller(self, resource_id: str) -> str | None:
        """Return the controller id, or None when house-managed."""

    async def set_controller(self, resource_id: str, controller_id: str | None) -> None:
        """Assign (or clear) the resource controller."""


class SQLiteCatalog:
    """Catalog view bound to the connection of the running transaction."""

    def __init__(self, repository: ClaimRepository, db: aiosqlite.Connection) -> None:
        self.repository = repository
        self.db = db

    async def get_controller(self, resource_id: str) -> str | None:
        resource = await self.repository.get_resource(self.db, resource_id)
        if resource is None:
            raise NotFound(f"Resource {resource_id} not found.")
        return resource.controller_id

    async def set_controller(self, resource_id: str, controller_id: str | None) -> None:
        await self.repository.set_controller(self.db, resource_id, controller_id)


async def sync_resource(
    repository: ClaimRepository,
    resource_id: str,
    kind: str,
    *,
    controller_id: str | None = None,
    owning_establishment_id: str | None = None,
) -> ClaimableResource:
    """Mirror a catalog entry into the claims DB.

    Called by the catalog owner when an establishment or an owner-created
    employee profile appears or changes hands outside of the claim flow.
    """
    resource_id = str(resource_id or "").strip()
    if not resource_id:
        raise ValidationError("Resource id must not be empty.")
    if kind not in RESOURCE_KINDS:
        raise ValidationError(f"Unknown resource kind: {kind}")
    if owning_establishment_id and kind != RESOURCE_EMPLOYEE_PROFILE:
        raise ValidationError("Only employee profiles belong to an establishment.")

    async with repository.transaction() as db:
        await repository.upsert_resource(
            db,
            resource_id,
            kind,
            controller_id=controller_id,
            owning_establishment_id=owning_establishment_id,
        )
        resource = await repository.get_resource(db, resource_id)
    if resource is None:
        raise RuntimeError("Failed to read resource after upsert")
    return resource
