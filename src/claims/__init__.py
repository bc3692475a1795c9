"""Claim & verification core: service factory and public types."""

from claims.errors import (
    ClaimantAlreadyController,
    ClaimError,
    ConflictError,
    DuplicateActiveClaim,
    InvalidTransition,
    MissingRequiredEvidence,
    NotFound,
    ReasonRequired,
    ResourceAlreadyClaimed,
    Unauthorized,
    ValidationError,
)
from claims.models import Actor, Claim, ClaimableResource, Decision, Evidence, PaymentVerification
from claims.service import ClaimService, get_claim_service

__all__ = [
    "Actor",
    "Claim",
    "ClaimError",
    "ClaimService",
    "ClaimableResource",
    "ClaimantAlreadyController",
    "ConflictError",
    "Decision",
    "DuplicateActiveClaim",
    "Evidence",
    "InvalidTransition",
    "MissingRequiredEvidence",
    "NotFound",
    "PaymentVerification",
    "ReasonRequired",
    "ResourceAlreadyClaimed",
    "Unauthorized",
    "ValidationError",
    "get_claim_service",
]
