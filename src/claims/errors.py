"""Typed business errors raised by the claim core.

Every error carries a stable ``code`` so transports can map it to a generic
message. Only rejection reasons are meant to be shown verbatim; those travel
in the decision history, not in these errors.
"""


class ClaimError(RuntimeError):
    """Base claim domain error."""

    code = "claim_error"


class ValidationError(ClaimError):
    """Raised when input is malformed."""

    code = "validation_error"


class ReasonRequired(ValidationError):
    """Raised when a rejection or override-rejection has no reason."""

    code = "reason_required"


class MissingRequiredEvidence(ValidationError):
    """Raised when no usable verification evidence was supplied."""

    code = "missing_required_evidence"


class ResourceAlreadyClaimed(ClaimError):
    """Raised when the resource already has a controller for this claim type."""

    code = "resource_already_claimed"


class DuplicateActiveClaim(ClaimError):
    """Raised when the resource already carries a non-terminal claim."""

    code = "duplicate_active_claim"


class ClaimantAlreadyController(ClaimError):
    """Raised when the claimant already controls the resource."""

    code = "claimant_already_controller"


class InvalidTransition(ClaimError):
    """Raised when the action is not legal from the current state."""

    code = "invalid_transition"


class Unauthorized(ClaimError):
    """Raised when the actor lacks the role or ownership for the action."""

    code = "unauthorized"


class NotFound(ClaimError):
    """Raised when a claim, transaction or resource does not exist."""

    code = "not_found"


class ConflictError(ClaimError):
    """Raised when a concurrent writer changed the record first."""

    code = "conflict"
