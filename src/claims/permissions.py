"""Who may do what on a resource after claims have been projected."""

from __future__ import annotations

from typing import Final

from claims.models import RESOURCE_EMPLOYEE_PROFILE, RESOURCE_ESTABLISHMENT, ClaimableResource


# Employee profile actions
EDIT_PROFILE_MEDIA: Final = "edit_profile_media"  # bio, photos, availability
REMOVE_FROM_ESTABLISHMENT: Final = "remove_from_establishment"
EDIT_CORE_FIELDS: Final = "edit_core_fields"  # nickname, age, type
RECEIVE_PROFILE_NOTIFICATIONS: Final = "receive_profile_notifications"
PROFILE_ACTIONS: Final[frozenset[str]] = frozenset(
    {EDIT_PROFILE_MEDIA, REMOVE_FROM_ESTABLISHMENT, EDIT_CORE_FIELDS, RECEIVE_PROFILE_NOTIFICATIONS}
)

# Dual-control split once an employee has self-claimed an owner-managed profile.
OWNER_PROFILE_ACTIONS_WHEN_SELF_MANAGED: Final[frozenset[str]] = frozenset({REMOVE_FROM_ESTABLISHMENT})
EMPLOYEE_PROFILE_ACTIONS_WHEN_SELF_MANAGED: Final[frozenset[str]] = frozenset(
    {EDIT_PROFILE_MEDIA, EDIT_CORE_FIELDS, RECEIVE_PROFILE_NOTIFICATIONS}
)

# Establishment actions; default owner grant mirrors the ownership approval defaults.
EDIT_INFO: Final = "edit_info"
EDIT_PRICING: Final = "edit_pricing"
EDIT_PHOTOS: Final = "edit_photos"
EDIT_EMPLOYEES: Final = "edit_employees"
VIEW_ANALYTICS: Final = "view_analytics"
ESTABLISHMENT_OWNER_ACTIONS: Final[frozenset[str]] = frozenset(
    {EDIT_INFO, EDIT_PRICING, EDIT_PHOTOS, VIEW_ANALYTICS}
)


def allowed_actions(resource: ClaimableResource, actor_id: str) -> frozenset[str]:
    if resource.kind == RESOURCE_ESTABLISHMENT:
        if actor_id and actor_id == resource.controller_id:
            return ESTABLISHMENT_OWNER_ACTIONS
        return frozenset()

    if resource.kind != RESOURCE_EMPLOYEE_PROFILE or not actor_id:
        return frozenset()

    is_owner = actor_id == resource.controller_id
    is_self_manager = actor_id == resource.self_managed_by
    if resource.self_managed_by is None:
        return PROFILE_ACTIONS if is_owner else frozenset()

    granted: set[str] = set()
    if is_owner:
        granted |= OWNER_PROFILE_ACTIONS_WHEN_SELF_MANAGED
    if is_self_manager:
        granted |= EMPLOYEE_PROFILE_ACTIONS_WHEN_SELF_MANAGED
    return frozenset(granted)


def can_perform(resource: ClaimableResource, actor_id: str, action: str) -> bool:
    return action in allowed_actions(resource, actor_id)


def profile_notification_recipient(resource: ClaimableResource) -> str | None:
    """Profile-related notifications go to the self-manager once there is one."""
    if resource.kind != RESOURCE_EMPLOYEE_PROFILE:
        return resource.controller_id
    return resource.self_managed_by or resource.controller_id
