"""
authorization.py — Role Capability Checks

One table decides which role may perform which action. Call sites ask
`authorize(user, action)` once per operation instead of branching on role
flags themselves. Ownership (e.g. "this producer owns this order") is checked
by the operation itself after the capability check passes.
"""

import logging

from .errors import Forbidden
from .models import CurrentUser, Role

log = logging.getLogger(__name__)

MODIFY_CART = "cart:modify"
PLACE_ORDER = "order:create"
TRANSITION_ORDER = "order:transition"
SUBMIT_REVIEW = "review:submit"
MANAGE_PRODUCTS = "product:manage"
UPDATE_SETTINGS = "settings:update"

CAPABILITIES = {
    Role.CONSUMER: {MODIFY_CART, PLACE_ORDER, SUBMIT_REVIEW},
    Role.PRODUCER: {MANAGE_PRODUCTS, TRANSITION_ORDER},
    Role.ADMIN: {MANAGE_PRODUCTS, TRANSITION_ORDER, UPDATE_SETTINGS},
}


def authorize(user: CurrentUser, action: str) -> bool:
    return action in CAPABILITIES.get(user.role, set())


def require(user: CurrentUser, action: str) -> None:
    """Raises Forbidden unless the user's role grants the action."""
    if not authorize(user, action):
        log.warning(f"[User: {user.id}] Denied '{action}' for role {user.role.value}.")
        raise Forbidden(user.id, action)
