"""Role checks for authenticated routes.

Role hierarchy: customer < staff < admin. Roles live on the users row, so
no per-resource lookup is needed; booking ownership is checked by the
domain layer.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException

from rainbowpay.api.auth import CurrentUser, get_current_user

ROLE_HIERARCHY = ["customer", "staff", "admin"]


def role_level(role: str) -> int:
    """Numeric level for a role (higher = more privilege, -1 if unknown)."""
    try:
        return ROLE_HIERARCHY.index(role)
    except ValueError:
        return -1


def has_role(user: CurrentUser, min_role: str) -> bool:
    return role_level(user.role) >= role_level(min_role)


def require_role(min_role: str) -> Callable[..., CurrentUser]:
    """Dependency factory requiring at least ``min_role``.

    Usage:
        @router.post("/reconciliation")
        def run(user: CurrentUser = Depends(require_role("admin"))):
            ...
    """
    min_level = role_level(min_role)
    if min_level < 0:
        raise ValueError(f"Invalid role: {min_role}")

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if role_level(user.role) < min_level:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return dependency
