"""
Access control helpers.

Rules:
- All permission checks are server-side; clients are never trusted.
- Admin: full access.
- Role decorators gate workflow actions (budget review, RFP evaluation, invoice approval ...).
- Department isolation: non-admins only see department-scoped rows of their own department.
- Viewers are read-only: viewer_readonly_guard() blocks POST/PUT/PATCH/DELETE and is wired via
  app.before_request in the app factory.

Decorators use functools.wraps to keep Flask endpoint names unique.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional

from flask import abort, request
from flask_login import current_user

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Mutations a viewer may still perform on their own session
VIEWER_ALLOWED_ENDPOINTS = {"auth.logout", "auth.login"}


def is_admin() -> bool:
    """Return True if current user is authenticated and admin."""
    return bool(current_user.is_authenticated and getattr(current_user, "is_admin", False))


def has_any_role(*roles: str) -> bool:
    if not current_user.is_authenticated:
        return False
    return current_user.has_role(*roles)


def viewer_readonly_guard() -> Optional[Any]:
    """
    Global guard: viewers cannot mutate data.

    Returns None to let the request through, otherwise aborts with 403 (rendered as JSON by the
    app's error handler).
    """
    if request.method not in MUTATING_METHODS:
        return None

    if not current_user.is_authenticated:
        return None

    if not current_user.is_read_only():
        return None

    endpoint = (request.endpoint or "").strip()
    if endpoint in VIEWER_ALLOWED_ENDPOINTS:
        return None

    abort(403, description="Viewers have read-only access.")


def admin_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: admin-only."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        if not is_admin():
            abort(403)
        return view_func(*args, **kwargs)

    return wrapper


def roles_required(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator factory: admin or any of the given roles.

    Usage:
        @roles_required("finance_officer")
        def approve_invoice(invoice_id): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            if not has_any_role(*roles):
                abort(403)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def scope_to_department(query, department_column, *cross_department_roles: str):
    """
    Department isolation for list queries: non-admins see their own department only,
    unless they hold one of cross_department_roles (e.g. finance officers for budgets).
    """
    if is_admin() or (cross_department_roles and has_any_role(*cross_department_roles)):
        return query
    return query.filter(department_column == current_user.department_id)


def ensure_department_access(department_id: int | None, *cross_department_roles: str) -> None:
    """Abort 403 when a non-admin touches another department's row."""
    if is_admin() or (cross_department_roles and has_any_role(*cross_department_roles)):
        return
    if department_id is None or department_id != current_user.department_id:
        abort(403)
