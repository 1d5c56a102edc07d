from __future__ import annotations

from collections.abc import Callable, Iterable
from functools import wraps
from typing import Any

from flask import abort, g

from app.compliance.models import User

# Permission catalogue grouped by module: module -> {permission key: display name}.
PERMISSION_CATALOGUE: dict[str, dict[str, str]] = {
    "admin": {
        "admin.view": "Admin: view shell",
        "admin.edit": "Admin: manage roles and accounts",
    },
    "documents": {
        "docs.view": "Docs: view",
        "docs.create": "Docs: create",
        "docs.edit": "Docs: edit drafts and upload versions",
        "docs.delete": "Docs: delete",
        "docs.submit": "Docs: submit for approval",
        "docs.approve": "Docs: act on approval steps",
        "docs.publish": "Docs: publish without workflow",
        "docs.obsolete": "Docs: obsolete",
        "docs.download": "Docs: download and preview",
        "docs.scan": "Docs: record antivirus results",
        "docs.ack_manage": "Docs: run acknowledgment campaigns",
    },
    "templates": {
        "templates.view": "Templates: view",
        "templates.edit": "Templates: create/edit/copy",
        "templates.fill": "Templates: fill for assets",
    },
    "inventory": {
        "inventory.view": "Inventory rules: view",
        "inventory.edit": "Inventory rules: create/edit",
        "inventory.reset": "Inventory rules: reset sequence",
    },
    "assets": {
        "assets.view": "Assets: view",
        "assets.edit": "Assets: create/edit",
        "assets.generate_number": "Assets: generate inventory number",
    },
}

PERMISSION_MODULES: dict[str, frozenset[str]] = {
    module: frozenset(perms) for module, perms in PERMISSION_CATALOGUE.items()
}

ALL_PERMISSIONS: dict[str, str] = {
    key: name for perms in PERMISSION_CATALOGUE.values() for key, name in perms.items()
}


def module_permissions(module: str) -> frozenset[str]:
    try:
        return PERMISSION_MODULES[module]
    except KeyError:
        raise KeyError(f"Unknown permission module: {module!r}")


def select_module(selected: Iterable[str], module: str) -> set[str]:
    """Select-all for a module: union with every permission in it."""
    return set(selected) | module_permissions(module)


def clear_module(selected: Iterable[str], module: str) -> set[str]:
    return set(selected) - module_permissions(module)


def module_selection_state(selected: Iterable[str], module: str) -> str:
    """Tri-state of a module checkbox: "all", "some" or "none"."""
    perms = module_permissions(module)
    picked = perms & set(selected)
    if not picked:
        return "none"
    if picked == perms:
        return "all"
    return "some"


def user_permission_keys(user: User | None) -> set[str]:
    if not user or not user.is_active:
        return set()
    return set().union(*(role.permission_keys for role in user.roles))


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (API clients re-login).
            if not user or not user.is_active:
                abort(401)
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def apply_selection(
    current: Iterable[str],
    *,
    permissions: Iterable[str] | None = None,
    select_modules: Iterable[str] = (),
    clear_modules: Iterable[str] = (),
) -> set[str]:
    """
    New permission set for a role: start from `permissions` (or the current set),
    select whole modules, then clear whole modules.
    """
    selected = set(permissions) if permissions is not None else set(current)
    unknown = selected - set(ALL_PERMISSIONS)
    if unknown:
        raise KeyError(f"Unknown permission keys: {', '.join(sorted(unknown))}")
    for module in select_modules:
        selected = select_module(selected, module)
    for module in clear_modules:
        selected = clear_module(selected, module)
    return selected
